"""Tests for the scaffold CLI (click CliRunner, no subprocesses)."""

import json

import pytest
from click.testing import CliRunner

from scaffold_apply.cli import cli
from scaffold_apply.lock import ApplyLock

PLAN_YAML = """
recipe_id: demo
files:
  - kind: file
    path: a.txt
    content: hello
  - kind: file
    path: bin/run.sh
    content: "#!/bin/sh\\n"
    executable: true
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ["SCAFFOLD_APPLY_STATE_DIR", "SCAFFOLD_APPLY_EVIDENCE_DIR",
                 "SCAFFOLD_APPLY_CHECKPOINT_DIR", "SCAFFOLD_APPLY_LOCK",
                 "SCAFFOLD_APPLY_HARMLESS", "SCAFFOLD_APPLY_LOG_LEVEL"]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def plan_file(tmp_path):
    path = tmp_path / "plan.yaml"
    path.write_text(PLAN_YAML)
    return path


@pytest.fixture
def run(workspace):
    runner = CliRunner()

    def _run(*args):
        return runner.invoke(cli, ["--workspace", str(workspace), *args])
    return _run


class TestApply:
    """scaffold apply exit codes and output."""

    def test_success(self, run, plan_file, workspace):
        """Fresh apply exits 0 and lists created files."""
        result = run("apply", str(plan_file), "--target", "app", "--scaffold-id", "s1")
        assert result.exit_code == 0, result.output
        assert "Applied: evidence:scaffold_apply:s1" in result.output
        assert "Created: bin/run.sh" in result.output
        assert (workspace / "app" / "a.txt").read_text() == "hello"

    def test_second_run_already_applied(self, run, plan_file):
        """Re-running the same id is a no-op success."""
        run("apply", str(plan_file), "--target", "app", "--scaffold-id", "s1")
        result = run("apply", str(plan_file), "--target", "app", "--scaffold-id", "s1")
        assert result.exit_code == 0
        assert "Already applied" in result.output

    def test_conflict_exits_2(self, run, plan_file, workspace):
        """Conflicts print options and exit 2."""
        (workspace / "app").mkdir()
        (workspace / "app" / "a.txt").write_text("mine")

        result = run("apply", str(plan_file), "--target", "app")

        assert result.exit_code == 2
        assert "merge_safe_only" in result.output
        assert "--mode" in result.output
        assert (workspace / "app" / "a.txt").read_text() == "mine"

    def test_replace_needs_confirm_flag(self, run, plan_file, workspace):
        """--mode replace_all alone asks for confirmation; with --confirm-replace it applies."""
        (workspace / "app").mkdir()
        (workspace / "app" / "a.txt").write_text("mine")

        first = run("apply", str(plan_file), "--target", "app", "--mode", "replace_all")
        assert first.exit_code == 2
        assert "--confirm-replace" in first.output

        second = run("apply", str(plan_file), "--target", "app", "--mode", "replace_all", "--confirm-replace")
        assert second.exit_code == 0, second.output
        assert (workspace / "app" / "a.txt").read_text() == "hello"

    def test_json_output(self, run, plan_file):
        """--json prints the result document."""
        result = run("apply", str(plan_file), "--target", "app", "--scaffold-id", "s1", "--json")
        data = json.loads(result.output)
        assert data["ok"] is True
        assert data["state"] == "DONE"

    def test_outside_workspace(self, run, plan_file, tmp_path):
        """Targets outside the workspace are never written."""
        result = run("apply", str(plan_file), "--target", str(tmp_path / "elsewhere"))
        assert result.exit_code == 2
        assert not (tmp_path / "elsewhere").exists()

    def test_invalid_plan_exits_1(self, run, tmp_path):
        """Plans failing validation exit 1."""
        bad = tmp_path / "bad.yaml"
        bad.write_text("recipe_id: r\nfiles:\n  - kind: file\n    path: ../x\n")
        result = run("apply", str(bad), "--target", "app")
        assert result.exit_code == 1
        assert "escapes" in result.output


class TestVerifyAndShow:
    """Integrity verification and summaries."""

    def test_verify(self, run, plan_file, workspace):
        """verify exits 0 while intact and 1 after drift."""
        run("apply", str(plan_file), "--target", "app", "--scaffold-id", "s1")
        assert run("verify", "s1").exit_code == 0

        (workspace / "app" / "a.txt").write_text("edited")
        result = run("verify", "s1")
        assert result.exit_code == 1
        assert "Modified: a.txt" in result.output

    def test_verify_unknown(self, run):
        """Unknown ids exit 1."""
        assert run("verify", "nope").exit_code == 1

    def test_show(self, run, plan_file):
        """show prints the summary."""
        run("apply", str(plan_file), "--target", "app", "--scaffold-id", "s1")
        result = run("show", "s1")
        assert result.exit_code == 0
        assert "SCAFFOLD SUMMARY: s1" in result.output
        assert "Recipe:      demo" in result.output


class TestCheckpointCommands:
    """checkpoints list / restore / delete."""

    def test_list_restore_delete(self, run, plan_file, workspace):
        """The checkpoint from an apply can restore the pre-apply state."""
        (workspace / "app").mkdir()
        (workspace / "app" / "keep.txt").write_text("keep")
        run("apply", str(plan_file), "--target", "app", "--scaffold-id", "s1", "--mode", "merge_safe_only")

        listing = run("checkpoints", "list", "--scaffold-id", "s1")
        assert listing.exit_code == 0
        checkpoint_id = listing.output.split()[0]
        assert checkpoint_id.startswith("cp_s1_")

        restored = run("checkpoints", "restore", checkpoint_id, "--yes")
        assert restored.exit_code == 0, restored.output
        assert sorted(p.name for p in (workspace / "app").iterdir()) == ["keep.txt"]

        assert run("checkpoints", "delete", checkpoint_id).exit_code == 0
        assert run("checkpoints", "delete", checkpoint_id).exit_code == 1

    def test_disabled(self, run, monkeypatch):
        """With checkpoints disabled the group reports an error."""
        monkeypatch.setenv("SCAFFOLD_APPLY_CHECKPOINT_DIR", "none")
        result = run("checkpoints", "list")
        assert result.exit_code == 1
        assert "disabled" in result.output


class TestMisc:
    """unlock and check-config."""

    def test_unlock(self, run, workspace):
        """unlock removes a stale lock."""
        lock = ApplyLock(workspace.resolve() / ".scaffold" / "locks", workspace.resolve() / "app")
        lock.acquire()

        result = run("unlock", "--target", "app")
        assert result.exit_code == 0
        assert "Removed lock" in result.output
        assert not lock.path.exists()

    def test_check_config(self, run, workspace):
        """check-config prints resolved directories."""
        result = run("check-config")
        assert result.exit_code == 0
        assert str(workspace.resolve() / ".scaffold" / "evidence") in result.output

    def test_check_config_error(self, run, monkeypatch):
        """Invalid configuration exits 1."""
        monkeypatch.setenv("SCAFFOLD_APPLY_LOCK", "perhaps")
        result = run("check-config")
        assert result.exit_code == 1
        assert "Configuration error" in result.output

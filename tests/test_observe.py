"""Tests for the observation helpers."""

from conftest import make_plan
from scaffold_apply.apply_executor import apply_scaffold_plan
from scaffold_apply.observe import (
    checkpoints_for,
    format_duration,
    print_checkpoint_list,
    print_summary,
)


class TestFormatDuration:
    """format_duration() output."""

    def test_ms(self):
        assert format_duration(0.25) == "250ms"

    def test_seconds(self):
        assert format_duration(12.34) == "12.3s"

    def test_minutes(self):
        assert format_duration(125) == "2m 5s"


class TestPrintSummary:
    """print_summary() for applied and unknown scaffolds."""

    def test_unknown(self, env, capsys):
        """Unknown scaffolds say so."""
        print_summary("nope", env.manifests)
        assert "has not been applied" in capsys.readouterr().out

    def test_applied_then_drifted(self, env, target, make_context, capsys):
        """Shows files and the integrity verdict."""
        apply_scaffold_plan(make_context(make_plan({"a.txt": "A"})), env)
        print_summary("s1", env.manifests, env.checkpoints)
        out = capsys.readouterr().out
        assert "a.txt" in out
        assert "INTACT" in out
        assert "(used)" in out

        (target / "a.txt").write_text("changed")
        print_summary("s1", env.manifests)
        assert "DRIFTED - 0 missing, 1 modified" in capsys.readouterr().out


class TestCheckpointListing:
    """Checkpoint listing helpers."""

    def test_filter_and_print(self, env, target, make_context, capsys):
        """checkpoints_for() filters by scaffold id."""
        apply_scaffold_plan(make_context(make_plan({"a.txt": "A"})), env)
        apply_scaffold_plan(make_context(
            make_plan({"b.txt": "B"}), scaffold_id="s2", target_directory=target.parent / "other",
        ), env)

        found = checkpoints_for("s1", env.checkpoints)
        assert len(found) == 1
        print_checkpoint_list(found)
        assert found[0].id in capsys.readouterr().out

    def test_empty(self, capsys):
        """No checkpoints prints a notice."""
        print_checkpoint_list([])
        assert "No checkpoints" in capsys.readouterr().out

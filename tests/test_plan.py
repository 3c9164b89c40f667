"""Tests for plan loading and validation."""

import json

import pytest

from scaffold_apply.models import PlanItemKind
from scaffold_apply.plan import PlanError, load_plan, normalize_plan_path, plan_from_dict

VALID_PLAN = {
    "recipe_id": "fastapi-basic",
    "files": [
        {"kind": "dir", "path": "src"},
        {"kind": "file", "path": "src/main.py", "content": "app = None\n"},
        {"kind": "file", "path": "run.sh", "content": "#!/bin/sh\n", "executable": True},
    ],
    "commands": [{"label": "Install", "cmd": "pip install -e ."}],
}

VALID_YAML = """
recipe_id: fastapi-basic
files:
  - kind: dir
    path: src
  - kind: file
    path: src/main.py
    content: |
      app = None
"""


class TestNormalizePath:
    """normalize_plan_path() rules."""

    def test_strips_dot_segments(self):
        """./a//b becomes a/b."""
        assert normalize_plan_path("./a//b") == "a/b"

    def test_backslashes(self):
        """Windows separators are converted."""
        assert normalize_plan_path("a\\b.txt") == "a/b.txt"

    @pytest.mark.parametrize("bad", ["/etc/passwd", "../up.txt", "a/../../b", ".", ""])
    def test_rejects(self, bad):
        """Absolute, empty, and escaping paths are rejected."""
        with pytest.raises(PlanError):
            normalize_plan_path(bad)


class TestPlanFromDict:
    """Schema validation and conversion."""

    def test_valid(self):
        """Items keep order; dirs have no content; commands default to post_apply."""
        plan = plan_from_dict(VALID_PLAN)
        assert plan.recipe_id == "fastapi-basic"
        assert [i.kind for i in plan.items] == [PlanItemKind.DIR, PlanItemKind.FILE, PlanItemKind.FILE]
        assert plan.items[0].content is None
        assert plan.items[2].executable is True
        assert plan.commands[0].when == "post_apply"

    def test_reports_all_errors(self):
        """Every schema error is listed."""
        with pytest.raises(PlanError) as exc:
            plan_from_dict({"files": [{"kind": "link", "path": "a"}]})
        message = str(exc.value)
        assert "recipe_id" in message
        assert "link" in message

    def test_escaping_path(self):
        """Schema-valid but escaping paths are rejected."""
        with pytest.raises(PlanError, match="escapes"):
            plan_from_dict({"recipe_id": "r", "files": [{"kind": "file", "path": "../x"}]})


class TestLoadPlan:
    """Reading plan files."""

    def test_yaml(self, tmp_path):
        """YAML plans load."""
        path = tmp_path / "plan.yaml"
        path.write_text(VALID_YAML)
        plan = load_plan(path)
        assert plan.files()[0].content == "app = None\n"

    def test_json(self, tmp_path):
        """JSON plans load."""
        path = tmp_path / "plan.json"
        path.write_text(json.dumps(VALID_PLAN))
        assert len(load_plan(path).items) == 3

    def test_yaml_error_has_line(self, tmp_path):
        """YAML syntax errors report a line number."""
        path = tmp_path / "plan.yaml"
        path.write_text("recipe_id: r\nfiles: [\n")
        with pytest.raises(PlanError, match="line"):
            load_plan(path)

    def test_empty_file(self, tmp_path):
        """Empty files are rejected."""
        path = tmp_path / "plan.yaml"
        path.write_text("")
        with pytest.raises(PlanError, match="empty"):
            load_plan(path)

    def test_missing_file(self, tmp_path):
        """Unreadable files raise PlanError."""
        with pytest.raises(PlanError):
            load_plan(tmp_path / "nope.yaml")

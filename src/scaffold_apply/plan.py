"""Plan loading: reads a scaffold plan from YAML or JSON.

Plans are produced upstream (recipe templates or a model) and handed to the
engine as opaque content. This module only checks shape and paths; it never
looks inside file content.
Uses jsonschema for Draft-07 validation, PyYAML for YAML reading.
"""

import json
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List

import jsonschema
import yaml

from scaffold_apply.models import (
    PlanItem,
    PlanItemKind,
    PlannedCommand,
    ScaffoldApplyError,
    ScaffoldPlan,
)


class PlanError(ScaffoldApplyError):
    """Raised when a plan document is unreadable or invalid."""
    pass


PLAN_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["recipe_id", "files"],
    "properties": {
        "recipe_id": {"type": "string", "minLength": 1},
        "files": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["kind", "path"],
                "properties": {
                    "kind": {"enum": ["dir", "file"]},
                    "path": {"type": "string", "minLength": 1},
                    "content": {"type": "string"},
                    "executable": {"type": "boolean"},
                },
            },
        },
        "commands": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["label", "cmd"],
                "properties": {
                    "label": {"type": "string"},
                    "cmd": {"type": "string"},
                    "when": {"type": "string"},
                },
            },
        },
    },
}


def normalize_plan_path(raw: str) -> str:
    """
    Normalize a plan path to a relative POSIX path.

    Raises:
        PlanError: If the path is absolute, empty, or escapes the target via ..
    """
    candidate = PurePosixPath(raw.replace("\\", "/"))
    if candidate.is_absolute():
        raise PlanError(f"Plan path must be relative: {raw}")
    parts = [p for p in candidate.parts if p not in ("", ".")]
    if not parts:
        raise PlanError(f"Plan path is empty: {raw!r}")
    if ".." in parts:
        raise PlanError(f"Plan path escapes target directory: {raw}")
    return "/".join(parts)


def _validate_schema(data: Any) -> List[str]:
    """Return ALL schema errors for a plan document."""
    validator = jsonschema.Draft7Validator(PLAN_SCHEMA)
    errors = []
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"
        errors.append(f"{error.message} at {path}")
    return errors


def plan_from_dict(data: Any) -> ScaffoldPlan:
    """
    Build a ScaffoldPlan from a parsed plan document.

    Raises:
        PlanError: If the document does not match the plan schema or a path is invalid
    """
    errors = _validate_schema(data)
    if errors:
        raise PlanError("Invalid plan:\n  " + "\n  ".join(errors))

    items: List[PlanItem] = []
    for entry in data["files"]:
        kind = PlanItemKind(entry["kind"])
        items.append(PlanItem(
            kind=kind,
            path=normalize_plan_path(entry["path"]),
            content=entry.get("content", "") if kind == PlanItemKind.FILE else None,
            executable=bool(entry.get("executable", False)),
        ))

    commands = [
        PlannedCommand(label=c["label"], cmd=c["cmd"], when=c.get("when", "post_apply"))
        for c in data.get("commands", [])
    ]

    return ScaffoldPlan(recipe_id=data["recipe_id"], items=items, commands=commands)


def load_plan(plan_path: Path) -> ScaffoldPlan:
    """
    Load a plan from a .yaml/.yml or .json file.

    Raises:
        PlanError: If the file cannot be read or parsed, or fails validation
    """
    try:
        content = plan_path.read_text(encoding="utf-8")
    except OSError as e:
        raise PlanError(f"Cannot read plan file {plan_path}: {e}") from e

    if plan_path.suffix.lower() == ".json":
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise PlanError(f"JSON parse error in {plan_path} at line {e.lineno}: {e.msg}") from e
    else:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            if hasattr(e, "problem_mark") and e.problem_mark:
                mark = e.problem_mark
                raise PlanError(
                    f"YAML parse error in {plan_path} at line {mark.line + 1}, "
                    f"column {mark.column + 1}: {e.problem or 'syntax error'}"
                ) from e
            raise PlanError(f"YAML parse error in {plan_path}: {e}") from e

    if data is None:
        raise PlanError(f"Plan file is empty: {plan_path}")

    return plan_from_dict(data)

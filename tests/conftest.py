"""Shared fixtures: a workspace under tmp_path and an apply environment over it."""

from pathlib import Path

import pytest

from scaffold_apply.apply_executor import ApplyEnvironment
from scaffold_apply.checkpoint import CheckpointStore
from scaffold_apply.events import EventBus, EventCollector
from scaffold_apply.manifest import ManifestStore
from scaffold_apply.models import (
    ApplyContext,
    PlanItem,
    PlanItemKind,
    ScaffoldPlan,
)


def make_plan(files=None, dirs=(), recipe_id="recipe-basic", executable=()):
    """Build a plan from {path: content} plus directory markers."""
    items = [PlanItem(kind=PlanItemKind.DIR, path=d) for d in dirs]
    for path, content in (files or {}).items():
        items.append(PlanItem(
            kind=PlanItemKind.FILE,
            path=path,
            content=content,
            executable=path in executable,
        ))
    return ScaffoldPlan(recipe_id=recipe_id, items=items)


@pytest.fixture
def workspace(tmp_path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def target(workspace) -> Path:
    return workspace / "app"


@pytest.fixture
def collector() -> EventCollector:
    return EventCollector()


@pytest.fixture
def env(workspace, collector) -> ApplyEnvironment:
    bus = EventBus()
    bus.subscribe(collector)
    state = workspace / ".scaffold"
    return ApplyEnvironment(
        manifests=ManifestStore(state / "evidence"),
        checkpoints=CheckpointStore(state / "checkpoints"),
        bus=bus,
        lock_dir=state / "locks",
    )


@pytest.fixture
def make_context(workspace, target):
    def _make(plan, scaffold_id="s1", **kwargs):
        kwargs.setdefault("target_directory", target)
        return ApplyContext(
            scaffold_id=scaffold_id,
            plan=plan,
            workspace_root=workspace,
            **kwargs,
        )
    return _make


def tree(root: Path) -> dict:
    """Map of relative path -> bytes (files) or None (dirs) under root."""
    result = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        result[rel] = path.read_bytes() if path.is_file() else None
    return result

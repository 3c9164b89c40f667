"""Scaffold apply executor.

Atomic, rollback-safe apply of a scaffold plan onto a target directory.

Rules:
1. Replay invocations never touch the filesystem
2. Never re-apply a scaffold whose manifest exists
3. Never silently overwrite - conflicts return a decision request
4. replace_all deletes nothing until it has been confirmed a second time
5. Checkpoint before the first mutation; any failure after it restores the checkpoint
6. No exception crosses apply_scaffold_plan(); every outcome is an ApplyResult

States:
    INIT -> REPLAY_CHECK -> (ALREADY_APPLIED | CONFLICT_CHECK)
         -> (NEEDS_DECISION | CANCELLED | CHECKPOINT) -> WRITE -> MANIFEST_WRITE -> DONE
    WRITE / MANIFEST_WRITE -> ROLLBACK -> FAILED
"""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import AbstractSet, Callable, Dict, List, Optional

from typing_extensions import assert_never

from scaffold_apply.checkpoint import CheckpointStore
from scaffold_apply.config import Config
from scaffold_apply.conflicts import (
    clear_directory_contents,
    detect,
    filter_for_merge_safe_only,
    list_files_for_deletion,
)
from scaffold_apply.constants import EXECUTABLE_MODE, HARMLESS_ENTRIES
from scaffold_apply.decisions import build_conflict_decision, build_replace_confirm_decision
from scaffold_apply.events import Event, EventBus, EventType
from scaffold_apply.lock import ApplyLock
from scaffold_apply.manifest import ManifestStore, create_manifest_file, manifest_ref
from scaffold_apply.models import (
    ApplyContext,
    ApplyManifest,
    ApplyResult,
    ApplyStage,
    ApplyState,
    ApplyStrategy,
    ConflictAction,
    ConflictCheckResult,
    DecisionRequest,
    ManifestFile,
    PlanItem,
)

logger = logging.getLogger(__name__)

REPLAY_ERROR = "Replay mode - filesystem operations not allowed"

TERMINAL_STATES = frozenset({
    ApplyState.ALREADY_APPLIED,
    ApplyState.NEEDS_DECISION,
    ApplyState.CANCELLED,
    ApplyState.DONE,
    ApplyState.FAILED,
})


@dataclass
class ApplyEnvironment:
    """Stores and settings shared by every invocation in one workspace."""
    manifests: ManifestStore
    checkpoints: Optional[CheckpointStore] = None
    bus: EventBus = field(default_factory=EventBus)
    harmless: AbstractSet[str] = HARMLESS_ENTRIES
    lock_dir: Optional[Path] = None

    @classmethod
    def from_config(cls, config: Config, bus: Optional[EventBus] = None) -> "ApplyEnvironment":
        return cls(
            manifests=ManifestStore(config.evidence_dir),
            checkpoints=CheckpointStore(config.checkpoint_dir) if config.checkpoint_dir else None,
            bus=bus or EventBus(),
            harmless=config.harmless,
            lock_dir=config.lock_dir if config.lock_enabled else None,
        )

    @property
    def strategy(self) -> ApplyStrategy:
        return ApplyStrategy.CHECKPOINT if self.checkpoints else ApplyStrategy.TEMP_STAGING

    def protected_paths(self) -> List[Path]:
        """Engine state directories; never captured, cleared or restored."""
        paths = [self.manifests.evidence_dir]
        if self.checkpoints:
            paths.append(self.checkpoints.checkpoint_dir)
        if self.lock_dir:
            paths.append(self.lock_dir)
        return paths


@dataclass
class ApplyRun:
    """Working state of one apply_scaffold_plan() invocation."""
    ctx: ApplyContext
    env: ApplyEnvironment
    started: float = field(default_factory=time.monotonic)
    conflict_result: Optional[ConflictCheckResult] = None
    items_to_create: List[PlanItem] = field(default_factory=list)
    skipped_files: List[str] = field(default_factory=list)
    clear_target: bool = False
    lock: Optional[ApplyLock] = None
    checkpoint_id: Optional[str] = None
    mutation_started: bool = False
    manifest_dirs: List[str] = field(default_factory=list)
    created_dirs: List[str] = field(default_factory=list)
    created_files: List[str] = field(default_factory=list)
    partial_file: Optional[str] = None
    manifest_files: List[ManifestFile] = field(default_factory=list)
    error: Optional[str] = None
    failed_stage: Optional[ApplyStage] = None
    failed_path: Optional[str] = None
    result: Optional[ApplyResult] = None

    @property
    def target(self) -> Path:
        return Path(self.ctx.target_directory)


# --- Filesystem operations ---

def write_plan_file(path: Path, content: str, executable: bool) -> None:
    """Write one plan file byte-exact as UTF-8."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content.encode("utf-8"))
    if executable:
        os.chmod(path, EXECUTABLE_MODE)


def _ordered_unique(paths: List[str]) -> List[str]:
    return list(dict.fromkeys(paths))


def _parent_dirs(items: List[PlanItem]) -> List[str]:
    parents = []
    for item in items:
        if not item.is_file:
            continue
        parent = Path(item.path).parent.as_posix()
        if parent and parent != ".":
            parents.append(parent)
    return _ordered_unique(parents)


def _dir_chain(rel_dir: str) -> List[str]:
    """rel_dir and each of its ancestors, shallowest first."""
    rel = Path(rel_dir)
    ancestors = [p for p in reversed(rel.parents) if p != Path(".")]
    return [p.as_posix() for p in ancestors + [rel]]


# --- Event emission ---

def _emit(run: ApplyRun, event_type: EventType, payload: Dict) -> None:
    run.env.bus.publish(Event(
        type=event_type,
        scaffold_id=run.ctx.scaffold_id,
        run_id=run.ctx.run_id,
        payload={"scaffold_id": run.ctx.scaffold_id, **payload},
    ))


def _emit_decision(run: ApplyRun, decision: DecisionRequest) -> None:
    _emit(run, EventType.DECISION_POINT_NEEDED, {
        "decision_type": decision.decision_type.value,
        "title": decision.title,
        "description": decision.description,
        "options": [o.to_dict() for o in decision.options()],
        "checks": [c.to_dict() for c in decision.checks],
        "target_directory": decision.target_directory,
    })


def _emit_failed(run: ApplyRun) -> None:
    payload = {
        "target_directory": str(run.target),
        "stage": run.failed_stage.value if run.failed_stage else ApplyStage.PRECHECK.value,
        "error_message": run.error or "",
    }
    if run.failed_path:
        payload["failed_path"] = run.failed_path
    _emit(run, EventType.SCAFFOLD_APPLY_FAILED, payload)
    _emit(run, EventType.SCAFFOLD_COMPLETED, {"status": "failure"})


def _fail_precheck(run: ApplyRun, error: str) -> ApplyState:
    """Failure before any mutation: report it, nothing to roll back."""
    run.error = error
    run.failed_stage = ApplyStage.PRECHECK
    logger.error("Apply %s failed at precheck: %s", run.ctx.scaffold_id, error)
    _emit_failed(run)
    run.result = ApplyResult(
        ok=False,
        state=ApplyState.FAILED,
        error=error,
        failed_stage=ApplyStage.PRECHECK,
        checkpoint_id=run.checkpoint_id,
    )
    return ApplyState.FAILED


# --- Stages ---

def stage_init(run: ApplyRun) -> ApplyState:
    if run.ctx.is_replay:
        run.result = ApplyResult(ok=False, state=ApplyState.FAILED, error=REPLAY_ERROR)
        return ApplyState.FAILED
    return ApplyState.REPLAY_CHECK


def stage_replay_check(run: ApplyRun) -> ApplyState:
    if run.env.manifests.was_applied(run.ctx.scaffold_id):
        logger.info("Scaffold %s already applied; skipping", run.ctx.scaffold_id)
        run.result = ApplyResult(
            ok=True,
            state=ApplyState.ALREADY_APPLIED,
            manifest_ref=manifest_ref(run.ctx.scaffold_id),
        )
        return ApplyState.ALREADY_APPLIED

    plan = run.ctx.plan
    _emit(run, EventType.SCAFFOLD_APPLY_STARTED, {
        "recipe_id": plan.recipe_id,
        "target_directory": str(run.target),
        "files_count": len(plan.files()),
        "directories_count": len(plan.dirs()),
    })
    return ApplyState.CONFLICT_CHECK


def _needs_conflict_decision(run: ApplyRun, result: ConflictCheckResult) -> ApplyState:
    decision = build_conflict_decision(result, run.target, run.ctx.suggested_directory)
    _emit(run, EventType.SCAFFOLD_CONFLICT_DETECTED, {
        "target_directory": str(run.target),
        "conflicts": [c.to_dict() for c in result.conflicts],
        "suggested_actions": [a.value for a in result.suggested_actions],
    })
    _emit_decision(run, decision)
    run.result = ApplyResult(
        ok=False,
        state=ApplyState.NEEDS_DECISION,
        needs_input=True,
        pending_conflict=result,
        decision=decision,
    )
    return ApplyState.NEEDS_DECISION


def stage_conflict_check(run: ApplyRun) -> ApplyState:
    ctx = run.ctx
    mode = ctx.conflict_mode

    if mode == ConflictAction.CANCEL:
        run.error = "User cancelled"
        run.failed_stage = ApplyStage.PRECHECK
        _emit_failed(run)
        run.result = ApplyResult(
            ok=False,
            state=ApplyState.CANCELLED,
            error="User cancelled",
            failed_stage=ApplyStage.PRECHECK,
        )
        return ApplyState.CANCELLED

    result = detect(
        ctx.workspace_root,
        run.target,
        ctx.plan,
        harmless=run.env.harmless,
        protected=run.env.protected_paths(),
    )
    run.conflict_result = result
    run.items_to_create = list(ctx.plan.items)

    if not result.has_conflicts:
        return ApplyState.CHECKPOINT

    # A mode the detector did not offer (e.g. merge on an outside-workspace target) is no answer
    if mode is None or mode not in result.suggested_actions:
        return _needs_conflict_decision(run, result)

    if mode == ConflictAction.CHOOSE_NEW_DIR:
        run.result = ApplyResult(
            ok=False,
            state=ApplyState.NEEDS_DECISION,
            needs_input=True,
            pending_conflict=result,
            error="User requested new directory selection",
        )
        return ApplyState.NEEDS_DECISION
    elif mode == ConflictAction.REPLACE_ALL:
        if not ctx.replace_confirmed:
            decision = build_replace_confirm_decision(
                run.target,
                list_files_for_deletion(run.target, run.env.protected_paths()),
            )
            _emit_decision(run, decision)
            run.result = ApplyResult(
                ok=False,
                state=ApplyState.NEEDS_DECISION,
                needs_input=True,
                pending_conflict=result,
                decision=decision,
            )
            return ApplyState.NEEDS_DECISION
        if run.env.checkpoints is None:
            return _fail_precheck(run, "replace_all requires a checkpoint store; none is configured")
        run.clear_target = True
        return ApplyState.CHECKPOINT
    elif mode == ConflictAction.MERGE_SAFE_ONLY:
        to_create, to_skip = filter_for_merge_safe_only(run.target, list(ctx.plan.items))
        run.items_to_create = to_create
        run.skipped_files = [item.path for item in to_skip]
        return ApplyState.CHECKPOINT
    elif mode == ConflictAction.CANCEL:
        # Handled before detection
        raise AssertionError("cancel reached conflict resolution")
    else:
        assert_never(mode)


def stage_checkpoint(run: ApplyRun) -> ApplyState:
    env = run.env

    if env.lock_dir is not None:
        lock = ApplyLock(env.lock_dir, run.target, owner=run.ctx.scaffold_id)
        try:
            lock.acquire()
        except Exception as e:
            return _fail_precheck(run, str(e))
        run.lock = lock

    if env.checkpoints is not None:
        try:
            run.checkpoint_id = env.checkpoints.snapshot(
                run.ctx.scaffold_id,
                run.target,
                protected=env.protected_paths(),
            )
        except Exception as e:
            return _fail_precheck(run, f"Checkpoint failed: {e}")
        _emit(run, EventType.CHECKPOINT_CREATED, {
            "checkpoint_id": run.checkpoint_id,
            "scope": [str(run.target)],
            "description": f"Scaffold checkpoint before applying {run.ctx.plan.recipe_id}",
        })

    return ApplyState.WRITE


def stage_write(run: ApplyRun) -> ApplyState:
    target = run.target
    run.mutation_started = True

    if run.clear_target:
        try:
            clear_directory_contents(target, run.env.protected_paths())
        except Exception as e:
            run.error = f"Failed to clear target directory: {e}"
            run.failed_stage = ApplyStage.WRITE
            run.failed_path = str(target)
            return ApplyState.ROLLBACK

    plan_dirs = [item.path for item in run.items_to_create if not item.is_file]
    run.manifest_dirs = _ordered_unique(plan_dirs + _parent_dirs(run.items_to_create))

    try:
        target.mkdir(parents=True, exist_ok=True)
    except Exception as e:
        run.error = str(e)
        run.failed_stage = ApplyStage.MKDIR
        run.failed_path = str(target)
        return ApplyState.ROLLBACK

    # created_dirs lists every directory made here, ancestors included
    for rel_dir in run.manifest_dirs:
        for rel in _dir_chain(rel_dir):
            abs_dir = target / rel
            if abs_dir.is_dir():
                continue
            try:
                abs_dir.mkdir()
            except Exception as e:
                run.error = str(e)
                run.failed_stage = ApplyStage.MKDIR
                run.failed_path = rel
                return ApplyState.ROLLBACK
            run.created_dirs.append(rel)
            logger.debug("Created directory %s", rel)

    for item in run.items_to_create:
        if not item.is_file:
            continue
        content = item.content or ""
        try:
            write_plan_file(target / item.path, content, item.executable)
        except Exception as e:
            # Absent before this attempt; whatever landed is ours to remove
            run.partial_file = item.path
            run.error = str(e)
            run.failed_stage = ApplyStage.WRITE
            run.failed_path = item.path
            return ApplyState.ROLLBACK
        run.created_files.append(item.path)
        run.manifest_files.append(create_manifest_file(
            item.path,
            content,
            EXECUTABLE_MODE if item.executable else None,
        ))
        logger.debug("Wrote %s", item.path)

    logger.info("Wrote %d file(s) and %d new director(ies) into %s",
                len(run.created_files), len(run.created_dirs), target)
    return ApplyState.MANIFEST_WRITE


def stage_manifest_write(run: ApplyRun) -> ApplyState:
    ctx = run.ctx
    manifest = ApplyManifest(
        scaffold_id=ctx.scaffold_id,
        recipe_id=ctx.plan.recipe_id,
        target_directory=str(run.target),
        created_at=datetime.now(timezone.utc).isoformat(),
        files=run.manifest_files,
        dirs=run.manifest_dirs,
        commands_planned=[c.to_dict() for c in ctx.plan.commands] or None,
        skipped_files=run.skipped_files or None,
        checkpoint_id=run.checkpoint_id,
        strategy=run.env.strategy,
        duration_ms=int((time.monotonic() - run.started) * 1000),
    )

    try:
        ref = run.env.manifests.write(manifest)
    except Exception as e:
        run.error = f"Manifest write failed: {e}"
        run.failed_stage = ApplyStage.FINALIZE
        return ApplyState.ROLLBACK

    _emit(run, EventType.SCAFFOLD_APPLIED, {
        "recipe_id": manifest.recipe_id,
        "target_directory": manifest.target_directory,
        "files_created": [f.path for f in manifest.files],
        "dirs_created": list(manifest.dirs),
        "manifest_ref": ref,
        "checkpoint_id": run.checkpoint_id,
        "skipped_files": manifest.skipped_files,
    })
    _emit(run, EventType.SCAFFOLD_COMPLETED, {"status": "success"})

    run.result = ApplyResult(
        ok=True,
        state=ApplyState.DONE,
        manifest_ref=ref,
        created_files=list(run.created_files),
        created_dirs=list(run.created_dirs),
        skipped_files=list(run.skipped_files) or None,
        checkpoint_id=run.checkpoint_id,
    )
    return ApplyState.DONE


def _undo_created(run: ApplyRun) -> None:
    """temp_staging rollback: remove only what this attempt created."""
    files = list(run.created_files)
    if run.partial_file:
        files.append(run.partial_file)
    for rel in reversed(files):
        path = run.target / rel
        if path.exists() or path.is_symlink():
            path.unlink()
    for rel in sorted(run.created_dirs, key=lambda d: d.count("/"), reverse=True):
        path = run.target / rel
        if path.is_dir() and not any(path.iterdir()):
            path.rmdir()


def stage_rollback(run: ApplyRun) -> ApplyState:
    logger.warning("Rolling back %s after %s failure: %s",
                   run.ctx.scaffold_id,
                   run.failed_stage.value if run.failed_stage else "unknown",
                   run.error)
    error = run.error or "Apply failed"

    try:
        if run.checkpoint_id and run.env.checkpoints is not None:
            run.env.checkpoints.restore(
                run.checkpoint_id,
                run.target,
                protected=run.env.protected_paths(),
            )
            _emit(run, EventType.CHECKPOINT_RESTORED, {
                "checkpoint_id": run.checkpoint_id,
                "scope": [str(run.target)],
                "description": "Restored after scaffold apply failure",
            })
        else:
            _undo_created(run)
    except Exception as e:
        logger.error("Rollback of %s failed: %s", run.ctx.scaffold_id, e)
        error = f"{error} (rollback failed: {e})"
        run.error = error

    _emit_failed(run)
    run.result = ApplyResult(
        ok=False,
        state=ApplyState.FAILED,
        error=error,
        failed_stage=run.failed_stage or ApplyStage.WRITE,
        failed_path=run.failed_path,
        checkpoint_id=run.checkpoint_id,
    )
    return ApplyState.FAILED


STAGES: Dict[ApplyState, Callable[[ApplyRun], ApplyState]] = {
    ApplyState.INIT: stage_init,
    ApplyState.REPLAY_CHECK: stage_replay_check,
    ApplyState.CONFLICT_CHECK: stage_conflict_check,
    ApplyState.CHECKPOINT: stage_checkpoint,
    ApplyState.WRITE: stage_write,
    ApplyState.MANIFEST_WRITE: stage_manifest_write,
    ApplyState.ROLLBACK: stage_rollback,
}


def step(run: ApplyRun, state: ApplyState) -> ApplyState:
    """
    Run one stage and return the next state.

    Unexpected exceptions are converted here: before any mutation they are a
    precheck failure, after it they go through rollback.
    """
    try:
        return STAGES[state](run)
    except Exception as e:
        logger.exception("Unexpected error in %s for %s", state.value, run.ctx.scaffold_id)
        if run.mutation_started and state != ApplyState.ROLLBACK:
            run.error = str(e)
            run.failed_stage = run.failed_stage or ApplyStage.WRITE
            return ApplyState.ROLLBACK
        if state == ApplyState.ROLLBACK:
            run.result = ApplyResult(
                ok=False,
                state=ApplyState.FAILED,
                error=f"{run.error} (rollback failed: {e})",
                failed_stage=run.failed_stage or ApplyStage.WRITE,
                failed_path=run.failed_path,
                checkpoint_id=run.checkpoint_id,
            )
            return ApplyState.FAILED
        return _fail_precheck(run, str(e))


def finish(run: ApplyRun) -> ApplyResult:
    """Release the lock and return the result of a run that reached a terminal state."""
    if run.lock is not None:
        try:
            run.lock.release()
        except OSError as e:
            logger.error("Cannot release lock %s: %s", run.lock.path, e)
        run.lock = None
    if run.result is None:
        return ApplyResult(ok=False, state=ApplyState.FAILED, error="Apply ended without a result")
    return run.result


def apply_scaffold_plan(ctx: ApplyContext, env: ApplyEnvironment) -> ApplyResult:
    """
    Apply a scaffold plan to disk.

    Handles replay safety, conflict detection, checkpointing, writing and
    rollback. Call again with an updated context (see decisions.apply_resolutions)
    whenever the result has needs_input=True.

    Args:
        ctx: Invocation context
        env: Stores, event bus and settings for the workspace

    Returns:
        ApplyResult; never raises
    """
    run = ApplyRun(ctx=ctx, env=env)
    state = ApplyState.INIT
    try:
        while state not in TERMINAL_STATES:
            logger.debug("Apply %s: %s", ctx.scaffold_id, state.value)
            state = step(run, state)
    finally:
        result = finish(run)
    return result

"""Conflict detection before scaffold apply.

Detects conflicts so that nothing is ever silently overwritten:
1. Target must be inside the workspace root
2. A non-empty target directory requires an explicit decision
3. Existing files cannot be overwritten without one

The default action is always "choose a different folder", the least
destructive choice.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import AbstractSet, List, Optional, Sequence, Tuple

from scaffold_apply.constants import HARMLESS_ENTRIES, SUMMARY_PREVIEW_LIMIT
from scaffold_apply.models import (
    ConflictAction,
    ConflictCheckResult,
    ConflictReason,
    ConflictRecord,
    PlanItem,
    ScaffoldPlan,
)

logger = logging.getLogger(__name__)


def is_inside_workspace(workspace_root: Path, target: Path) -> bool:
    """
    Check whether target equals or descends from workspace_root.

    Both paths must be absolute. Paths are normalized lexically, so
    /home/user/project contains /home/user/project/src but not
    /home/user/project2.
    """
    if not os.path.isabs(workspace_root) or not os.path.isabs(target):
        return False

    root = os.path.normpath(str(workspace_root))
    candidate = os.path.normpath(str(target))
    root_with_sep = root if root.endswith(os.sep) else root + os.sep

    return candidate == root or candidate.startswith(root_with_sep)


def _norm(path: Path) -> str:
    return os.path.normpath(os.path.abspath(path))


def is_protected(path: Path, protected: Sequence[Path]) -> bool:
    """True if path is one of the protected paths."""
    candidate = _norm(path)
    return any(candidate == _norm(p) for p in protected)


def contains_protected(path: Path, protected: Sequence[Path]) -> bool:
    """True if some protected path lies strictly below path."""
    prefix = _norm(path) + os.sep
    return any(_norm(p).startswith(prefix) for p in protected)


def _occupied(path: Path) -> bool:
    """Something is at path, dangling symlinks included."""
    return path.exists() or path.is_symlink()


def _preview(names: List[str]) -> str:
    shown = ", ".join(names[:SUMMARY_PREVIEW_LIMIT])
    return shown + ("..." if len(names) > SUMMARY_PREVIEW_LIMIT else "")


def _check_directory(
    target: Path,
    harmless: AbstractSet[str],
    protected: Sequence[Path],
) -> Optional[ConflictRecord]:
    """Return a dir_not_empty conflict if target holds anything non-harmless."""
    if not target.exists():
        return None

    if not target.is_dir():
        return ConflictRecord(
            path=str(target),
            reason=ConflictReason.DIR_NOT_EMPTY,
            description=f"Target path exists but is a file, not a directory: {target}",
        )

    try:
        entries = sorted(os.listdir(target))
    except OSError as e:
        logger.warning("Cannot list target directory %s: %s", target, e)
        return ConflictRecord(
            path=str(target),
            reason=ConflictReason.DIR_NOT_EMPTY,
            description=f"Cannot read directory: {target}",
        )

    visible = [
        e for e in entries
        if e not in harmless
        and not is_protected(target / e, protected)
        and not contains_protected(target / e, protected)
    ]
    if not visible:
        return None

    return ConflictRecord(
        path=str(target),
        reason=ConflictReason.DIR_NOT_EMPTY,
        description=f"Directory is not empty ({len(visible)} item(s): {_preview(visible)}): {target}",
    )


def _build_summary(conflicts: List[ConflictRecord]) -> str:
    parts: List[str] = []
    reasons = {c.reason for c in conflicts}
    if ConflictReason.OUTSIDE_WORKSPACE in reasons:
        parts.append("Target is outside workspace")
    if ConflictReason.DIR_NOT_EMPTY in reasons:
        parts.append("Target directory is not empty")
    if ConflictReason.EXISTS in reasons:
        existing = sum(1 for c in conflicts if c.reason == ConflictReason.EXISTS)
        parts.append(f"{existing} file(s) would be overwritten")
    return ". ".join(parts) + "."


def detect(
    workspace_root: Path,
    target_directory: Path,
    plan: ScaffoldPlan,
    harmless: AbstractSet[str] = HARMLESS_ENTRIES,
    protected: Sequence[Path] = (),
) -> ConflictCheckResult:
    """
    Check a target directory against a plan.

    Args:
        workspace_root: Workspace root (absolute)
        target_directory: Scaffold target (absolute)
        plan: Items planned for creation
        harmless: Top-level entries that do not make a directory "non-empty"
        protected: Engine state paths inside the target; never counted as content

    Returns:
        ConflictCheckResult; suggested actions are ordered least destructive first
    """
    target = Path(target_directory)

    if not is_inside_workspace(Path(workspace_root), target):
        logger.info("Target %s is outside workspace %s", target, workspace_root)
        return ConflictCheckResult(
            has_conflicts=True,
            conflicts=[ConflictRecord(
                path=str(target),
                reason=ConflictReason.OUTSIDE_WORKSPACE,
                description=f"Target directory is outside workspace: {target}",
            )],
            suggested_actions=[ConflictAction.CHOOSE_NEW_DIR, ConflictAction.CANCEL],
            default_action=ConflictAction.CHOOSE_NEW_DIR,
            summary="Target directory is outside the workspace. Please choose a different location.",
        )

    conflicts: List[ConflictRecord] = []

    dir_conflict = _check_directory(target, harmless, protected)
    if dir_conflict is not None:
        conflicts.append(dir_conflict)

    for item in plan.files():
        if _occupied(target / item.path):
            conflicts.append(ConflictRecord(
                path=item.path,
                reason=ConflictReason.EXISTS,
                description=f"File already exists: {item.path}",
            ))

    if not conflicts:
        return ConflictCheckResult(
            has_conflicts=False,
            summary="No conflicts detected. Ready to apply.",
        )

    # Outside-workspace returned early above, so merge/replace are always valid here
    suggested = [
        ConflictAction.CHOOSE_NEW_DIR,
        ConflictAction.MERGE_SAFE_ONLY,
        ConflictAction.REPLACE_ALL,
        ConflictAction.CANCEL,
    ]

    summary = _build_summary(conflicts)
    logger.info("Conflicts in %s: %s", target, summary)

    return ConflictCheckResult(
        has_conflicts=True,
        conflicts=conflicts,
        suggested_actions=suggested,
        default_action=ConflictAction.CHOOSE_NEW_DIR,
        summary=summary,
    )


# --- Merge helpers ---

def filter_for_merge_safe_only(
    target_directory: Path,
    items: List[PlanItem],
) -> Tuple[List[PlanItem], List[PlanItem]]:
    """
    Split plan items for merge_safe_only mode.

    Directories are always created (mkdir -p on an existing directory is a
    no-op). Files are skipped when something already exists at their path.

    Returns:
        (to_create, to_skip)
    """
    to_create: List[PlanItem] = []
    to_skip: List[PlanItem] = []

    for item in items:
        if not item.is_file:
            to_create.append(item)
        elif _occupied(Path(target_directory) / item.path):
            to_skip.append(item)
        else:
            to_create.append(item)

    return to_create, to_skip


# --- Cleanup helpers (replace_all) ---

def list_files_for_deletion(target_directory: Path, protected: Sequence[Path] = ()) -> List[str]:
    """
    List files replace_all would delete, as relative POSIX paths.

    Preview only. Deletion itself is gated behind replace confirmation.
    """
    target = Path(target_directory)
    if not target.is_dir():
        return []

    files: List[str] = []
    try:
        for root, dirnames, filenames in os.walk(target):
            dirnames[:] = sorted(d for d in dirnames if not is_protected(Path(root) / d, protected))
            rel_root = Path(root).relative_to(target)
            for name in sorted(filenames):
                files.append((rel_root / name).as_posix())
    except OSError as e:
        logger.error("Failed to list files in %s: %s", target, e)
    return files


def clear_directory_contents(target_directory: Path, protected: Sequence[Path] = ()) -> None:
    """
    Delete everything under target_directory, keeping the directory itself.

    Protected paths (the engine's own state directories when they live inside
    the target) and the directories leading to them are kept.
    Destructive. Only call after explicit confirmation and a checkpoint.
    """
    target = Path(target_directory)
    if not target.exists():
        return

    for entry in sorted(target.iterdir()):
        if is_protected(entry, protected):
            continue
        if entry.is_dir() and not entry.is_symlink():
            if contains_protected(entry, protected):
                clear_directory_contents(entry, protected)
            else:
                shutil.rmtree(entry)
        else:
            entry.unlink()
    logger.info("Cleared contents of %s", target)

"""Minimal observation surface for applied scaffolds.

Read-only. Reads manifests and checkpoints, never writes them.
"""

from pathlib import Path
from typing import List, Optional

from scaffold_apply.checkpoint import CheckpointStore
from scaffold_apply.constants import CHECKPOINT_PREFIX
from scaffold_apply.manifest import ManifestStore, generate_manifest_summary
from scaffold_apply.models import Checkpoint, EntryType


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"


def checkpoints_for(scaffold_id: str, checkpoints: CheckpointStore) -> List[Checkpoint]:
    """Checkpoints taken for a scaffold, newest first."""
    prefix = f"{CHECKPOINT_PREFIX}{scaffold_id}_"
    return [cp for cp in checkpoints.list_checkpoints() if cp.id.startswith(prefix)]


def print_summary(
    scaffold_id: str,
    manifests: ManifestStore,
    checkpoints: Optional[CheckpointStore] = None,
) -> None:
    """
    Print a human-readable summary of a scaffold's apply record.

    Goal: understand what an apply did in under 30 seconds.
    """
    manifest = manifests.load(scaffold_id)

    # Header
    print("=" * 60)
    print(f"SCAFFOLD SUMMARY: {scaffold_id}")
    print("=" * 60)
    print()

    if manifest is None:
        print("No manifest found - scaffold has not been applied.")
        print()
        print("Searched:")
        print(f"  Evidence: {manifests.evidence_dir}")
        return

    print("APPLY")
    print("-" * 40)
    print(f"  Recipe:      {manifest.recipe_id}")
    print(f"  Target:      {manifest.target_directory}")
    print(f"  Strategy:    {manifest.strategy.value}")
    print(f"  Duration:    {format_duration(manifest.duration_ms / 1000)}")
    print(f"  Time:        {manifest.created_at[:19]}")
    print(f"  Result:      {generate_manifest_summary(manifest)}")
    print()

    if manifest.files:
        print("FILES")
        print("-" * 40)
        for f in manifest.files[:10]:
            mode = " (exec)" if f.mode else ""
            print(f"    {f.path}  {f.bytes}B  {f.sha256[:12]}{mode}")
        if len(manifest.files) > 10:
            print(f"    ... and {len(manifest.files) - 10} more")
        print()

    if manifest.skipped_files:
        print("SKIPPED (already existed)")
        print("-" * 40)
        for path in manifest.skipped_files:
            print(f"    {path}")
        print()

    if manifest.commands_planned:
        print("PLANNED COMMANDS (not run)")
        print("-" * 40)
        for cmd in manifest.commands_planned:
            print(f"    {cmd.get('label', '')}: {cmd.get('cmd', '')}")
        print()

    if checkpoints is not None:
        found = checkpoints_for(scaffold_id, checkpoints)
        if found:
            print("CHECKPOINTS")
            print("-" * 40)
            for cp in found[:5]:
                marker = " (used)" if cp.id == manifest.checkpoint_id else ""
                print(f"    {cp.id}  {cp.created_at[:19]}  {len(cp.entries)} entries{marker}")
            print()

    # Final verdict
    report = manifests.validate_integrity(manifest)
    print("VERDICT")
    print("-" * 40)
    if report.valid:
        print("  ✓ INTACT - All files match the manifest")
    else:
        print(f"  ✗ DRIFTED - {len(report.missing_files)} missing, "
              f"{len(report.hash_mismatches)} modified")
    print()


def print_checkpoint_list(checkpoints: List[Checkpoint]) -> None:
    """Print one line per checkpoint."""
    if not checkpoints:
        print("No checkpoints found.")
        return
    for cp in checkpoints:
        files = sum(1 for e in cp.entries if e.type == EntryType.FILE)
        dirs = sum(1 for e in cp.entries if e.type == EntryType.DIR)
        target = Path(cp.target_directory)
        print(f"{cp.id}  {cp.created_at[:19]}  {files} file(s), {dirs} dir(s)  {target}")

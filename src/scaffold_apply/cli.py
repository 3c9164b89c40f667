"""CLI entrypoint for the scaffold apply engine."""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Optional, Tuple

import click
from dotenv import load_dotenv

from scaffold_apply.apply_executor import ApplyEnvironment, apply_scaffold_plan
from scaffold_apply.checkpoint import CheckpointError, CheckpointStore
from scaffold_apply.config import Config, ConfigError, load_config
from scaffold_apply.constants import HARMLESS_ENTRIES
from scaffold_apply.lock import break_lock
from scaffold_apply.manifest import ManifestError, ManifestStore
from scaffold_apply.models import (
    ApplyContext,
    ApplyResult,
    ApplyState,
    ConflictAction,
    DecisionType,
)
from scaffold_apply.observe import checkpoints_for, print_checkpoint_list, print_summary
from scaffold_apply.plan import PlanError, load_plan

# Load .env file on CLI startup
load_dotenv()

EXIT_NEEDS_INPUT = 2


@click.group()
@click.version_option(package_name="scaffold-apply")
@click.option(
    "--workspace",
    default=".",
    type=click.Path(file_okay=False),
    help="Workspace root (default: current directory).",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False, exists=True),
    help="YAML config file (default: <workspace>/scaffold.yaml if present).",
)
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level.")
@click.pass_context
def cli(ctx: click.Context, workspace: str, config_path: Optional[str], verbose: bool):
    """Scaffold CLI - apply file plans safely, with checkpoints and rollback."""
    ctx.ensure_object(dict)
    ctx.obj["workspace"] = Path(workspace)
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["verbose"] = verbose


def _load(ctx: click.Context) -> Config:
    """Resolve config for the group options and set up logging."""
    try:
        config = load_config(ctx.obj["workspace"], ctx.obj["config_path"])
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)

    level = logging.DEBUG if ctx.obj["verbose"] else getattr(logging, config.log_level)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger("scaffold_apply").setLevel(level)
    return config


def _resolve_target(config: Config, target: str) -> Path:
    path = Path(target).expanduser()
    if not path.is_absolute():
        path = config.workspace_root / path
    return Path(os.path.normpath(path))


def _default_scaffold_id(recipe_id: str, target: Path) -> str:
    digest = hashlib.sha256(str(target).encode("utf-8")).hexdigest()[:8]
    return f"{recipe_id}_{digest}"


def _print_result(result: ApplyResult) -> None:
    if result.state == ApplyState.DONE:
        click.echo(f"Applied: {result.manifest_ref}")
        for path in result.created_files or []:
            click.echo(f"  Created: {path}")
        for path in result.skipped_files or []:
            click.echo(f"  Skipped: {path} (already exists)")
        if result.checkpoint_id:
            click.echo(f"Checkpoint: {result.checkpoint_id}")
        return

    if result.state == ApplyState.ALREADY_APPLIED:
        click.echo(f"Already applied: {result.manifest_ref}")
        return

    if result.needs_input:
        decision = result.decision
        if decision is None:
            click.echo(result.error or "Input needed.")
            click.echo("Re-run with a different --target.")
            return
        click.echo(decision.title)
        click.echo("-" * 40)
        click.echo(decision.description)
        click.echo()
        for option in decision.options():
            tags = []
            if option.primary:
                tags.append("recommended")
            if option.destructive:
                tags.append("destructive")
            suffix = f" [{', '.join(tags)}]" if tags else ""
            click.echo(f"  {option.id}: {option.label} - {option.description}{suffix}")
        click.echo()
        if decision.decision_type == DecisionType.SCAFFOLD_REPLACE_CONFIRM:
            click.echo("Re-run with --mode replace_all --confirm-replace to delete and replace.")
        else:
            click.echo("Re-run with --mode <option> (or --target <dir>) to continue.")
        return

    click.echo(f"Error: {result.error}", err=True)
    if result.failed_stage:
        where = f" ({result.failed_path})" if result.failed_path else ""
        click.echo(f"  Failed at: {result.failed_stage.value}{where}", err=True)
    if result.checkpoint_id and result.state == ApplyState.FAILED:
        click.echo(f"  Target restored from checkpoint {result.checkpoint_id}", err=True)


@cli.command()
@click.argument("plan", type=click.Path(exists=True, dir_okay=False))
@click.option("--target", required=True, help="Directory to scaffold into (relative to the workspace).")
@click.option("--scaffold-id", default=None, help="Idempotency key (default: derived from recipe and target).")
@click.option(
    "--mode",
    type=click.Choice([a.value for a in ConflictAction]),
    default=None,
    help="Conflict resolution to apply if conflicts are found.",
)
@click.option("--confirm-replace", is_flag=True, help="Confirm that replace_all may delete existing files.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def apply(
    ctx: click.Context,
    plan: str,
    target: str,
    scaffold_id: Optional[str],
    mode: Optional[str],
    confirm_replace: bool,
    as_json: bool,
):
    """Apply a scaffold plan (YAML or JSON) to a target directory."""
    config = _load(ctx)

    try:
        scaffold_plan = load_plan(Path(plan))
    except PlanError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    target_dir = _resolve_target(config, target)
    apply_ctx = ApplyContext(
        scaffold_id=scaffold_id or _default_scaffold_id(scaffold_plan.recipe_id, target_dir),
        plan=scaffold_plan,
        workspace_root=config.workspace_root,
        target_directory=target_dir,
        conflict_mode=ConflictAction(mode) if mode else None,
        replace_confirmed=confirm_replace,
        suggested_directory=target_dir / scaffold_plan.recipe_id,
    )

    result = apply_scaffold_plan(apply_ctx, ApplyEnvironment.from_config(config))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)

    if result.ok:
        return
    if result.needs_input:
        raise SystemExit(EXIT_NEEDS_INPUT)
    raise SystemExit(1)


@cli.command()
@click.argument("scaffold_id")
@click.pass_context
def verify(ctx: click.Context, scaffold_id: str):
    """Check that every file recorded in a manifest is unchanged on disk."""
    config = _load(ctx)
    manifests = ManifestStore(config.evidence_dir)

    try:
        manifest = manifests.load(scaffold_id)
    except ManifestError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    if manifest is None:
        click.echo(f"Error: No manifest for scaffold {scaffold_id}", err=True)
        raise SystemExit(1)

    report = manifests.validate_integrity(manifest)
    if report.valid:
        click.echo(f"✓ {scaffold_id}: {len(manifest.files)} file(s) intact")
        return

    click.echo(f"✗ {scaffold_id}: integrity check failed", err=True)
    for path in report.missing_files:
        click.echo(f"  Missing:  {path}", err=True)
    for path in report.hash_mismatches:
        click.echo(f"  Modified: {path}", err=True)
    raise SystemExit(1)


@cli.command()
@click.argument("scaffold_id")
@click.pass_context
def show(ctx: click.Context, scaffold_id: str):
    """Show the apply record of a scaffold."""
    config = _load(ctx)
    checkpoints = CheckpointStore(config.checkpoint_dir) if config.checkpoint_dir else None
    try:
        print_summary(scaffold_id, ManifestStore(config.evidence_dir), checkpoints)
    except ManifestError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


# Checkpoint commands
@cli.group()
def checkpoints():
    """Checkpoint commands."""
    pass


def _checkpoint_store(ctx: click.Context) -> Tuple[Config, CheckpointStore]:
    config = _load(ctx)
    if config.checkpoint_dir is None:
        click.echo("Error: Checkpoints are disabled (SCAFFOLD_APPLY_CHECKPOINT_DIR=none)", err=True)
        raise SystemExit(1)
    return config, CheckpointStore(config.checkpoint_dir)


@checkpoints.command("list")
@click.option("--scaffold-id", default=None, help="Only checkpoints for this scaffold.")
@click.pass_context
def checkpoints_list(ctx: click.Context, scaffold_id: Optional[str]):
    """List checkpoints, newest first."""
    _, store = _checkpoint_store(ctx)
    found = checkpoints_for(scaffold_id, store) if scaffold_id else store.list_checkpoints()
    print_checkpoint_list(found)


@checkpoints.command("restore")
@click.argument("checkpoint_id")
@click.option("--target", default=None, help="Directory to restore into (default: the checkpointed directory).")
@click.confirmation_option(prompt="This replaces the target's current contents. Continue?")
@click.pass_context
def checkpoints_restore(ctx: click.Context, checkpoint_id: str, target: Optional[str]):
    """Restore a directory to a checkpointed state."""
    config, store = _checkpoint_store(ctx)

    try:
        checkpoint = store.load(checkpoint_id)
        target_dir = _resolve_target(config, target) if target else Path(checkpoint.target_directory)
        env = ApplyEnvironment.from_config(config)
        store.restore(checkpoint_id, target_dir, protected=env.protected_paths())
    except (CheckpointError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Restored {checkpoint_id} into {target_dir}")


@checkpoints.command("delete")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoints_delete(ctx: click.Context, checkpoint_id: str):
    """Delete a checkpoint."""
    _, store = _checkpoint_store(ctx)
    try:
        store.delete(checkpoint_id)
    except CheckpointError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Deleted {checkpoint_id}")


@cli.command()
@click.option("--target", required=True, help="Directory whose apply lock should be removed.")
@click.pass_context
def unlock(ctx: click.Context, target: str):
    """Remove a stale apply lock left by a crashed process."""
    config = _load(ctx)
    target_dir = _resolve_target(config, target)
    if break_lock(config.lock_dir, target_dir):
        click.echo(f"Removed lock for {target_dir}")
    else:
        click.echo(f"No lock held for {target_dir}")


@cli.command()
@click.pass_context
def check_config(ctx: click.Context):
    """Print the resolved configuration."""
    config = _load(ctx)
    click.echo("Configuration loaded successfully!")
    click.echo(f"  Workspace:    {config.workspace_root}")
    click.echo(f"  State dir:    {config.state_dir}")
    click.echo(f"  Evidence:     {config.evidence_dir}")
    click.echo(f"  Checkpoints:  {config.checkpoint_dir or 'disabled (temp_staging)'}")
    click.echo(f"  Lock:         {'enabled' if config.lock_enabled else 'disabled'}")
    click.echo(f"  Log level:    {config.log_level}")
    extra = sorted(config.harmless - HARMLESS_ENTRIES)
    if extra:
        click.echo(f"  Harmless (+): {', '.join(extra)}")


if __name__ == "__main__":
    cli()

"""Checkpoint store: snapshots a target directory before mutation and restores it.

A checkpoint is one JSON document per id holding every directory, file and symlink
(files with full content) under the target. A checkpoint with zero entries means the
target did not exist or was empty; restoring it erases whatever a failed apply
created.

Full file content lives inside the document, which is fine for scaffold-sized
trees but not for large ones.
"""

import base64
import json
import logging
import os
import stat
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Sequence

import jsonschema

from scaffold_apply.conflicts import clear_directory_contents, is_protected
from scaffold_apply.constants import CHECKPOINT_PREFIX
from scaffold_apply.models import (
    Checkpoint,
    CheckpointEntry,
    EntryType,
    ScaffoldApplyError,
)

logger = logging.getLogger(__name__)


class CheckpointError(ScaffoldApplyError):
    """Raised when a checkpoint cannot be captured, read, or restored."""
    pass


class CheckpointNotFoundError(CheckpointError):
    """Raised when no checkpoint document exists for an id."""
    pass


CHECKPOINT_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["id", "created_at", "target_directory", "entries"],
    "properties": {
        "id": {"type": "string"},
        "created_at": {"type": "string"},
        "target_directory": {"type": "string"},
        "entries": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["type", "path"],
                "properties": {
                    "type": {"enum": ["file", "dir", "link"]},
                    "path": {"type": "string"},
                    "content": {"type": "string"},
                    "encoding": {"enum": ["utf-8", "base64"]},
                    "mode": {"type": "integer"},
                },
            },
        },
    },
}


def _write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON to a temp file in the same directory, then rename over path."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _encode_file(path: Path) -> CheckpointEntry:
    raw = path.read_bytes()
    mode = stat.S_IMODE(path.stat().st_mode)
    try:
        return CheckpointEntry(type=EntryType.FILE, path="", content=raw.decode("utf-8"),
                               encoding="utf-8", mode=mode)
    except UnicodeDecodeError:
        return CheckpointEntry(type=EntryType.FILE, path="",
                               content=base64.b64encode(raw).decode("ascii"),
                               encoding="base64", mode=mode)


def _decode_content(entry: CheckpointEntry) -> bytes:
    content = entry.content or ""
    if entry.encoding == "base64":
        return base64.b64decode(content)
    return content.encode("utf-8")


def capture_directory_state(
    base_dir: Path,
    relative: str = "",
    protected: Sequence[Path] = (),
) -> List[CheckpointEntry]:
    """
    Recursively capture every directory, regular file and symlink under base_dir.

    Symlinks are recorded by their link text and never followed. Protected
    paths are left out.

    Raises:
        CheckpointError: If the tree holds something that cannot be restored
            (FIFOs, sockets, device files)
    """
    entries: List[CheckpointEntry] = []
    current = base_dir / relative if relative else base_dir

    with os.scandir(current) as it:
        items = sorted(it, key=lambda e: e.name)

    for item in items:
        rel_path = f"{relative}/{item.name}" if relative else item.name
        if is_protected(Path(item.path), protected):
            continue
        if item.is_symlink():
            entries.append(CheckpointEntry(type=EntryType.LINK, path=rel_path,
                                           content=os.readlink(item.path)))
        elif item.is_dir(follow_symlinks=False):
            entries.append(CheckpointEntry(type=EntryType.DIR, path=rel_path))
            entries.extend(capture_directory_state(base_dir, rel_path, protected))
        elif item.is_file(follow_symlinks=False):
            entry = _encode_file(Path(item.path))
            entry.path = rel_path
            entries.append(entry)
        else:
            raise CheckpointError(f"Cannot checkpoint special file: {rel_path}")

    return entries


class CheckpointStore:
    """File-backed checkpoint store, one JSON document per checkpoint."""

    def __init__(self, checkpoint_dir: Path):
        self.checkpoint_dir = Path(checkpoint_dir)

    def _path_for(self, checkpoint_id: str) -> Path:
        return self.checkpoint_dir / f"{checkpoint_id}.json"

    def _new_id(self, scaffold_id: str) -> str:
        base = f"{CHECKPOINT_PREFIX}{scaffold_id}_{time.time_ns() // 1_000_000}"
        checkpoint_id = base
        suffix = 1
        while self._path_for(checkpoint_id).exists():
            checkpoint_id = f"{base}_{suffix}"
            suffix += 1
        return checkpoint_id

    def _protected(self, extra: Sequence[Path]) -> List[Path]:
        return [self.checkpoint_dir, *extra]

    def snapshot(
        self,
        scaffold_id: str,
        target_directory: Path,
        protected: Sequence[Path] = (),
    ) -> str:
        """
        Capture the current state of target_directory.

        Args:
            scaffold_id: Scaffold the checkpoint belongs to
            target_directory: Directory to snapshot (may not exist yet)
            protected: Engine state paths inside the target to leave out

        Returns:
            The new checkpoint id

        Raises:
            CheckpointError: If the target cannot be read or the checkpoint cannot be saved
        """
        target = Path(target_directory)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        checkpoint_id = self._new_id(scaffold_id)

        try:
            entries = (
                capture_directory_state(target, protected=self._protected(protected))
                if target.exists() else []
            )
        except OSError as e:
            raise CheckpointError(f"Cannot capture {target}: {e}") from e

        checkpoint = Checkpoint(
            id=checkpoint_id,
            created_at=datetime.now(timezone.utc).isoformat(),
            target_directory=str(target),
            entries=entries,
        )

        try:
            _write_json_atomic(self._path_for(checkpoint_id), checkpoint.to_dict())
        except OSError as e:
            raise CheckpointError(f"Cannot save checkpoint {checkpoint_id}: {e}") from e

        logger.info("Checkpoint %s captured %d entries from %s", checkpoint_id, len(entries), target)
        return checkpoint_id

    def load(self, checkpoint_id: str) -> Checkpoint:
        """
        Load and validate a checkpoint document.

        Raises:
            CheckpointNotFoundError: If no document exists for checkpoint_id
            CheckpointError: If the document is unreadable or malformed
        """
        path = self._path_for(checkpoint_id)
        if not path.exists():
            raise CheckpointNotFoundError(f"Checkpoint not found: {checkpoint_id}")

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise CheckpointError(f"Cannot read checkpoint {checkpoint_id}: {e}") from e

        try:
            jsonschema.validate(instance=data, schema=CHECKPOINT_SCHEMA)
        except jsonschema.ValidationError as e:
            raise CheckpointError(f"Malformed checkpoint {checkpoint_id}: {e.message}") from e

        return Checkpoint.from_dict(data)

    def restore(
        self,
        checkpoint_id: str,
        target_directory: Path,
        protected: Sequence[Path] = (),
    ) -> None:
        """
        Restore target_directory to the checkpointed state.

        Deletes everything currently under the target first (except protected
        paths). For a checkpoint with zero entries that is all that happens.

        Raises:
            CheckpointNotFoundError: If the checkpoint does not exist
            CheckpointError: If the checkpoint is malformed
            OSError: If the filesystem refuses a delete or write
        """
        checkpoint = self.load(checkpoint_id)
        target = Path(target_directory)

        clear_directory_contents(target, self._protected(protected))

        if not checkpoint.entries:
            logger.info("Restored empty checkpoint %s: cleared %s", checkpoint_id, target)
            return

        target.mkdir(parents=True, exist_ok=True)

        for entry in checkpoint.entries:
            if entry.type == EntryType.DIR:
                (target / entry.path).mkdir(parents=True, exist_ok=True)

        for entry in checkpoint.entries:
            if entry.type != EntryType.FILE or entry.content is None:
                continue
            file_path = target / entry.path
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(_decode_content(entry))
            if entry.mode is not None:
                os.chmod(file_path, entry.mode)

        for entry in checkpoint.entries:
            if entry.type == EntryType.LINK and entry.content is not None:
                os.symlink(entry.content, target / entry.path)

        logger.info("Restored checkpoint %s (%d entries) into %s",
                    checkpoint_id, len(checkpoint.entries), target)

    def list_checkpoints(self) -> List[Checkpoint]:
        """Return all readable checkpoints, newest first."""
        if not self.checkpoint_dir.exists():
            return []

        checkpoints = []
        for path in self.checkpoint_dir.glob(f"{CHECKPOINT_PREFIX}*.json"):
            try:
                checkpoints.append(self.load(path.stem))
            except CheckpointError as e:
                logger.warning("Skipping unreadable checkpoint %s: %s", path.name, e)

        checkpoints.sort(key=lambda c: c.created_at, reverse=True)
        return checkpoints

    def delete(self, checkpoint_id: str) -> None:
        """
        Delete a checkpoint document. Retention policy is up to the caller.

        Raises:
            CheckpointNotFoundError: If the checkpoint does not exist
        """
        path = self._path_for(checkpoint_id)
        if not path.exists():
            raise CheckpointNotFoundError(f"Checkpoint not found: {checkpoint_id}")
        path.unlink()
        logger.info("Deleted checkpoint %s", checkpoint_id)

"""Apply manifest store.

The manifest is stored as evidence and used for:
- Replay safety (never re-apply if a manifest exists for the scaffold id)
- Audit trail (exact files created, with hashes and sizes)
- Drift detection (validate_integrity re-hashes files on disk)
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import jsonschema

from scaffold_apply.constants import MANIFEST_PREFIX, MANIFEST_REF_PREFIX
from scaffold_apply.models import (
    ApplyManifest,
    IntegrityReport,
    ManifestFile,
    ScaffoldApplyError,
)

logger = logging.getLogger(__name__)


class ManifestError(ScaffoldApplyError):
    """Raised when a manifest cannot be read or written."""
    pass


class ManifestExistsError(ManifestError):
    """Raised on a second write for the same scaffold id."""
    pass


MANIFEST_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["scaffold_id", "target_directory", "created_at", "files", "dirs", "strategy"],
    "properties": {
        "scaffold_id": {"type": "string"},
        "recipe_id": {"type": "string"},
        "target_directory": {"type": "string"},
        "created_at": {"type": "string"},
        "files": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["path", "sha256", "bytes"],
                "properties": {
                    "path": {"type": "string"},
                    "sha256": {"type": "string", "pattern": "^[0-9a-f]{64}$"},
                    "bytes": {"type": "integer", "minimum": 0},
                    "mode": {"type": "integer"},
                },
            },
        },
        "dirs": {"type": "array", "items": {"type": "string"}},
        "skipped_files": {"type": "array", "items": {"type": "string"}},
        "checkpoint_id": {"type": "string"},
        "strategy": {"enum": ["checkpoint", "temp_staging"]},
        "duration_ms": {"type": "integer"},
    },
}


def compute_content_hash(content: str) -> str:
    """Compute SHA256 hex digest of content encoded as UTF-8."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def create_manifest_file(relative_path: str, content: str, mode: Optional[int] = None) -> ManifestFile:
    """Build the manifest entry for one written file."""
    return ManifestFile(
        path=relative_path,
        sha256=compute_content_hash(content),
        bytes=len(content.encode("utf-8")),
        mode=mode,
    )


def manifest_ref(scaffold_id: str) -> str:
    return f"{MANIFEST_REF_PREFIX}{scaffold_id}"


def generate_manifest_summary(manifest: ApplyManifest) -> str:
    """Human-readable one-liner, e.g. "Created 2 file(s), 1 directory(s), (0.1 KB total)"."""
    parts = [f"Created {len(manifest.files)} file(s)"]

    if manifest.dirs:
        parts.append(f"{len(manifest.dirs)} directory(s)")

    total_bytes = sum(f.bytes for f in manifest.files)
    if total_bytes > 0:
        parts.append(f"({total_bytes / 1024:.1f} KB total)")

    if manifest.skipped_files:
        parts.append(f"[{len(manifest.skipped_files)} skipped]")

    return ", ".join(parts)


class ManifestStore:
    """Evidence directory holding one scaffold_apply_<id>.json per applied scaffold."""

    def __init__(self, evidence_dir: Path):
        self.evidence_dir = Path(evidence_dir)

    def path_for(self, scaffold_id: str) -> Path:
        return self.evidence_dir / f"{MANIFEST_PREFIX}{scaffold_id}.json"

    def was_applied(self, scaffold_id: str) -> bool:
        """Idempotency gate. Presence of the manifest file is authoritative."""
        return self.path_for(scaffold_id).exists()

    def write(self, manifest: ApplyManifest) -> str:
        """
        Persist a manifest. Never overwrites an existing one.

        Returns:
            Evidence reference string (evidence:scaffold_apply:<id>)

        Raises:
            ManifestExistsError: If a manifest already exists for the scaffold id
            ManifestError: If the manifest cannot be written
        """
        self.evidence_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(manifest.scaffold_id)
        payload = json.dumps(manifest.to_dict(), indent=2)

        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(payload)
        except FileExistsError as e:
            raise ManifestExistsError(
                f"Manifest already exists for scaffold {manifest.scaffold_id}: {path}"
            ) from e
        except OSError as e:
            # Do not leave a partial manifest behind; it would block every retry
            if path.exists():
                path.unlink()
            raise ManifestError(f"Cannot write manifest {path}: {e}") from e

        logger.info("Wrote manifest for %s (%d files)", manifest.scaffold_id, len(manifest.files))
        return manifest_ref(manifest.scaffold_id)

    def load(self, scaffold_id: str) -> Optional[ApplyManifest]:
        """
        Load a manifest by scaffold id.

        Returns:
            The manifest, or None if none was written

        Raises:
            ManifestError: If the document exists but is unreadable or malformed
        """
        path = self.path_for(scaffold_id)
        if not path.exists():
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            jsonschema.validate(instance=data, schema=MANIFEST_SCHEMA)
        except (json.JSONDecodeError, OSError) as e:
            raise ManifestError(f"Cannot read manifest {path}: {e}") from e
        except jsonschema.ValidationError as e:
            raise ManifestError(f"Malformed manifest {path}: {e.message}") from e

        return ApplyManifest.from_dict(data)

    def validate_integrity(self, manifest: ApplyManifest) -> IntegrityReport:
        """
        Re-hash every file in the manifest and report drift.

        Never corrects anything; a file that cannot be read counts as missing.
        """
        missing = []
        mismatched = []
        target = Path(manifest.target_directory)

        for entry in manifest.files:
            file_path = target / entry.path
            if not file_path.is_file():
                missing.append(entry.path)
                continue
            try:
                actual = hashlib.sha256(file_path.read_bytes()).hexdigest()
            except OSError as e:
                logger.warning("Cannot read %s for integrity check: %s", file_path, e)
                missing.append(entry.path)
                continue
            if actual != entry.sha256:
                mismatched.append(entry.path)

        return IntegrityReport(
            valid=not missing and not mismatched,
            missing_files=missing,
            hash_mismatches=mismatched,
        )

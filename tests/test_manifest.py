"""Tests for the manifest store and hashing."""

import hashlib
import json

import pytest

from scaffold_apply.manifest import (
    ManifestError,
    ManifestExistsError,
    ManifestStore,
    compute_content_hash,
    create_manifest_file,
    generate_manifest_summary,
    manifest_ref,
)
from scaffold_apply.models import ApplyManifest, ApplyStrategy


@pytest.fixture
def store(tmp_path):
    return ManifestStore(tmp_path / "evidence")


def _manifest(target, files=None, scaffold_id="s1", **kwargs):
    files = files if files is not None else {"a.txt": "hello"}
    for path, content in files.items():
        (target / path).parent.mkdir(parents=True, exist_ok=True)
        (target / path).write_text(content)
    return ApplyManifest(
        scaffold_id=scaffold_id,
        recipe_id="recipe-basic",
        target_directory=str(target),
        created_at="2026-01-01T00:00:00+00:00",
        files=[create_manifest_file(p, c) for p, c in files.items()],
        **kwargs,
    )


class TestHashing:
    """Content hashes and byte counts."""

    def test_hash_is_sha256_of_utf8(self):
        """Hash is the hex SHA-256 of the UTF-8 bytes."""
        assert compute_content_hash("héllo") == hashlib.sha256("héllo".encode("utf-8")).hexdigest()

    def test_bytes_counts_utf8_length(self):
        """bytes is the encoded length, not the character count."""
        entry = create_manifest_file("a.txt", "héllo")
        assert entry.bytes == 6

    def test_ref_format(self):
        """References are evidence:scaffold_apply:<id>."""
        assert manifest_ref("abc") == "evidence:scaffold_apply:abc"


class TestStore:
    """Write-once persistence."""

    def test_write_and_load(self, store, tmp_path):
        """A written manifest loads back equal."""
        manifest = _manifest(tmp_path, checkpoint_id="cp_s1_1", skipped_files=["x.txt"])
        ref = store.write(manifest)

        assert ref == "evidence:scaffold_apply:s1"
        assert store.path_for("s1").name == "scaffold_apply_s1.json"
        assert store.was_applied("s1") is True
        assert store.load("s1") == manifest

    def test_never_overwrites(self, store, tmp_path):
        """A second write for the same id raises and keeps the first document."""
        store.write(_manifest(tmp_path))
        original = store.path_for("s1").read_text()

        with pytest.raises(ManifestExistsError):
            store.write(_manifest(tmp_path, files={"b.txt": "other"}))
        assert store.path_for("s1").read_text() == original

    def test_load_absent(self, store):
        """No manifest means None and was_applied() False."""
        assert store.load("nope") is None
        assert store.was_applied("nope") is False

    def test_load_corrupt(self, store):
        """Corrupt documents raise ManifestError but still count as applied."""
        store.evidence_dir.mkdir(parents=True)
        store.path_for("s1").write_text("{truncated")
        with pytest.raises(ManifestError):
            store.load("s1")
        assert store.was_applied("s1") is True

    def test_load_bad_hash(self, store):
        """Schema checks reject malformed hashes."""
        store.evidence_dir.mkdir(parents=True)
        store.path_for("s1").write_text(json.dumps({
            "scaffold_id": "s1",
            "target_directory": "/t",
            "created_at": "x",
            "files": [{"path": "a", "sha256": "nothex", "bytes": 1}],
            "dirs": [],
            "strategy": "checkpoint",
        }))
        with pytest.raises(ManifestError, match="Malformed"):
            store.load("s1")

    def test_optional_fields_omitted(self, store, tmp_path):
        """Empty skipped_files and missing checkpoint_id are not serialized."""
        store.write(_manifest(tmp_path, strategy=ApplyStrategy.TEMP_STAGING))
        data = json.loads(store.path_for("s1").read_text())
        assert "skipped_files" not in data
        assert "checkpoint_id" not in data
        assert data["strategy"] == "temp_staging"


class TestIntegrity:
    """validate_integrity() reports drift without fixing it."""

    def test_intact(self, store, tmp_path):
        """Unchanged files are valid."""
        report = store.validate_integrity(_manifest(tmp_path, {"a.txt": "A", "d/b.txt": "B"}))
        assert report.valid is True
        assert report.missing_files == []
        assert report.hash_mismatches == []

    def test_modified_and_missing(self, store, tmp_path):
        """Edited files are mismatches, deleted ones are missing."""
        manifest = _manifest(tmp_path, {"a.txt": "A", "b.txt": "B"})
        (tmp_path / "a.txt").write_text("edited")
        (tmp_path / "b.txt").unlink()

        report = store.validate_integrity(manifest)

        assert report.valid is False
        assert report.hash_mismatches == ["a.txt"]
        assert report.missing_files == ["b.txt"]
        assert (tmp_path / "a.txt").read_text() == "edited"


class TestSummary:
    """generate_manifest_summary() text."""

    def test_summary(self, tmp_path):
        """Counts files, dirs, size and skipped."""
        manifest = _manifest(tmp_path, {"a.txt": "x" * 2048}, dirs=["src"], skipped_files=["b.txt"])
        assert generate_manifest_summary(manifest) == \
            "Created 1 file(s), 1 directory(s), (2.0 KB total), [1 skipped]"

    def test_summary_empty(self, tmp_path):
        """An empty apply has only the file count."""
        assert generate_manifest_summary(_manifest(tmp_path, {})) == "Created 0 file(s)"

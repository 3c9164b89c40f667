"""Tests for the advisory apply lock."""

import pytest

from scaffold_apply.lock import ApplyLock, LockHeldError, break_lock, lock_path_for


class TestApplyLock:
    """O_EXCL lock file semantics."""

    def test_acquire_and_release(self, tmp_path):
        """The lock file exists only while held."""
        lock = ApplyLock(tmp_path / "locks", tmp_path / "app", owner="s1")
        with lock:
            assert lock.path.exists()
            assert "s1" in lock.path.read_text()
        assert not lock.path.exists()

    def test_contention(self, tmp_path):
        """A second holder for the same target is refused."""
        with ApplyLock(tmp_path / "locks", tmp_path / "app"):
            with pytest.raises(LockHeldError):
                ApplyLock(tmp_path / "locks", tmp_path / "app").acquire()

    def test_different_targets_do_not_contend(self, tmp_path):
        """Locks are per target directory."""
        with ApplyLock(tmp_path / "locks", tmp_path / "a"):
            with ApplyLock(tmp_path / "locks", tmp_path / "b"):
                pass

    def test_path_is_normalized(self, tmp_path):
        """Equivalent spellings of a target share a lock."""
        locks = tmp_path / "locks"
        assert lock_path_for(locks, tmp_path / "app") == lock_path_for(locks, tmp_path / "x" / ".." / "app")

    def test_release_without_acquire_is_noop(self, tmp_path):
        """Releasing an unheld lock leaves other holders alone."""
        holder = ApplyLock(tmp_path / "locks", tmp_path / "app")
        holder.acquire()
        ApplyLock(tmp_path / "locks", tmp_path / "app").release()
        assert holder.path.exists()
        holder.release()

    def test_break_lock(self, tmp_path):
        """break_lock removes a stale lock and reports whether it did."""
        lock = ApplyLock(tmp_path / "locks", tmp_path / "app")
        lock.acquire()
        assert break_lock(tmp_path / "locks", tmp_path / "app") is True
        assert break_lock(tmp_path / "locks", tmp_path / "app") is False

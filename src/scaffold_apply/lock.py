"""Advisory apply lock.

One lock file per target directory, kept under the state directory so that
restoring or clearing the target can never delete it. It guards the
checkpoint -> write -> manifest window of a single apply; the replay and
conflict checks before it run unlocked. A lock left behind by a crashed
process has to be removed by hand (scaffold unlock).
"""

import hashlib
import logging
import os
from datetime import datetime
from pathlib import Path

from scaffold_apply.models import ScaffoldApplyError

logger = logging.getLogger(__name__)


class LockHeldError(ScaffoldApplyError):
    """Raised when another apply holds the lock for a target."""
    pass


def lock_path_for(lock_dir: Path, target_directory: Path) -> Path:
    key = hashlib.sha256(os.path.normpath(str(target_directory)).encode("utf-8")).hexdigest()[:16]
    return Path(lock_dir) / f"{key}.lock"


class ApplyLock:
    """Context manager around an O_EXCL lock file."""

    def __init__(self, lock_dir: Path, target_directory: Path, owner: str = ""):
        self.path = lock_path_for(lock_dir, target_directory)
        self.target_directory = Path(target_directory)
        self.owner = owner
        self._held = False

    def acquire(self) -> None:
        """
        Create the lock file.

        Raises:
            LockHeldError: If the lock file already exists
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            raise LockHeldError(
                f"Cannot acquire lock - another apply may be in progress for "
                f"{self.target_directory}. Check {self.path}"
            ) from e
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"locked at {datetime.now().isoformat()} by {self.owner or os.getpid()}\n")
            f.write(f"target: {self.target_directory}\n")
        self._held = True
        logger.debug("Acquired lock %s", self.path)

    def release(self) -> None:
        if self._held and self.path.exists():
            self.path.unlink()
            logger.debug("Released lock %s", self.path)
        self._held = False

    def __enter__(self) -> "ApplyLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def break_lock(lock_dir: Path, target_directory: Path) -> bool:
    """Remove a stale lock. Returns True if a lock file was removed."""
    path = lock_path_for(lock_dir, target_directory)
    if path.exists():
        path.unlink()
        logger.warning("Removed lock %s for %s", path, target_directory)
        return True
    return False

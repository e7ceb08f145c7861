"""
PID-file lock: one desk process per data directory.

Two processes polling the same store would both answer the same chats and
approve the same payouts. The lock file holds the owner's PID; a file whose
PID no longer runs is treated as stale and replaced.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def acquire(self) -> bool:
        """Returns False if another live process holds the lock."""
        if self.acquired:
            return True

        if self.lock_file.exists():
            try:
                existing_pid = int(self.lock_file.read_text().strip())
            except (ValueError, OSError) as exc:
                logger.warning("Invalid lock file %s, replacing: %s", self.lock_file, exc)
            else:
                if existing_pid != os.getpid() and self._is_process_running(existing_pid):
                    logger.error(
                        "Another desk instance is running (PID=%s). Lock file: %s",
                        existing_pid, self.lock_file,
                    )
                    return False
                logger.warning("Removing stale lock file (PID=%s not running)", existing_pid)

        try:
            self.lock_file.write_text(str(os.getpid()))
        except OSError as exc:
            logger.error("Failed to create lock file %s: %s", self.lock_file, exc)
            return False
        self.acquired = True
        logger.info("Instance lock acquired (PID=%s, file=%s)", os.getpid(), self.lock_file)
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self.lock_file.exists():
                self.lock_file.unlink()
        except OSError as exc:
            logger.warning("Failed to release lock %s: %s", self.lock_file, exc)
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_single_instance(name: str = "p2p-desk", lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """Acquire the lock or return None when another instance owns it."""
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None

"""
Single Instance Lock

PID file lock so only one keeper runs per lock directory. Two keepers would
race each other on the same entities and double-submit actions.

Stale locks (owner PID no longer alive) are reclaimed. The lock is released
on clean exit through atexit; signal handling belongs to the runner.
"""

import os
import atexit
from pathlib import Path
import logging

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        lock = SingleInstanceLock("clmm-keeper")
        if not lock.acquire():
            raise SystemExit(1)
        ...
        lock.release()  # Optional - auto-released on exit
    """

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
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def _owner_pid(self):
        try:
            return int(self.lock_file.read_text().strip())
        except (ValueError, OSError):
            return None

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if lock acquired, False if another live instance holds it
        """
        if self.acquired:
            logger.warning("Lock already acquired by this instance")
            return True

        if self.lock_file.exists():
            existing_pid = self._owner_pid()
            if existing_pid is not None and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                logger.error(
                    f"Another instance is running (PID={existing_pid}). "
                    f"Cannot start. Lock file: {self.lock_file}"
                )
                return False
            logger.warning(f"Removing stale lock file (PID={existing_pid})")
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

        try:
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            logger.error(f"Lost race for lock file {self.lock_file}")
            return False
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False

        with os.fdopen(fd, "w") as handle:
            handle.write(str(os.getpid()))
        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        """Release the lock (delete PID file)"""
        if not self.acquired:
            return

        try:
            if self._owner_pid() == os.getpid():
                self.lock_file.unlink()
                logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

"""Single-instance locking for rebootguard.

A PID file in the secure directory guarantees one controller per host.
A stale file left by a crash is reclaimed by checking whether the recorded
process is still alive, never by the age of the file.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path

import psutil
from loguru import logger


class LockError(Exception):
    """Raised when the lock file cannot be read or written."""

    pass


class LockAcquisitionError(LockError):
    """Raised when another live instance holds the lock."""

    pass


def is_process_alive(pid: int) -> bool:
    """Check if a process with given PID is running (zombies count as dead)."""
    if pid <= 0:
        return False
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True


class ProcessLock:
    """PID-file based mutual exclusion between controller instances."""

    def __init__(self, lock_file: Path):
        self.lock_file = Path(lock_file)
        self._held = False

    @property
    def held(self) -> bool:
        """Whether this instance wrote the lock file."""
        return self._held

    def _read_pid(self) -> int | None:
        try:
            content = self.lock_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LockError(f"read PID file {self.lock_file} failed: {e}") from e

        try:
            return int(content)
        except ValueError:
            logger.debug(f"Invalid PID in {self.lock_file}: {content!r}")
            return None

    def holder_pid(self) -> int | None:
        """Get the PID of the live instance holding the lock, if any."""
        pid = self._read_pid()
        if pid is not None and is_process_alive(pid):
            return pid
        return None

    def acquire(self) -> bool:
        """Try to become the single running instance.

        Returns:
            True if the lock was acquired, False if another live process holds it

        Raises:
            LockError: if the PID file cannot be read or written
        """
        pid = self._read_pid()
        if pid is not None:
            if is_process_alive(pid):
                logger.warning(f"Another instance is already running with PID {pid}")
                return False
            logger.debug(f"Process with PID {pid} is not running, reclaiming lock")

        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            self.lock_file.write_text(str(os.getpid()))
        except OSError as e:
            raise LockError(f"write PID file {self.lock_file} failed: {e}") from e

        self._held = True
        logger.debug(f"Acquired process lock {self.lock_file} (PID {os.getpid()})")
        return True

    def release(self) -> None:
        """Remove the lock file if this instance still owns it.

        Calling it on a lock that is not held is a no-op, so a late call
        never removes a file written by a newer instance.
        """
        if not self._held:
            return
        self._held = False

        try:
            pid = self._read_pid()
        except LockError as e:
            logger.warning(f"Failed to read PID file {self.lock_file}: {e}")
            return
        if pid != os.getpid():
            logger.debug(f"PID file {self.lock_file} now belongs to PID {pid}, leaving it")
            return

        try:
            self.lock_file.unlink()
            logger.debug(f"Released process lock {self.lock_file}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove PID file {self.lock_file}: {e}")

    @contextmanager
    def hold(self):
        """Context manager for acquiring and releasing the lock.

        Usage:
            with ProcessLock(path).hold():
                run_controller()
        """
        if not self.acquire():
            raise LockAcquisitionError(f"another instance holds {self.lock_file}")
        try:
            yield self
        finally:
            self.release()

"""
Cross-process locking used around the metadata pointer swap.

The lock only guards the read-compare-write of the version hint, so it is
held for the duration of one metadata write and never across a scan.
"""

import os
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

try:
    import fcntl

    FCNTL_AVAILABLE = True
except ImportError:
    FCNTL_AVAILABLE = False

try:
    import msvcrt

    MSVCRT_AVAILABLE = True
except ImportError:
    MSVCRT_AVAILABLE = False

_POLL_INTERVAL = 0.01


class LockProvider(ABC):
    """Abstract base class for cross-process locks."""

    @abstractmethod
    def acquire(self) -> bool:
        """Acquire the lock. Blocks until acquired or the timeout expires."""

    @abstractmethod
    def release(self) -> None:
        """Release the lock."""

    def __enter__(self) -> "LockProvider":
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


class FileLock(LockProvider):
    """Advisory lock on a file, using flock on POSIX and msvcrt on Windows.

    The lock file is never deleted: flock locks inodes, so removing the file
    would let a later process lock a different inode under the same path.
    """

    def __init__(self, lock_file: str, timeout: float = 30.0):
        self.lock_file = lock_file
        self.timeout = timeout
        self._lock_fd: Optional[int] = None

    @property
    def is_locked(self) -> bool:
        return self._lock_fd is not None

    def acquire(self) -> bool:
        """Poll for the lock until acquired.

        Raises:
            TimeoutError: If the lock is not acquired within ``timeout`` seconds
        """
        lock_dir = os.path.dirname(self.lock_file)
        if lock_dir:
            os.makedirs(lock_dir, exist_ok=True)

        deadline = time.monotonic() + self.timeout
        while True:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_RDWR)
            if self._try_lock(fd):
                self._lock_fd = fd
                return True
            os.close(fd)

            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Failed to acquire lock on {self.lock_file} within {self.timeout}s"
                )
            time.sleep(_POLL_INTERVAL)

    @staticmethod
    def _try_lock(fd: int) -> bool:
        try:
            if FCNTL_AVAILABLE:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            elif MSVCRT_AVAILABLE:
                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
            return True
        except OSError:
            return False

    def release(self) -> None:
        if self._lock_fd is None:
            return
        fd, self._lock_fd = self._lock_fd, None
        try:
            if FCNTL_AVAILABLE:
                fcntl.flock(fd, fcntl.LOCK_UN)
            elif MSVCRT_AVAILABLE:
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        finally:
            os.close(fd)

    def __del__(self) -> None:
        if self._lock_fd is not None:
            self.release()

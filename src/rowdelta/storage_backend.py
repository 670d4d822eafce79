"""
Storage backend abstraction for rowdelta tables.

Paths handed to a backend are table-relative; a leading ``/`` means "relative
to the table location" (``/data/x.parquet``), never the filesystem root.
"""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Dict, List

from .config import lock_timeout
from .errors import MissingFile
from .locking import FileLock, LockProvider
from .logging_config import get_logger

logger = get_logger(__name__)


class StorageBackend(ABC):
    """Abstract base class for storage backends"""

    @abstractmethod
    def read_file(self, path: str) -> bytes:
        """Read file contents as bytes"""

    @abstractmethod
    def open_file(self, path: str) -> BinaryIO:
        """Open file as a seekable binary stream"""

    @abstractmethod
    def write_file(self, path: str, content: bytes) -> None:
        """Write bytes to file; readers never observe a partial write"""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Check if file exists"""

    @abstractmethod
    def list_files(self, prefix: str) -> List[str]:
        """List files under a prefix, table-relative"""

    @abstractmethod
    def delete_file(self, path: str) -> None:
        """Delete file"""

    @abstractmethod
    def makedirs(self, path: str, exist_ok: bool = True) -> None:
        """Create directory"""

    @abstractmethod
    def get_size(self, path: str) -> int:
        """Get file size in bytes"""

    @abstractmethod
    def create_lock(self, path: str, timeout: float = 30.0) -> LockProvider:
        """Create a cross-process lock for the given path"""

    def read_json(self, path: str) -> Dict[str, Any]:
        return json.loads(self.read_file(path).decode("utf-8"))

    def write_json(self, path: str, data: Dict[str, Any]) -> None:
        # Serialize before touching the filesystem
        content = json.dumps(data, indent=2).encode("utf-8")
        self.write_file(path, content)


class LocalStorageBackend(StorageBackend):
    """Local filesystem storage backend"""

    def __init__(self, base_path: str):
        self.base_path = base_path

    def _resolve_path(self, path: str) -> str:
        """Resolve a table-relative path, refusing to leave the table directory"""
        joined_path = os.path.join(self.base_path, path.lstrip("/"))
        full_path = os.path.abspath(joined_path)
        base_path = os.path.abspath(self.base_path)

        if full_path != base_path and not full_path.startswith(base_path + os.sep):
            raise ValueError(
                f"Security Error: Path traversal attempt detected. Resolved path '{full_path}' "
                f"is outside base directory '{base_path}'"
            )
        return full_path

    def read_file(self, path: str) -> bytes:
        full_path = self._resolve_path(path)
        try:
            with open(full_path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise MissingFile(path) from None

    def open_file(self, path: str) -> BinaryIO:
        full_path = self._resolve_path(path)
        try:
            return open(full_path, "rb")
        except FileNotFoundError:
            raise MissingFile(path) from None

    def write_file(self, path: str, content: bytes) -> None:
        """Atomically write a file: temp file, fsync, then rename into place."""
        logger.debug(f"Writing file: {path} ({len(content)} bytes)")

        full_path = self._resolve_path(path)
        dir_path = os.path.dirname(full_path)
        os.makedirs(dir_path, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            dir=dir_path, prefix=".tmp.", suffix=f".{os.path.basename(full_path)}"
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, full_path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

        self._fsync_directory(dir_path)

    @staticmethod
    def _fsync_directory(dir_path: str) -> None:
        try:
            dir_fd = os.open(dir_path, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            # Directory fsync is unsupported on some platforms
            pass
        finally:
            os.close(dir_fd)

    def exists(self, path: str) -> bool:
        return os.path.exists(self._resolve_path(path))

    def list_files(self, prefix: str) -> List[str]:
        full_prefix = self._resolve_path(prefix)
        if not os.path.exists(full_prefix):
            return []

        result = []
        for root, _dirs, files in os.walk(full_prefix):
            for name in files:
                result.append(os.path.relpath(os.path.join(root, name), self.base_path))
        return sorted(result)

    def delete_file(self, path: str) -> None:
        full_path = self._resolve_path(path)
        if os.path.exists(full_path):
            os.remove(full_path)

    def makedirs(self, path: str, exist_ok: bool = True) -> None:
        os.makedirs(self._resolve_path(path), exist_ok=exist_ok)

    def get_size(self, path: str) -> int:
        try:
            return os.path.getsize(self._resolve_path(path))
        except FileNotFoundError:
            raise MissingFile(path) from None

    def create_lock(self, path: str, timeout: float = 30.0) -> LockProvider:
        return FileLock(self._resolve_path(path), timeout)


def create_storage_backend(table_path: str) -> StorageBackend:
    """Create the storage backend for a table location"""
    logger.debug(f"Using local storage for {table_path} (lock timeout {lock_timeout()}s)")
    return LocalStorageBackend(table_path)

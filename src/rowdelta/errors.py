"""
Typed failures raised by the rowdelta engine.

Every error surfaces to the caller; the only failures handled internally are
lost pointer swaps inside the bounded commit retry loop.
"""

from typing import Optional


class RowDeltaError(Exception):
    """Base class for all rowdelta errors"""

    pass


class CommitConflict(RowDeltaError):
    """A concurrent writer invalidated the base snapshot of a commit.

    Retryable: the caller decides its own retry/backoff policy.
    """

    def __init__(self, message: str, base_snapshot_id: Optional[int] = None):
        super().__init__(message)
        self.base_snapshot_id = base_snapshot_id


class ConcurrentModificationException(CommitConflict):
    """Raised when the current-snapshot pointer moved between read and swap"""

    pass


class MissingFile(RowDeltaError, FileNotFoundError):
    """A referenced data, delete or manifest file is absent at read time"""

    def __init__(self, path: str):
        super().__init__(f"Referenced file does not exist: {path}")
        self.path = path


class SchemaMismatch(RowDeltaError):
    """A delete or projection references a field not present in the resolved schema"""

    pass


class UnknownField(SchemaMismatch, KeyError):
    """A field name or id is absent from a schema version"""

    def __init__(self, name_or_id: object, schema_id: Optional[int] = None):
        where = f" in schema {schema_id}" if schema_id is not None else ""
        super().__init__(f"Unknown field {name_or_id!r}{where}")
        self.name_or_id = name_or_id
        self.schema_id = schema_id

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0])


class MalformedDeleteFile(RowDeltaError):
    """Out-of-range positional offset, or equality key that cannot be resolved"""

    def __init__(self, message: str, delete_path: Optional[str] = None):
        super().__init__(message)
        self.delete_path = delete_path


class OrderingViolation(RowDeltaError):
    """The row source cannot guarantee the stable order positional deletes need"""

    pass


class SnapshotNotFound(RowDeltaError, LookupError):
    """No snapshot with the requested id exists in the table"""

    def __init__(self, snapshot_id: int):
        super().__init__(f"Snapshot {snapshot_id} does not exist")
        self.snapshot_id = snapshot_id

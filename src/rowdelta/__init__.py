"""
rowdelta - Row-level deltas and snapshot isolation for file-based tables

Tracks a table as a chain of atomic snapshots over immutable data files and
delete files, and merges the applicable equality and position deletes into
each data file at read time.
"""

__version__ = "0.1.0"


from .data_structures import (
    DataFile,
    DeleteFile,
    EqualityDeletes,
    FileContent,
    FileFormat,
    LiveFiles,
    PartitionField,
    PartitionSpec,
    PositionDeletes,
    Schema,
    Snapshot,
    TableMetadata,
)
from .delete_index import DeleteFileIndex, applicable_deletes
from .errors import (
    CommitConflict,
    ConcurrentModificationException,
    MalformedDeleteFile,
    MissingFile,
    OrderingViolation,
    RowDeltaError,
    SchemaMismatch,
    SnapshotNotFound,
    UnknownField,
)
from .filters import FilterExpression, FilterOp, parse_filter_dict
from .merger import apply_deletes, merge
from .scan import FileScanTask, TableScan, scan_plan
from .schema_registry import SchemaRegistry
from .snapshot_manager import SnapshotManager
from .table import Table, create_table, load_table
from .transaction import CommitState, Transaction

__all__ = [
    "create_table",
    "load_table",
    "Table",
    "Transaction",
    "CommitState",
    "TableScan",
    "FileScanTask",
    "scan_plan",
    "apply_deletes",
    "merge",
    "applicable_deletes",
    "DeleteFileIndex",
    "SchemaRegistry",
    "SnapshotManager",
    "DataFile",
    "DeleteFile",
    "EqualityDeletes",
    "PositionDeletes",
    "FileContent",
    "FileFormat",
    "LiveFiles",
    "PartitionField",
    "PartitionSpec",
    "Schema",
    "Snapshot",
    "TableMetadata",
    "FilterOp",
    "FilterExpression",
    "parse_filter_dict",
    "RowDeltaError",
    "CommitConflict",
    "ConcurrentModificationException",
    "MissingFile",
    "SchemaMismatch",
    "UnknownField",
    "MalformedDeleteFile",
    "OrderingViolation",
    "SnapshotNotFound",
    "__version__",
]

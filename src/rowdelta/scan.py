"""
Table scans: plan the files of one snapshot and read them with deletes applied.

A scan fixes its snapshot when planned and takes no locks while reading.
Per-file work shares no mutable state except the delete payload cache, so
files can be read in a thread pool; results keep plan order either way.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import pyarrow as pa

from .config import TableProperties, property_as_int
from .data_operations import ParquetDeleteLoader, ParquetRowReader, arrow_schema
from .data_structures import DataFile, DeleteFile, Schema, Snapshot, TableMetadata
from .delete_index import DeleteFileIndex
from .errors import MalformedDeleteFile
from .filters import PartitionFilter, partition_predicate
from .logging_config import get_logger
from .merger import apply_deletes
from .snapshot_manager import SnapshotManager
from .storage_backend import StorageBackend

try:
    import pandas as pd

    PANDAS_AVAILABLE = True
except ImportError:
    PANDAS_AVAILABLE = False
    pd = None

logger = get_logger(__name__)


@dataclass(frozen=True)
class FileScanTask:
    """One data file and the delete files that apply to it, in merge order"""

    data_file: DataFile
    delete_files: Tuple[DeleteFile, ...] = ()

    @property
    def equality_ids(self) -> List[int]:
        ids: List[int] = []
        for delete_file in self.delete_files:
            for field_id in delete_file.equality_ids or ():
                if field_id not in ids:
                    ids.append(field_id)
        return ids


def scan_plan(
    snapshot_manager: SnapshotManager,
    snapshot_id: Optional[int] = None,
    partition_filter: PartitionFilter = None,
    metadata: Optional[TableMetadata] = None,
) -> List[FileScanTask]:
    """Plan a scan of ``snapshot_id`` (the current snapshot when None).

    Data files are ordered by sequence number, then path.

    Raises:
        SnapshotNotFound: If ``snapshot_id`` is not a snapshot of the table
    """
    metadata = metadata or snapshot_manager.metadata_manager.refresh()
    if metadata is None:
        raise ValueError(f"No table metadata found at {snapshot_manager.metadata_manager.table_path}")

    if snapshot_id is None:
        snapshot = snapshot_manager.current(metadata)
    else:
        snapshot = snapshot_manager.at(snapshot_id, metadata)

    live = snapshot_manager.live_files(snapshot, metadata)
    index = DeleteFileIndex.from_files(live.delete_files, metadata.specs_by_id())
    predicate = partition_predicate(partition_filter)

    tasks = []
    for data_file in sorted(live.data_files, key=lambda f: (f.sequence_number or 0, f.file_path)):
        if predicate is not None and not predicate(data_file):
            continue
        tasks.append(FileScanTask(data_file, tuple(index.applicable_deletes(data_file))))

    logger.debug(
        f"Planned {len(tasks)} of {len(live.data_files)} data files against "
        f"{len(index)} delete files"
    )
    return tasks


class TableScan:
    """A read of one snapshot, projected to column names of the scan schema.

    The scan schema is the table's current schema when reading the current
    snapshot, and the schema recorded with the snapshot for time travel.
    """

    def __init__(
        self,
        snapshot_manager: SnapshotManager,
        storage: StorageBackend,
        snapshot_id: Optional[int] = None,
        partition_filter: PartitionFilter = None,
        loader: Optional[ParquetDeleteLoader] = None,
    ):
        self.snapshot_manager = snapshot_manager
        self.storage = storage
        self.loader = loader or ParquetDeleteLoader(storage)
        self.partition_filter = partition_filter

        metadata = snapshot_manager.metadata_manager.refresh()
        if metadata is None:
            raise ValueError(f"No table metadata found at {snapshot_manager.metadata_manager.table_path}")
        self.metadata = metadata

        if snapshot_id is None:
            self.snapshot: Optional[Snapshot] = snapshot_manager.current(metadata)
        else:
            self.snapshot = snapshot_manager.at(snapshot_id, metadata)

        self.schema = self._scan_schema()
        self._tasks: Optional[List[FileScanTask]] = None

    def _scan_schema(self) -> Schema:
        snapshot = self.snapshot
        is_current = snapshot is None or snapshot.snapshot_id == self.metadata.current_snapshot_id
        if is_current or snapshot is None or snapshot.schema_id is None:
            return self.metadata.current_schema()
        return self.metadata.schema_by_id(snapshot.schema_id)

    def plan_files(self) -> List[FileScanTask]:
        if self._tasks is None:
            snapshot_id = self.snapshot.snapshot_id if self.snapshot else None
            if snapshot_id is None:
                self._tasks = []
            else:
                self._tasks = scan_plan(
                    self.snapshot_manager, snapshot_id, self.partition_filter, self.metadata
                )
        return self._tasks

    def _projection(self, columns: Optional[List[str]]) -> List[int]:
        if columns is None:
            return self.schema.field_ids()
        return [self.schema.find_field(name)["id"] for name in columns]

    def _workers(self, parallel: Union[bool, int, None]) -> int:
        if parallel is None:
            return property_as_int(
                self.metadata.properties,
                TableProperties.READ_PARALLELISM,
                TableProperties.READ_PARALLELISM_DEFAULT,
            )
        if isinstance(parallel, bool):
            return (os.cpu_count() or 4) if parallel else 0
        return parallel

    def read_task(self, task: FileScanTask, projected_ids: List[int]) -> Iterator[Dict[int, Any]]:
        """Rows of one task keyed by field id, deletes applied.

        Raises:
            MalformedDeleteFile: If an equality key field is not in the schema
                the data file was written with
        """
        file_schema = self.metadata.schema_by_id(task.data_file.schema_id)
        for delete_file in task.delete_files:
            missing = [
                field_id
                for field_id in delete_file.equality_ids or ()
                if not file_schema.has_field(field_id)
            ]
            if missing:
                raise MalformedDeleteFile(
                    f"Equality key fields {missing} are not in schema {file_schema.schema_id} "
                    f"of {task.data_file.file_path}",
                    delete_file.file_path,
                )

        read_ids = list(projected_ids)
        for field_id in task.equality_ids:
            if field_id not in read_ids:
                read_ids.append(field_id)

        source = ParquetRowReader(self.storage, task.data_file.file_path, read_ids)
        return apply_deletes(task.data_file, task.delete_files, source, self.loader, read_ids)

    def to_records(
        self,
        columns: Optional[List[str]] = None,
        parallel: Union[bool, int, None] = None,
    ) -> List[Dict[str, Any]]:
        """Read the snapshot as a list of records keyed by column name.

        Args:
            columns: Column names to read, all columns of the scan schema when None
            parallel: Read files in a thread pool.
                - None: Use the ``read.parallelism`` table property
                - False: Sequential reading
                - True: One thread per CPU core
                - int: Use specified number of threads

        Raises:
            UnknownField: If a column is not in the scan schema
        """
        projected_ids = self._projection(columns)
        names = self.schema.column_names()
        tasks = self.plan_files()

        def read_file(task: FileScanTask) -> List[Dict[str, Any]]:
            return [
                {names[fid]: row[fid] for fid in projected_ids}
                for row in self.read_task(task, projected_ids)
            ]

        workers = self._workers(parallel)
        if workers > 1 and len(tasks) > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                per_file = list(executor.map(read_file, tasks))
        else:
            per_file = [read_file(task) for task in tasks]

        records = [record for file_records in per_file for record in file_records]
        logger.debug(f"Scan returned {len(records)} rows from {len(tasks)} files")
        return records

    def to_arrow(
        self,
        columns: Optional[List[str]] = None,
        parallel: Union[bool, int, None] = None,
    ) -> pa.Table:
        """Read the snapshot as an Arrow table"""
        projected_ids = self._projection(columns)
        records = self.to_records(columns, parallel)
        return pa.Table.from_pylist(records, schema=arrow_schema(self.schema, projected_ids))

    def to_pandas(
        self,
        columns: Optional[List[str]] = None,
        parallel: Union[bool, int, None] = None,
    ) -> "pd.DataFrame":
        """Read the snapshot as a pandas DataFrame (requires pandas)"""
        if not PANDAS_AVAILABLE:
            raise ImportError(
                "pandas is not available. Install with: pip install rowdelta[pandas]"
            )
        return self.to_arrow(columns, parallel).to_pandas()

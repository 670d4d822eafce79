"""
Table facade: create/load a table, evolve its schema, write and commit row
deltas, and scan any snapshot with deletes applied.
"""

import random
import time
from copy import deepcopy
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .config import TableProperties, default_properties, property_as_int, property_as_str
from .data_operations import DataFileManager, ParquetDeleteLoader, ParquetRowReader
from .data_structures import (
    DataFile,
    DeleteFile,
    LiveFiles,
    PartitionSpec,
    Schema,
    Snapshot,
    TableMetadata,
)
from .delete_index import DeleteFileIndex
from .errors import CommitConflict, ConcurrentModificationException
from .file_manager import FileManager
from .filters import PartitionFilter
from .logging_config import get_logger
from .merger import DeleteLoader, RowSource, apply_deletes
from .metadata_manager import MetadataManager
from .partitioning import partition_values
from .scan import FileScanTask, TableScan, scan_plan
from .schema_registry import SchemaRegistry
from .snapshot_manager import SnapshotManager
from .storage_backend import create_storage_backend
from .transaction import Transaction

logger = get_logger(__name__)

_CURRENT = object()


def create_table(
    table_path: str,
    schema: Optional[Schema] = None,
    partition_spec: Optional[PartitionSpec] = None,
    properties: Optional[Dict[str, str]] = None,
) -> "Table":
    """Create a new table at ``table_path`` and return it.

    ``schema`` becomes schema 0. A partition spec with fields is validated
    against it and registered as the default; spec 0 stays unpartitioned.

    Raises:
        ValueError: If a table already exists at ``table_path``
    """
    storage = create_storage_backend(table_path)
    metadata_manager = MetadataManager(table_path, storage)

    table_properties = default_properties()
    table_properties.update({k: str(v) for k, v in (properties or {}).items()})

    schemas = [Schema(schema_id=0, fields=[dict(f) for f in schema.fields])] if schema else []
    metadata = TableMetadata(location=table_path, schemas=schemas, properties=table_properties)
    if partition_spec is not None and partition_spec.fields:
        SchemaRegistry(metadata).register_spec(partition_spec)

    metadata_manager.initialize_table(metadata)
    return Table(table_path)


def load_table(table_path: str) -> "Table":
    """Open an existing table.

    Raises:
        ValueError: If there is no table at ``table_path``
    """
    return Table(table_path)


class Table:
    """Main table interface"""

    def __init__(self, table_path: str):
        self.table_path = table_path
        self.storage = create_storage_backend(table_path)
        self.metadata_manager = MetadataManager(table_path, self.storage)
        if self.metadata_manager.refresh() is None:
            raise ValueError(f"No table found at {table_path}")

        self.file_manager = FileManager(table_path, self.storage)
        self.snapshot_manager = SnapshotManager(self.metadata_manager, self.file_manager)
        self.delete_loader = ParquetDeleteLoader(self.storage)
        self.data_file_manager = DataFileManager(
            self.storage,
            compression=property_as_str(
                self.metadata().properties,
                TableProperties.PARQUET_COMPRESSION,
                TableProperties.PARQUET_COMPRESSION_DEFAULT,
            ),
        )

    def metadata(self) -> TableMetadata:
        """The metadata version the table pointer currently names"""
        metadata = self.metadata_manager.refresh()
        if metadata is None:
            raise ValueError(f"No table found at {self.table_path}")
        return metadata

    def schema(self, schema_id: Optional[int] = None) -> Schema:
        return SchemaRegistry(self.metadata()).schema(schema_id)

    def spec(self, spec_id: Optional[int] = None) -> PartitionSpec:
        return SchemaRegistry(self.metadata()).spec(spec_id)

    @property
    def properties(self) -> Dict[str, str]:
        return self.metadata().properties

    def current_snapshot(self) -> Optional[Snapshot]:
        return self.snapshot_manager.current()

    def snapshot_by_id(self, snapshot_id: int) -> Snapshot:
        """Raises SnapshotNotFound if the table has no such snapshot"""
        return self.snapshot_manager.at(snapshot_id)

    def snapshot_as_of(self, timestamp_ms: int) -> Optional[Snapshot]:
        return self.snapshot_manager.snapshot_as_of(timestamp_ms)

    def snapshots(self) -> List[Dict[str, Any]]:
        return self.snapshot_manager.list_snapshots()

    def live_files(self, snapshot_id: Optional[int] = None) -> LiveFiles:
        """Data and delete files live at ``snapshot_id`` (the current snapshot when None)"""
        metadata = self.metadata()
        if snapshot_id is None:
            snapshot = metadata.current_snapshot()
        else:
            snapshot = self.snapshot_manager.at(snapshot_id, metadata)
        return self.snapshot_manager.live_files(snapshot, metadata)

    # Schema and partition evolution

    def _update_metadata(self, change: Callable[[SchemaRegistry], int]) -> int:
        attempt = 0
        while True:
            base = self.metadata()
            working = deepcopy(base)
            result = change(SchemaRegistry(working))
            try:
                self.metadata_manager.commit(base, working)
                return result
            except ConcurrentModificationException as e:
                attempt += 1
                retries = property_as_int(
                    base.properties,
                    TableProperties.COMMIT_NUM_RETRIES,
                    TableProperties.COMMIT_NUM_RETRIES_DEFAULT,
                )
                if attempt > retries:
                    raise CommitConflict(f"Failed to update table metadata: {e}") from e
                logger.warning(f"Metadata update attempt {attempt} lost the pointer race, retrying")
                time.sleep(random.uniform(0.005, 0.02) * attempt)

    def register_schema(self, schema: Schema) -> int:
        return self._update_metadata(lambda registry: registry.register_schema(schema))

    def register_spec(self, spec: PartitionSpec) -> int:
        return self._update_metadata(lambda registry: registry.register_spec(spec))

    def rename_column(self, name: str, new_name: str) -> int:
        return self._update_metadata(lambda registry: registry.rename_column(name, new_name))

    def add_column(self, name: str, field_type: str, required: bool = False) -> int:
        return self._update_metadata(
            lambda registry: registry.add_column(name, field_type, required)
        )

    def drop_column(self, name: str) -> int:
        return self._update_metadata(lambda registry: registry.drop_column(name))

    def widen_column(self, name: str, new_type: str) -> int:
        return self._update_metadata(lambda registry: registry.widen_column(name, new_type))

    def add_partition_field(
        self, source_name: str, transform: str = "identity", name: Optional[str] = None
    ) -> int:
        return self._update_metadata(
            lambda registry: registry.add_partition_field(source_name, transform, name)
        )

    # Writes

    def new_transaction(self, base_snapshot_id: Any = _CURRENT) -> Transaction:
        """Start a row delta on ``base_snapshot_id``, the current snapshot by default"""
        if base_snapshot_id is _CURRENT:
            base_snapshot_id = self.metadata_manager.load_current()
        return Transaction(
            self.metadata_manager, self.snapshot_manager, self.file_manager, base_snapshot_id
        )

    def commit_row_delta(
        self,
        base_snapshot_id: Optional[int],
        added_data_files: Iterable[DataFile] = (),
        added_delete_files: Iterable[DeleteFile] = (),
        removed_data_files: Iterable[Union[DataFile, str]] = (),
    ) -> int:
        """Commit data and delete files as one snapshot on top of ``base_snapshot_id``.

        Returns:
            The id of the new snapshot

        Raises:
            CommitConflict: If the changes conflict with commits made since the base
        """
        transaction = self.new_transaction(base_snapshot_id)
        for data_file in added_data_files:
            transaction.add_data_file(data_file)
        for delete_file in added_delete_files:
            transaction.add_delete_file(delete_file)
        for removed in removed_data_files:
            transaction.remove_data_file(removed)
        return transaction.commit()

    def _partition_for(
        self, records: Sequence[Dict[str, Any]], schema: Schema, spec: PartitionSpec
    ) -> Dict[str, Any]:
        if not spec.fields:
            return {}
        groups = _group_by_partition(records, schema, spec)
        if len(groups) > 1:
            raise ValueError(f"Records span {len(groups)} partitions; write one file per partition")
        if not groups:
            raise ValueError("Cannot derive partition values from zero records")
        return dict(next(iter(groups)))

    def write_data_file(
        self,
        records: List[Dict[str, Any]],
        partition_values: Optional[Dict[str, Any]] = None,
    ) -> DataFile:
        """Write records keyed by column name as an uncommitted data file.

        Partition values are derived from the records under the default
        spec unless given.
        """
        metadata = self.metadata()
        schema = metadata.current_schema()
        spec = metadata.default_spec()
        if partition_values is None:
            partition_values = self._partition_for(records, schema, spec)
        return self.data_file_manager.write_data_file(
            records, schema, spec.spec_id, partition_values
        )

    def write_equality_deletes(
        self,
        rows: List[Dict[str, Any]],
        equality_columns: Sequence[Union[str, int]],
        partition_values: Optional[Dict[str, Any]] = None,
        spec_id: Optional[int] = None,
    ) -> DeleteFile:
        """Write an uncommitted equality delete file.

        Without ``partition_values`` the delete is scoped globally: it is
        written under spec 0, which is unpartitioned.
        """
        metadata = self.metadata()
        if partition_values is None:
            spec_id, partition_values = 0, {}
        elif spec_id is None:
            spec_id = metadata.default_spec_id
        return self.data_file_manager.write_equality_delete_file(
            rows, metadata.current_schema(), equality_columns, spec_id, partition_values
        )

    def write_position_deletes(
        self,
        data_file: DataFile,
        positions: Sequence[int],
        rows: Optional[List[Dict[str, Any]]] = None,
    ) -> DeleteFile:
        """Write a position delete file, optionally keeping the deleted rows.

        ``rows`` are keyed by column name in the schema ``data_file`` was
        written with.
        """
        schema = self.schema(data_file.schema_id) if rows is not None else None
        return self.data_file_manager.write_position_delete_file(
            data_file, positions, rows=rows, schema=schema
        )

    def append_records(self, records: List[Dict[str, Any]]) -> int:
        """Write records as one data file per partition and commit them as an append"""
        if not records:
            raise ValueError("No records to append")
        metadata = self.metadata()
        schema = metadata.current_schema()
        spec = metadata.default_spec()

        groups = _group_by_partition(records, schema, spec) if spec.fields else {(): list(records)}
        data_files = [
            self.data_file_manager.write_data_file(group, schema, spec.spec_id, dict(key))
            for key, group in groups.items()
        ]
        return self.commit_row_delta(metadata.current_snapshot_id, added_data_files=data_files)

    def delete_rows(
        self,
        rows: List[Dict[str, Any]],
        equality_columns: Sequence[Union[str, int]],
    ) -> int:
        """Delete every row whose ``equality_columns`` equal those of one of ``rows``"""
        base = self.metadata_manager.load_current()
        delete_file = self.write_equality_deletes(rows, equality_columns)
        return self.commit_row_delta(base, added_delete_files=[delete_file])

    # Reads

    def scan(
        self,
        snapshot_id: Optional[int] = None,
        partition_filter: PartitionFilter = None,
    ) -> TableScan:
        """Scan ``snapshot_id``, or the current snapshot when None"""
        return TableScan(
            self.snapshot_manager,
            self.storage,
            snapshot_id=snapshot_id,
            partition_filter=partition_filter,
            loader=self.delete_loader,
        )

    def scan_plan(
        self,
        snapshot_id: Optional[int] = None,
        partition_filter: PartitionFilter = None,
    ) -> List[FileScanTask]:
        return scan_plan(self.snapshot_manager, snapshot_id, partition_filter)

    def delete_index(self, snapshot_id: Optional[int] = None) -> DeleteFileIndex:
        live = self.live_files(snapshot_id)
        return DeleteFileIndex.from_files(live.delete_files, self.metadata().specs_by_id())

    def read_rows(self, data_file: DataFile, field_ids: Optional[Sequence[int]] = None) -> ParquetRowReader:
        """Row source over one data file, rows keyed by field id"""
        if field_ids is None:
            field_ids = self.schema().field_ids()
        return ParquetRowReader(self.storage, data_file.file_path, field_ids)

    def apply_deletes(
        self,
        data_file: DataFile,
        delete_files: Sequence[DeleteFile],
        row_source: RowSource,
        loader: Optional[DeleteLoader] = None,
    ) -> Iterator[Dict[int, Any]]:
        return apply_deletes(data_file, delete_files, row_source, loader or self.delete_loader)

    def to_records(self, columns: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        return self.scan().to_records(columns)

    def row_count(self, snapshot_id: Optional[int] = None) -> int:
        """Rows in data files before deletes, from file metadata only"""
        return sum(f.record_count for f in self.live_files(snapshot_id).data_files)


def _group_by_partition(
    records: Iterable[Dict[str, Any]], schema: Schema, spec: PartitionSpec
) -> Dict[Tuple[Tuple[str, Any], ...], List[Dict[str, Any]]]:
    groups: Dict[Tuple[Tuple[str, Any], ...], List[Dict[str, Any]]] = {}
    for record in records:
        values = partition_values(spec, schema, record)
        key = tuple((pfield.name, values[pfield.name]) for pfield in spec.fields)
        groups.setdefault(key, []).append(record)
    return groups

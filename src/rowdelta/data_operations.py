"""
Parquet readers and writers for data files and delete files.

Every column written carries its field id in the ``PARQUET:field_id`` field
metadata; readers resolve columns by that id, never by name, so files stay
readable after columns are renamed.
"""

import threading
import uuid
from collections import OrderedDict
from io import BytesIO
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import pyarrow as pa
import pyarrow.parquet as pq

from .data_structures import (
    DataFile,
    DeleteContents,
    DeleteFile,
    EqualityDeletes,
    FileContent,
    FileFormat,
    PositionDeletes,
    Schema,
    decimal_precision_scale,
)
from .errors import MalformedDeleteFile, MissingFile
from .logging_config import get_logger
from .storage_backend import StorageBackend

logger = get_logger(__name__)

FIELD_ID_KEY = b"PARQUET:field_id"

# Reserved field ids of the position delete columns
POS_DELETE_FILE_PATH_ID = 2147483546
POS_DELETE_POS_ID = 2147483545
POS_DELETE_ROW_ID = 2147483544


def _field_id(field_id: int) -> Dict[bytes, bytes]:
    return {FIELD_ID_KEY: str(field_id).encode("utf-8")}


_TYPE_MAPPING = {
    "boolean": pa.bool_(),
    "int": pa.int32(),
    "long": pa.int64(),
    "float": pa.float32(),
    "double": pa.float64(),
    "date": pa.date32(),
    "time": pa.time64("us"),
    "timestamp": pa.timestamp("us"),
    "string": pa.string(),
    "uuid": pa.string(),
    "binary": pa.binary(),
    "fixed": pa.binary(),
}


def arrow_type(field_type: str) -> pa.DataType:
    """Map a column type to its Arrow type"""
    decimal = decimal_precision_scale(field_type)
    if decimal is not None:
        return pa.decimal128(*decimal)
    if field_type not in _TYPE_MAPPING:
        raise ValueError(f"Unsupported column type: {field_type}")
    return _TYPE_MAPPING[field_type]


def arrow_field(field_def: Mapping[str, Any]) -> pa.Field:
    return pa.field(
        field_def["name"],
        arrow_type(field_def["type"]),
        nullable=not field_def.get("required", False),
        metadata=_field_id(field_def["id"]),
    )


def arrow_schema(schema: Schema, field_ids: Optional[Sequence[int]] = None) -> pa.Schema:
    """Arrow schema for ``schema``, optionally restricted to ``field_ids`` in that order"""
    if field_ids is None:
        return pa.schema([arrow_field(f) for f in schema.fields])
    return pa.schema([arrow_field(schema.find_field(field_id)) for field_id in field_ids])


def _field_ids_by_column(arrow_fields: Iterable[pa.Field]) -> Dict[int, str]:
    columns: Dict[int, str] = {}
    for arrow_col in arrow_fields:
        metadata = arrow_col.metadata or {}
        if FIELD_ID_KEY in metadata:
            columns[int(metadata[FIELD_ID_KEY])] = arrow_col.name
    return columns


class ParquetRowReader:
    """Row source over one Parquet data file.

    Yields ``(offset, row)`` pairs in file order, rows keyed by field id.
    Projected ids the file does not contain (columns added after it was
    written) read as None.
    """

    stable_order = True

    def __init__(
        self,
        storage: StorageBackend,
        file_path: str,
        projected_ids: Sequence[int],
        batch_size: int = 1024,
    ):
        self.storage = storage
        self.file_path = file_path
        self.projected_ids = list(projected_ids)
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[Tuple[int, Dict[int, Any]]]:
        path = self.file_path.lstrip("/")
        if not self.storage.exists(path):
            raise MissingFile(self.file_path)

        with self.storage.open_file(path) as stream:
            parquet_file = pq.ParquetFile(stream)
            columns = _field_ids_by_column(parquet_file.schema_arrow)
            present = [(fid, columns[fid]) for fid in self.projected_ids if fid in columns]
            absent = [fid for fid in self.projected_ids if fid not in columns]

            if not present:
                for offset in range(parquet_file.metadata.num_rows):
                    yield offset, {fid: None for fid in absent}
                return

            offset = 0
            names = [name for _, name in present]
            for batch in parquet_file.iter_batches(batch_size=self.batch_size, columns=names):
                for record in batch.to_pylist():
                    row = {fid: record[name] for fid, name in present}
                    for fid in absent:
                        row[fid] = None
                    yield offset, row
                    offset += 1


class DataFileManager:
    """Writes data files and delete files through a storage backend"""

    def __init__(self, storage: StorageBackend, compression: str = "zstd"):
        self.storage = storage
        self.compression = compression
        self.data_path = "data"

    def new_file_path(self, prefix: str = "") -> str:
        return f"{self.data_path}/{prefix}{uuid.uuid4().hex}.parquet"

    def _write_table(self, file_path: str, table: pa.Table) -> int:
        buffer = BytesIO()
        pq.write_table(table, buffer, compression=self.compression)
        payload = buffer.getvalue()
        self.storage.write_file(file_path, payload)
        return len(payload)

    def write_data_file(
        self,
        records: List[Dict[str, Any]],
        schema: Schema,
        spec_id: int = 0,
        partition_values: Optional[Dict[str, Any]] = None,
        file_path: Optional[str] = None,
    ) -> DataFile:
        """Write records keyed by column name to a new Parquet data file.

        The returned DataFile is uncommitted; its sequence number is assigned
        when a transaction commits it.
        """
        file_path = file_path or self.new_file_path()
        table = pa.Table.from_pylist(records, schema=arrow_schema(schema))
        size = self._write_table(file_path, table)
        logger.debug(f"Wrote data file {file_path} with {table.num_rows} rows")

        return DataFile(
            file_path=file_path,
            file_format=FileFormat.PARQUET,
            partition_values=dict(partition_values or {}),
            record_count=table.num_rows,
            file_size_in_bytes=size,
            spec_id=spec_id,
            schema_id=schema.schema_id,
        )

    def write_equality_delete_file(
        self,
        rows: List[Dict[str, Any]],
        schema: Schema,
        equality_columns: Sequence[Union[str, int]],
        spec_id: int = 0,
        partition_values: Optional[Dict[str, Any]] = None,
        file_path: Optional[str] = None,
    ) -> DeleteFile:
        """Write an equality delete file holding only the key columns.

        ``rows`` are keyed by column name; columns outside the key are ignored.

        Raises:
            UnknownField: If a key column is not in ``schema``
        """
        if not equality_columns:
            raise ValueError("Equality delete files need at least one key column")

        key_fields = [schema.find_field(column) for column in equality_columns]
        equality_ids = tuple(f["id"] for f in key_fields)
        key_rows = [{f["name"]: row.get(f["name"]) for f in key_fields} for row in rows]

        file_path = file_path or self.new_file_path("eq-deletes-")
        table = pa.Table.from_pylist(key_rows, schema=arrow_schema(schema, equality_ids))
        size = self._write_table(file_path, table)
        logger.debug(f"Wrote equality delete file {file_path} keyed on {list(equality_ids)}")

        return DeleteFile(
            file_path=file_path,
            file_format=FileFormat.PARQUET,
            content=FileContent.EQUALITY_DELETES,
            partition_values=dict(partition_values or {}),
            record_count=table.num_rows,
            file_size_in_bytes=size,
            spec_id=spec_id,
            schema_id=schema.schema_id,
            equality_ids=equality_ids,
        )

    def write_position_delete_file(
        self,
        data_file: DataFile,
        positions: Sequence[int],
        file_path: Optional[str] = None,
        rows: Optional[Sequence[Dict[str, Any]]] = None,
        schema: Optional[Schema] = None,
    ) -> DeleteFile:
        """Write a position delete file against ``data_file``.

        The delete inherits the data file's spec and partition values.
        ``rows``, when given, are the deleted rows keyed by column name, one
        per position, stored in the optional ``row`` column under ``schema``.
        """
        by_offset: Dict[int, Dict[str, Any]] = {}
        if rows is not None:
            if schema is None:
                raise ValueError("A schema is required to store deleted rows")
            if len(rows) != len(positions):
                raise ValueError(
                    f"Got {len(rows)} deleted rows for {len(positions)} positions"
                )
            by_offset = dict(zip(positions, rows))
        offsets = sorted(set(positions))
        for offset in offsets:
            if offset < 0 or offset >= data_file.record_count:
                raise ValueError(
                    f"Position {offset} is out of range for {data_file.file_path} "
                    f"with {data_file.record_count} rows"
                )

        delete_fields = [
            pa.field("file_path", pa.string(), nullable=False, metadata=_field_id(POS_DELETE_FILE_PATH_ID)),
            pa.field("pos", pa.int64(), nullable=False, metadata=_field_id(POS_DELETE_POS_ID)),
        ]
        columns: Dict[str, List[Any]] = {
            "file_path": [data_file.file_path] * len(offsets),
            "pos": offsets,
        }
        if rows is not None and schema is not None:
            row_type = pa.struct([arrow_field(f) for f in schema.fields])
            delete_fields.append(pa.field("row", row_type, metadata=_field_id(POS_DELETE_ROW_ID)))
            columns["row"] = [by_offset[offset] for offset in offsets]
        table = pa.Table.from_pydict(columns, schema=pa.schema(delete_fields))

        file_path = file_path or self.new_file_path("pos-deletes-")
        size = self._write_table(file_path, table)
        logger.debug(f"Wrote position delete file {file_path} with {len(offsets)} positions")

        return DeleteFile(
            file_path=file_path,
            file_format=FileFormat.PARQUET,
            content=FileContent.POSITION_DELETES,
            partition_values=dict(data_file.partition_values),
            record_count=len(offsets),
            file_size_in_bytes=size,
            spec_id=data_file.spec_id,
            schema_id=data_file.schema_id,
            referenced_data_file=data_file.file_path,
        )


class ParquetDeleteLoader:
    """Loads delete file payloads, keeping the most recently used ones cached.

    Delete files are immutable, so a cached payload never goes stale.
    """

    def __init__(self, storage: StorageBackend, max_entries: int = 128):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.storage = storage
        self.max_entries = max_entries
        self._cache: "OrderedDict[str, DeleteContents]" = OrderedDict()
        self._lock = threading.Lock()

    def load(self, delete_file: DeleteFile) -> DeleteContents:
        with self._lock:
            cached = self._cache.get(delete_file.file_path)
            if cached is not None:
                self._cache.move_to_end(delete_file.file_path)
                return cached

        table = self._read(delete_file.file_path)
        if delete_file.is_positional:
            contents: DeleteContents = _position_deletes(delete_file, table)
        else:
            contents = _equality_deletes(delete_file, table)

        with self._lock:
            self._cache[delete_file.file_path] = contents
            self._cache.move_to_end(delete_file.file_path)
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)
        return contents

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def _read(self, file_path: str) -> pa.Table:
        path = file_path.lstrip("/")
        if not self.storage.exists(path):
            raise MissingFile(file_path)
        with self.storage.open_file(path) as stream:
            return pq.read_table(stream)


def _position_deletes(delete_file: DeleteFile, table: pa.Table) -> PositionDeletes:
    columns = _field_ids_by_column(table.schema)
    if POS_DELETE_FILE_PATH_ID not in columns or POS_DELETE_POS_ID not in columns:
        raise MalformedDeleteFile("Missing file_path or pos column", delete_file.file_path)

    targets = set(table.column(columns[POS_DELETE_FILE_PATH_ID]).to_pylist())
    if len(targets) > 1:
        raise MalformedDeleteFile(
            f"Position delete file references several data files: {sorted(targets)}",
            delete_file.file_path,
        )
    target = targets.pop() if targets else delete_file.referenced_data_file
    if target is None:
        raise MalformedDeleteFile("Position delete file has no target data file", delete_file.file_path)

    offsets = table.column(columns[POS_DELETE_POS_ID]).to_pylist()
    if any(offsets[i] > offsets[i + 1] for i in range(len(offsets) - 1)):
        raise MalformedDeleteFile("Positions are not sorted", delete_file.file_path)

    rows = None
    if POS_DELETE_ROW_ID in columns:
        row_field = table.schema.field(columns[POS_DELETE_ROW_ID])
        row_type = row_field.type
        child_ids = _field_ids_by_column([row_type.field(i) for i in range(row_type.num_fields)])
        rows = tuple(
            None if record is None else {fid: record[name] for fid, name in child_ids.items()}
            for record in table.column(row_field.name).to_pylist()
        )

    return PositionDeletes(
        file_path=delete_file.file_path,
        data_file_path=target,
        offsets=tuple(offsets),
        rows=rows,
    )


def _equality_deletes(delete_file: DeleteFile, table: pa.Table) -> EqualityDeletes:
    if not delete_file.equality_ids:
        raise MalformedDeleteFile("Equality delete file has no key fields", delete_file.file_path)
    columns = _field_ids_by_column(table.schema)
    missing = [fid for fid in delete_file.equality_ids if fid not in columns]
    if missing:
        raise MalformedDeleteFile(
            f"Equality delete file has no column for field ids {missing}",
            delete_file.file_path,
        )

    rows = tuple(
        {fid: record[columns[fid]] for fid in delete_file.equality_ids}
        for record in table.to_pylist()
    )
    return EqualityDeletes(
        file_path=delete_file.file_path,
        equality_ids=delete_file.equality_ids,
        rows=rows,
    )

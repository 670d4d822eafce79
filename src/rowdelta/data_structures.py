"""
Core data structures for the rowdelta table format
"""

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Union

from .errors import SchemaMismatch, UnknownField

PRIMITIVE_TYPES = {
    "boolean", "int", "long", "float", "double",
    "date", "time", "timestamp", "string",
    "uuid", "fixed", "binary",
}

# Allowed in-place type changes: old type -> new type
TYPE_PROMOTIONS = {
    ("int", "long"),
    ("float", "double"),
}

MAX_DECIMAL_PRECISION = 38

_DECIMAL_TYPE = re.compile(r"^decimal\(\s*(\d+)\s*,\s*(\d+)\s*\)$")


def decimal_precision_scale(field_type: str) -> Optional[Tuple[int, int]]:
    """Precision and scale of a ``decimal(P,S)`` type, None for other types"""
    match = _DECIMAL_TYPE.match(field_type)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def is_valid_type(field_type: str) -> bool:
    if field_type in PRIMITIVE_TYPES:
        return True
    decimal = decimal_precision_scale(field_type)
    if decimal is None:
        return False
    precision, scale = decimal
    return 1 <= precision <= MAX_DECIMAL_PRECISION and scale <= precision


def type_family(field_type: str) -> str:
    """``decimal`` for any decimal(P,S), otherwise the type itself"""
    return "decimal" if decimal_precision_scale(field_type) else field_type


def can_promote(old_type: str, new_type: str) -> bool:
    """Whether a column of ``old_type`` can be widened to ``new_type`` in place.

    Decimals widen by precision only; the scale must stay the same.
    """
    if (old_type, new_type) in TYPE_PROMOTIONS:
        return True
    old_decimal = decimal_precision_scale(old_type)
    new_decimal = decimal_precision_scale(new_type)
    if old_decimal is None or new_decimal is None or not is_valid_type(new_type):
        return False
    return new_decimal[1] == old_decimal[1] and new_decimal[0] > old_decimal[0]


# Partition field ids are allocated above this value
PARTITION_DATA_ID_START = 1000


class FileFormat(Enum):
    """Supported file formats"""

    PARQUET = "parquet"
    AVRO = "avro"
    ORC = "orc"


class FileContent(int, Enum):
    """What a tracked file holds"""

    DATA = 0
    POSITION_DELETES = 1
    EQUALITY_DELETES = 2


class ManifestContent(int, Enum):
    """Type of content in manifest files"""

    DATA = 0
    DELETES = 1


class ManifestEntryStatus(int, Enum):
    """Whether a manifest entry adds or removes a file from the live set"""

    ADDED = 1
    DELETED = 2


@dataclass
class Schema:
    """Table schema definition.

    Fields are dicts with ``id``, ``name``, ``type`` and optional ``required``.
    The ``id`` is the stable identity of a column; names may change between
    schema versions.
    """

    schema_id: int
    fields: List[Dict[str, Any]]
    schema_string: str = ""

    def __post_init__(self) -> None:
        if not self.schema_string:
            self.schema_string = json.dumps(self.fields)

        seen_ids = set()
        seen_names = set()
        for field_def in self.fields:
            if "id" not in field_def:
                raise ValueError(f"Invalid schema: Field missing required property 'id': {field_def}")
            if "name" not in field_def:
                raise ValueError(f"Invalid schema: Field missing required property 'name': {field_def}")
            if "type" not in field_def:
                raise ValueError(f"Invalid schema: Field missing required property 'type': {field_def}")

            f_type = field_def["type"]
            if not is_valid_type(f_type):
                raise ValueError(
                    f"Invalid schema: Unknown field type '{f_type}' in field '{field_def['name']}'. "
                    f"Supported types: {sorted(PRIMITIVE_TYPES)} and decimal(P,S)"
                )

            if field_def["id"] in seen_ids:
                raise ValueError(f"Invalid schema: Duplicate field id {field_def['id']}")
            if field_def["name"] in seen_names:
                raise ValueError(f"Invalid schema: Duplicate field name '{field_def['name']}'")
            seen_ids.add(field_def["id"])
            seen_names.add(field_def["name"])

    def field_ids(self) -> List[int]:
        """Field ids in column order"""
        return [f["id"] for f in self.fields]

    def find_field(self, name_or_id: Union[str, int]) -> Dict[str, Any]:
        """Look up a field by name or by id.

        Raises:
            UnknownField: If no field matches
        """
        key = "id" if isinstance(name_or_id, int) and not isinstance(name_or_id, bool) else "name"
        for field_def in self.fields:
            if field_def[key] == name_or_id:
                return field_def
        raise UnknownField(name_or_id, self.schema_id)

    def has_field(self, field_id: int) -> bool:
        return any(f["id"] == field_id for f in self.fields)

    def column_names(self) -> Dict[int, str]:
        """Mapping of field id to current column name"""
        return {f["id"]: f["name"] for f in self.fields}

    def highest_field_id(self) -> int:
        return max((f["id"] for f in self.fields), default=0)

    def same_structure(self, other: "Schema") -> bool:
        """True when both schemas have identical fields, ignoring schema ids"""
        return _normalize_fields(self.fields) == _normalize_fields(other.fields)


def _normalize_fields(fields: List[Dict[str, Any]]) -> List[Tuple[int, str, str, bool]]:
    return [(f["id"], f["name"], f["type"], bool(f.get("required", False))) for f in fields]


@dataclass
class PartitionField:
    """Partition field definition"""

    source_id: int
    field_id: int
    name: str
    transform: str  # e.g., "identity", "bucket[16]", "truncate[10]", "day", "void"


@dataclass
class PartitionSpec:
    """Partition specification"""

    spec_id: int
    fields: List[PartitionField] = field(default_factory=list)

    @property
    def is_unpartitioned(self) -> bool:
        """A spec without fields, or with only void transforms, scopes files globally"""
        return all(f.transform == "void" for f in self.fields)

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def same_fields(self, other: "PartitionSpec") -> bool:
        return [(f.source_id, f.name, f.transform) for f in self.fields] == [
            (f.source_id, f.name, f.transform) for f in other.fields
        ]


@dataclass(frozen=True)
class DataFile:
    """Immutable record of a data file holding inserted rows.

    ``sequence_number`` is None until the file is committed; the commit
    coordinator stamps it with the sequence number of the new snapshot.
    """

    file_path: str
    file_format: FileFormat
    partition_values: Dict[str, Any]
    record_count: int
    file_size_in_bytes: int
    spec_id: int = 0
    schema_id: int = 0
    sequence_number: Optional[int] = None
    content: FileContent = FileContent.DATA

    def __post_init__(self) -> None:
        if self.content != FileContent.DATA:
            raise ValueError(f"DataFile content must be DATA, got {self.content!r}")
        if self.record_count < 0:
            raise ValueError(f"record_count must be non-negative: {self.file_path}")

    def __hash__(self) -> int:
        return hash((self.content, self.file_path))


@dataclass(frozen=True)
class DeleteFile:
    """Immutable record of a delete file.

    Tagged by ``content``:
      - EQUALITY_DELETES: rows hold values for ``equality_ids`` only; a data
        row is removed if all of its key values equal those of one delete row.
      - POSITION_DELETES: rows hold sorted zero-based offsets into
        ``referenced_data_file``.
    """

    file_path: str
    file_format: FileFormat
    content: FileContent
    partition_values: Dict[str, Any]
    record_count: int
    file_size_in_bytes: int
    spec_id: int = 0
    schema_id: int = 0
    sequence_number: Optional[int] = None
    equality_ids: Optional[Tuple[int, ...]] = None
    referenced_data_file: Optional[str] = None

    def __post_init__(self) -> None:
        if self.content == FileContent.EQUALITY_DELETES:
            if not self.equality_ids:
                raise ValueError(f"Equality delete file requires equality_ids: {self.file_path}")
            object.__setattr__(self, "equality_ids", tuple(self.equality_ids))
        elif self.content == FileContent.POSITION_DELETES:
            if not self.referenced_data_file:
                raise ValueError(
                    f"Position delete file requires referenced_data_file: {self.file_path}"
                )
            if self.equality_ids:
                raise ValueError(f"Position delete file cannot carry equality_ids: {self.file_path}")
        else:
            raise ValueError(f"DeleteFile content must be a delete kind, got {self.content!r}")

    def __hash__(self) -> int:
        return hash((self.content, self.file_path))

    @property
    def is_positional(self) -> bool:
        return self.content == FileContent.POSITION_DELETES


ContentFile = Union[DataFile, DeleteFile]


@dataclass(frozen=True)
class PositionDeletes:
    """Loaded payload of a position delete file.

    ``rows`` holds the deleted rows keyed by field id, aligned with
    ``offsets``, when the writer stored them.
    """

    file_path: str
    data_file_path: str
    offsets: Tuple[int, ...]
    rows: Optional[Tuple[Dict[int, Any], ...]] = None


@dataclass(frozen=True)
class EqualityDeletes:
    """Loaded payload of an equality delete file; rows are keyed by field id"""

    file_path: str
    equality_ids: Tuple[int, ...]
    rows: Tuple[Dict[int, Any], ...]


DeleteContents = Union[PositionDeletes, EqualityDeletes]


@dataclass(frozen=True)
class ManifestEntry:
    """One added or removed file reference inside a manifest"""

    status: ManifestEntryStatus
    snapshot_id: int
    file: ContentFile


@dataclass
class ManifestFile:
    """Manifest file that lists data or delete file entries"""

    manifest_path: str
    manifest_length: int
    partition_spec_id: int
    added_snapshot_id: int
    added_files_count: int
    deleted_files_count: int
    content: ManifestContent = ManifestContent.DATA
    sequence_number: Optional[int] = None


@dataclass
class Snapshot:
    """Represents a snapshot of the table at a point in time.

    ``manifest_list`` points at the manifests holding the files this snapshot
    added and removed relative to its parent.
    """

    snapshot_id: int
    timestamp_ms: int  # milliseconds since epoch
    manifest_list: str
    sequence_number: int
    parent_snapshot_id: Optional[int] = None
    operation: Optional[str] = None  # "append", "delete", "overwrite"
    summary: Optional[Dict[str, str]] = None
    schema_id: Optional[int] = None
    spec_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.summary is None:
            self.summary = {}


class LiveFiles(NamedTuple):
    """Data and delete files live at one snapshot"""

    data_files: frozenset
    delete_files: frozenset


@dataclass
class HistoryEntry:
    """History entry for tracking snapshot changes"""

    timestamp_ms: int
    snapshot_id: int


@dataclass
class TableMetadata:
    """Main metadata structure for a table.

    ``version`` is the metadata file version this object was read from. It is
    not persisted; the metadata manager compares it when swapping the pointer.
    """

    location: str
    table_uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    format_version: int = 2
    last_sequence_number: int = 0
    last_updated_ms: int = field(default_factory=lambda: int(datetime.now().timestamp() * 1000))
    last_column_id: int = 0
    last_partition_id: int = PARTITION_DATA_ID_START - 1
    schemas: List[Schema] = field(default_factory=list)
    current_schema_id: int = 0
    partition_specs: List[PartitionSpec] = field(default_factory=list)
    default_spec_id: int = 0
    properties: Dict[str, str] = field(default_factory=dict)
    current_snapshot_id: Optional[int] = None
    snapshots: List[Snapshot] = field(default_factory=list)
    snapshot_log: List[HistoryEntry] = field(default_factory=list)
    version: int = 0

    def __post_init__(self) -> None:
        if not self.schemas:
            self.schemas = [Schema(schema_id=0, fields=[])]
            self.current_schema_id = 0
        if not self.partition_specs:
            self.partition_specs = [PartitionSpec(spec_id=0, fields=[])]
            self.default_spec_id = 0
        self.last_column_id = max(
            [self.last_column_id] + [s.highest_field_id() for s in self.schemas]
        )

    def schema_by_id(self, schema_id: int) -> Schema:
        for schema in self.schemas:
            if schema.schema_id == schema_id:
                return schema
        raise SchemaMismatch(f"Schema {schema_id} does not exist")

    def current_schema(self) -> Schema:
        return self.schema_by_id(self.current_schema_id)

    def spec_by_id(self, spec_id: int) -> PartitionSpec:
        for spec in self.partition_specs:
            if spec.spec_id == spec_id:
                return spec
        raise ValueError(f"Partition spec {spec_id} does not exist")

    def default_spec(self) -> PartitionSpec:
        return self.spec_by_id(self.default_spec_id)

    def specs_by_id(self) -> Dict[int, PartitionSpec]:
        return {spec.spec_id: spec for spec in self.partition_specs}

    def snapshot_by_id(self, snapshot_id: int) -> Optional[Snapshot]:
        for snapshot in self.snapshots:
            if snapshot.snapshot_id == snapshot_id:
                return snapshot
        return None

    def current_snapshot(self) -> Optional[Snapshot]:
        if self.current_snapshot_id is None:
            return None
        return self.snapshot_by_id(self.current_snapshot_id)

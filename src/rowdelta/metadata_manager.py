"""
Metadata management and the current-snapshot pointer.

Each metadata version is an immutable ``metadata/vN.metadata.json`` file; the
pointer is ``metadata.version-hint.text``. Advancing the pointer is a
compare-and-swap: under a thread lock and a cross-process file lock the hint
is re-read and compared with the version the caller based its change on.
"""

import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from .config import lock_timeout
from .data_structures import (
    HistoryEntry,
    PartitionField,
    PartitionSpec,
    Schema,
    Snapshot,
    TableMetadata,
)
from .errors import ConcurrentModificationException
from .logging_config import get_logger

if TYPE_CHECKING:
    from .storage_backend import StorageBackend

logger = get_logger(__name__)

VERSION_HINT = "metadata.version-hint.text"


class MetadataManager:
    """Manages table metadata persistence and the pointer swap"""

    def __init__(self, table_path: str, storage: "StorageBackend"):
        self.table_path = table_path
        self.storage = storage
        self.metadata_path = "metadata"  # Relative to table_path
        self._lock = threading.RLock()
        self.lock_provider = self.storage.create_lock(
            ".locks/metadata.lock", timeout=lock_timeout()
        )
        self.storage.makedirs(self.metadata_path, exist_ok=True)

    def initialize_table(self, metadata: TableMetadata) -> TableMetadata:
        """Write version 0 of a new table"""
        with self._lock, self.lock_provider:
            if self._read_version_hint() is not None:
                raise ValueError(f"Table already exists at {self.table_path}")
            metadata.last_updated_ms = int(datetime.now().timestamp() * 1000)
            metadata.version = 0
            self._write_metadata_file(self._metadata_file(0), metadata)
            self._write_version_hint(0)
            logger.info(f"Initialized table {metadata.table_uuid} at {self.table_path}")
            return metadata

    def refresh(self) -> Optional[TableMetadata]:
        """Read the metadata version the pointer currently names"""
        version = self._read_version_hint()
        if version is None:
            return None

        metadata_path = self._metadata_file(version)
        if not self.storage.exists(metadata_path):
            return None

        metadata = self._read_metadata_file(metadata_path)
        metadata.version = version
        return metadata

    def load_current(self) -> Optional[int]:
        """Current snapshot id of the table, or None for an empty table"""
        metadata = self.refresh()
        return metadata.current_snapshot_id if metadata else None

    def cas_advance(self, base_metadata: TableMetadata, new_metadata: TableMetadata) -> bool:
        """Publish ``new_metadata`` only if the pointer still names ``base_metadata``.

        The new metadata file is written before the hint is swapped, so a
        crash in between leaves an unreferenced file and an unchanged table.

        Returns:
            True if the pointer advanced, False if it moved concurrently
        """
        with self._lock:
            self.lock_provider.acquire()
            try:
                current_version = self._read_version_hint()
                if current_version != base_metadata.version:
                    logger.warning(
                        f"Pointer moved: expected metadata v{base_metadata.version}, "
                        f"found v{current_version}"
                    )
                    return False

                current = self.refresh()
                if current and current.table_uuid != base_metadata.table_uuid:
                    raise ValueError("Table UUID mismatch - concurrent modification detected")

                next_version = (current_version or 0) + 1
                new_metadata.last_updated_ms = int(datetime.now().timestamp() * 1000)
                new_metadata.version = next_version

                self._write_metadata_file(self._metadata_file(next_version), new_metadata)
                # Commit point: after this the new version is visible
                self._write_version_hint(next_version)

                logger.info(
                    f"Advanced metadata to v{next_version} "
                    f"(snapshot {base_metadata.current_snapshot_id} -> "
                    f"{new_metadata.current_snapshot_id})"
                )
                return True
            finally:
                self.lock_provider.release()

    def commit(self, base_metadata: TableMetadata, new_metadata: TableMetadata) -> TableMetadata:
        """Raising form of :meth:`cas_advance`.

        Raises:
            ConcurrentModificationException: If another writer advanced the pointer first
        """
        if not self.cas_advance(base_metadata, new_metadata):
            raise ConcurrentModificationException(
                f"Cannot commit metadata: concurrent modification detected. "
                f"Expected current_snapshot_id: {base_metadata.current_snapshot_id}",
                base_snapshot_id=base_metadata.current_snapshot_id,
            )
        return new_metadata

    def _metadata_file(self, version: int) -> str:
        return f"{self.metadata_path}/v{version}.metadata.json"

    def _write_metadata_file(self, path: str, metadata: TableMetadata) -> None:
        self.storage.write_json(path, metadata_to_dict(metadata))

    def _read_metadata_file(self, path: str) -> TableMetadata:
        return dict_to_metadata(self.storage.read_json(path))

    def _write_version_hint(self, version: int) -> None:
        self.storage.write_file(VERSION_HINT, str(version).encode("utf-8"))

    def _read_version_hint(self) -> Optional[int]:
        if not self.storage.exists(VERSION_HINT):
            return None
        content = self.storage.read_file(VERSION_HINT).decode("utf-8").strip()
        return int(content) if content.isdigit() else None


def metadata_to_dict(metadata: TableMetadata) -> Dict[str, Any]:
    """Convert TableMetadata to a JSON-serializable dict"""
    return {
        "location": metadata.location,
        "table_uuid": metadata.table_uuid,
        "format_version": metadata.format_version,
        "last_sequence_number": metadata.last_sequence_number,
        "last_updated_ms": metadata.last_updated_ms,
        "last_column_id": metadata.last_column_id,
        "last_partition_id": metadata.last_partition_id,
        "schemas": [
            {"schema_id": schema.schema_id, "fields": schema.fields}
            for schema in metadata.schemas
        ],
        "current_schema_id": metadata.current_schema_id,
        "partition_specs": [
            {
                "spec_id": spec.spec_id,
                "fields": [
                    {
                        "source_id": pfield.source_id,
                        "field_id": pfield.field_id,
                        "name": pfield.name,
                        "transform": pfield.transform,
                    }
                    for pfield in spec.fields
                ],
            }
            for spec in metadata.partition_specs
        ],
        "default_spec_id": metadata.default_spec_id,
        "properties": metadata.properties,
        "current_snapshot_id": metadata.current_snapshot_id,
        "snapshots": [
            {
                "snapshot_id": snapshot.snapshot_id,
                "parent_snapshot_id": snapshot.parent_snapshot_id,
                "sequence_number": snapshot.sequence_number,
                "timestamp_ms": snapshot.timestamp_ms,
                "manifest_list": snapshot.manifest_list,
                "operation": snapshot.operation,
                "summary": snapshot.summary,
                "schema_id": snapshot.schema_id,
                "spec_id": snapshot.spec_id,
            }
            for snapshot in metadata.snapshots
        ],
        "snapshot_log": [
            {"timestamp_ms": entry.timestamp_ms, "snapshot_id": entry.snapshot_id}
            for entry in metadata.snapshot_log
        ],
    }


def dict_to_metadata(metadata_dict: Dict[str, Any]) -> TableMetadata:
    """Convert a dict read from a metadata file back to TableMetadata"""
    schemas = [
        Schema(schema_id=schema_dict["schema_id"], fields=schema_dict["fields"])
        for schema_dict in metadata_dict["schemas"]
    ]

    partition_specs = [
        PartitionSpec(
            spec_id=spec_dict["spec_id"],
            fields=[
                PartitionField(
                    source_id=field_dict["source_id"],
                    field_id=field_dict["field_id"],
                    name=field_dict["name"],
                    transform=field_dict["transform"],
                )
                for field_dict in spec_dict["fields"]
            ],
        )
        for spec_dict in metadata_dict["partition_specs"]
    ]

    snapshots = [
        Snapshot(
            snapshot_id=snapshot_dict["snapshot_id"],
            parent_snapshot_id=snapshot_dict.get("parent_snapshot_id"),
            sequence_number=snapshot_dict["sequence_number"],
            timestamp_ms=snapshot_dict["timestamp_ms"],
            manifest_list=snapshot_dict["manifest_list"],
            operation=snapshot_dict.get("operation"),
            summary=snapshot_dict.get("summary", {}),
            schema_id=snapshot_dict.get("schema_id"),
            spec_id=snapshot_dict.get("spec_id"),
        )
        for snapshot_dict in metadata_dict["snapshots"]
    ]

    snapshot_log = [
        HistoryEntry(timestamp_ms=entry["timestamp_ms"], snapshot_id=entry["snapshot_id"])
        for entry in metadata_dict["snapshot_log"]
    ]

    return TableMetadata(
        location=metadata_dict["location"],
        table_uuid=metadata_dict["table_uuid"],
        format_version=metadata_dict["format_version"],
        last_sequence_number=metadata_dict["last_sequence_number"],
        last_updated_ms=metadata_dict["last_updated_ms"],
        last_column_id=metadata_dict["last_column_id"],
        last_partition_id=metadata_dict["last_partition_id"],
        schemas=schemas,
        current_schema_id=metadata_dict["current_schema_id"],
        partition_specs=partition_specs,
        default_spec_id=metadata_dict["default_spec_id"],
        properties=metadata_dict["properties"],
        current_snapshot_id=metadata_dict["current_snapshot_id"],
        snapshots=snapshots,
        snapshot_log=snapshot_log,
    )

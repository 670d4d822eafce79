"""
Manifest management for rowdelta tables.

A snapshot's manifest list names at most two manifests, one for data files
and one for delete files. Each manifest records only what the snapshot
changed: entries are ADDED or DELETED relative to the parent snapshot.
"""

import uuid
from io import BytesIO
from typing import Any, Dict, List, Tuple

import fastavro

from .avro_schemas import MANIFEST_ENTRY_SCHEMA, MANIFEST_FILE_SCHEMA
from .data_structures import (
    ContentFile,
    DataFile,
    DeleteFile,
    FileContent,
    FileFormat,
    ManifestContent,
    ManifestEntry,
    ManifestEntryStatus,
    ManifestFile,
)
from .errors import MissingFile
from .logging_config import get_logger
from .storage_backend import StorageBackend

logger = get_logger(__name__)


class FileManager:
    """Writes and reads manifests and manifest lists"""

    def __init__(self, table_path: str, storage: StorageBackend):
        self.table_path = table_path
        self.storage = storage

        self.data_path = "data"
        self.manifests_path = "metadata/manifests"

        self.storage.makedirs(self.data_path, exist_ok=True)
        self.storage.makedirs(self.manifests_path, exist_ok=True)

    def validate_file_exists(self, file_path: str) -> bool:
        """Check a table-relative or ``/``-prefixed path exists"""
        return self.storage.exists(file_path.lstrip("/"))

    def validate_files(self, files: List[ContentFile]) -> None:
        """Ensure every referenced file is present before it is committed.

        Raises:
            MissingFile: For the first absent file
        """
        for content_file in files:
            if not self.validate_file_exists(content_file.file_path):
                raise MissingFile(content_file.file_path)

    def write_manifest(
        self,
        entries: List[ManifestEntry],
        content: ManifestContent,
        snapshot_id: int,
        sequence_number: int,
    ) -> ManifestFile:
        """Write one Avro manifest holding ``entries``"""
        manifest_path = f"{self.manifests_path}/{uuid.uuid4().hex}-m{int(content)}.avro"

        records = [_entry_to_record(entry) for entry in entries]
        bytes_io = BytesIO()
        fastavro.writer(bytes_io, MANIFEST_ENTRY_SCHEMA, records)
        payload = bytes_io.getvalue()
        self.storage.write_file(manifest_path, payload)

        spec_id = entries[0].file.spec_id if entries else 0
        added = sum(1 for e in entries if e.status == ManifestEntryStatus.ADDED)
        logger.debug(f"Wrote manifest {manifest_path} with {len(entries)} entries")
        return ManifestFile(
            manifest_path=manifest_path,
            manifest_length=len(payload),
            partition_spec_id=spec_id,
            added_snapshot_id=snapshot_id,
            added_files_count=added,
            deleted_files_count=len(entries) - added,
            content=content,
            sequence_number=sequence_number,
        )

    def read_manifest(self, manifest_path: str) -> List[ManifestEntry]:
        """Read the entries of one manifest, in write order"""
        path = manifest_path.lstrip("/")
        if not self.storage.exists(path):
            raise MissingFile(manifest_path)

        with self.storage.open_file(path) as stream:
            return [_record_to_entry(record) for record in fastavro.reader(stream)]

    def write_manifest_list(self, manifest_files: List[ManifestFile], snapshot_id: int) -> str:
        """Write the manifest list of a snapshot and return its path"""
        list_path = f"{self.manifests_path}/snap-{snapshot_id}-{uuid.uuid4().hex}.avro"

        records: List[Dict[str, Any]] = [
            {
                "manifest_path": mf.manifest_path,
                "manifest_length": mf.manifest_length,
                "partition_spec_id": mf.partition_spec_id,
                "content": int(mf.content),
                "sequence_number": mf.sequence_number,
                "added_snapshot_id": mf.added_snapshot_id,
                "added_files_count": mf.added_files_count,
                "deleted_files_count": mf.deleted_files_count,
            }
            for mf in manifest_files
        ]

        bytes_io = BytesIO()
        fastavro.writer(bytes_io, MANIFEST_FILE_SCHEMA, records)
        self.storage.write_file(list_path, bytes_io.getvalue())
        return list_path

    def read_manifest_list(self, list_path: str) -> List[ManifestFile]:
        """Read the manifests named by a manifest list"""
        path = list_path.lstrip("/")
        if not self.storage.exists(path):
            raise MissingFile(list_path)

        with self.storage.open_file(path) as stream:
            return [
                ManifestFile(
                    manifest_path=record["manifest_path"],
                    manifest_length=record["manifest_length"],
                    partition_spec_id=record["partition_spec_id"],
                    added_snapshot_id=record["added_snapshot_id"],
                    added_files_count=record["added_files_count"],
                    deleted_files_count=record["deleted_files_count"],
                    content=ManifestContent(record["content"]),
                    sequence_number=record.get("sequence_number"),
                )
                for record in fastavro.reader(stream)
            ]

    def read_snapshot_delta(self, list_path: str) -> Tuple[List[ManifestEntry], List[ManifestEntry]]:
        """All entries of a snapshot, split into (data entries, delete entries)"""
        data_entries: List[ManifestEntry] = []
        delete_entries: List[ManifestEntry] = []
        for manifest in self.read_manifest_list(list_path):
            entries = self.read_manifest(manifest.manifest_path)
            if manifest.content == ManifestContent.DATA:
                data_entries.extend(entries)
            else:
                delete_entries.extend(entries)
        return data_entries, delete_entries


def _entry_to_record(entry: ManifestEntry) -> Dict[str, Any]:
    content_file = entry.file
    equality_ids = None
    referenced = None
    if isinstance(content_file, DeleteFile):
        equality_ids = list(content_file.equality_ids) if content_file.equality_ids else None
        referenced = content_file.referenced_data_file

    return {
        "status": int(entry.status),
        "snapshot_id": entry.snapshot_id,
        "sequence_number": content_file.sequence_number,
        "data_file": {
            "content": int(content_file.content),
            "file_path": content_file.file_path,
            "file_format": content_file.file_format.value,
            "partition": dict(content_file.partition_values),
            "record_count": content_file.record_count,
            "file_size_in_bytes": content_file.file_size_in_bytes,
            "spec_id": content_file.spec_id,
            "schema_id": content_file.schema_id,
            "equality_ids": equality_ids,
            "referenced_data_file": referenced,
        },
    }


def _record_to_entry(record: Dict[str, Any]) -> ManifestEntry:
    file_record: Dict[str, Any] = record["data_file"]
    content = FileContent(file_record["content"])
    common = dict(
        file_path=file_record["file_path"],
        file_format=FileFormat(file_record["file_format"]),
        partition_values=dict(file_record["partition"]),
        record_count=file_record["record_count"],
        file_size_in_bytes=file_record["file_size_in_bytes"],
        spec_id=file_record["spec_id"],
        schema_id=file_record["schema_id"],
        sequence_number=record.get("sequence_number"),
    )

    content_file: ContentFile
    if content == FileContent.DATA:
        content_file = DataFile(**common)
    else:
        equality_ids = file_record.get("equality_ids")
        content_file = DeleteFile(
            content=content,
            equality_ids=tuple(equality_ids) if equality_ids else None,
            referenced_data_file=file_record.get("referenced_data_file"),
            **common,
        )

    return ManifestEntry(
        status=ManifestEntryStatus(record["status"]),
        snapshot_id=record["snapshot_id"],
        file=content_file,
    )

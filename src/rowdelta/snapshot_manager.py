"""
Snapshot chain and live-file views.

Snapshots form an append-only log indexed by snapshot id. Each snapshot
stores only its delta against the parent; the live file set of a snapshot is
rebuilt by replaying deltas from the root and memoized per snapshot id.
Snapshots are immutable, so memoized views never go stale.
"""

import threading
import uuid
from copy import deepcopy
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .data_structures import (
    DataFile,
    DeleteFile,
    HistoryEntry,
    LiveFiles,
    ManifestContent,
    ManifestEntry,
    ManifestEntryStatus,
    Snapshot,
    TableMetadata,
)
from .errors import SnapshotNotFound
from .file_manager import FileManager
from .logging_config import get_logger
from .metadata_manager import MetadataManager

logger = get_logger(__name__)

EMPTY_LIVE_FILES = LiveFiles(frozenset(), frozenset())


class SnapshotManager:
    """Reads the snapshot chain and creates new snapshots for the commit coordinator"""

    def __init__(self, metadata_manager: MetadataManager, file_manager: FileManager):
        self.metadata_manager = metadata_manager
        self.file_manager = file_manager
        self._live_cache: Dict[int, LiveFiles] = {}
        self._cache_lock = threading.Lock()

    def _metadata(self, metadata: Optional[TableMetadata]) -> TableMetadata:
        if metadata is not None:
            return metadata
        refreshed = self.metadata_manager.refresh()
        if refreshed is None:
            raise ValueError(f"No table metadata found at {self.metadata_manager.table_path}")
        return refreshed

    def current(self, metadata: Optional[TableMetadata] = None) -> Optional[Snapshot]:
        """The snapshot the table pointer currently names, None for an empty table"""
        return self._metadata(metadata).current_snapshot()

    def at(self, snapshot_id: int, metadata: Optional[TableMetadata] = None) -> Snapshot:
        """Look up a snapshot by id.

        Raises:
            SnapshotNotFound: If the table has no such snapshot
        """
        snapshot = self._metadata(metadata).snapshot_by_id(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFound(snapshot_id)
        return snapshot

    def live_files(
        self, snapshot: Optional[Snapshot], metadata: Optional[TableMetadata] = None
    ) -> LiveFiles:
        """Data and delete files live at ``snapshot`` (empty for None).

        Walks parent pointers back to the nearest memoized ancestor (or the
        root), then replays deltas forward.
        """
        if snapshot is None:
            return EMPTY_LIVE_FILES

        cached = self._cached(snapshot.snapshot_id)
        if cached is not None:
            return cached

        meta = self._metadata(metadata)
        chain: List[Snapshot] = []
        base = EMPTY_LIVE_FILES
        node: Optional[Snapshot] = snapshot
        while node is not None:
            cached = self._cached(node.snapshot_id)
            if cached is not None:
                base = cached
                break
            chain.append(node)
            if node.parent_snapshot_id is None:
                break
            parent = meta.snapshot_by_id(node.parent_snapshot_id)
            if parent is None:
                raise SnapshotNotFound(node.parent_snapshot_id)
            node = parent

        live = base
        for node in reversed(chain):
            data_entries, delete_entries = self.file_manager.read_snapshot_delta(node.manifest_list)
            live = apply_delta(live, data_entries, delete_entries)
            self._remember(node.snapshot_id, live)

        logger.debug(
            f"Snapshot {snapshot.snapshot_id}: {len(live.data_files)} data files, "
            f"{len(live.delete_files)} delete files live (replayed {len(chain)} deltas)"
        )
        return live

    def _cached(self, snapshot_id: int) -> Optional[LiveFiles]:
        with self._cache_lock:
            return self._live_cache.get(snapshot_id)

    def _remember(self, snapshot_id: int, live: LiveFiles) -> None:
        with self._cache_lock:
            self._live_cache[snapshot_id] = live

    def ancestors(self, snapshot_id: int, metadata: Optional[TableMetadata] = None) -> List[Snapshot]:
        """The snapshot and its ancestors, newest first"""
        meta = self._metadata(metadata)
        result: List[Snapshot] = []
        next_id: Optional[int] = snapshot_id
        while next_id is not None:
            snapshot = meta.snapshot_by_id(next_id)
            if snapshot is None:
                raise SnapshotNotFound(next_id)
            result.append(snapshot)
            next_id = snapshot.parent_snapshot_id
        return result

    def snapshots_since(
        self, base_snapshot_id: Optional[int], metadata: TableMetadata
    ) -> Optional[List[Snapshot]]:
        """Snapshots committed after ``base_snapshot_id`` up to the current one, oldest first.

        Returns None when the base is not an ancestor of the current snapshot.
        """
        current_id = metadata.current_snapshot_id
        if current_id is None:
            return [] if base_snapshot_id is None else None

        newer: List[Snapshot] = []
        for snapshot in self.ancestors(current_id, metadata):
            if snapshot.snapshot_id == base_snapshot_id:
                return list(reversed(newer))
            newer.append(snapshot)
        return list(reversed(newer)) if base_snapshot_id is None else None

    def snapshot_delta(self, snapshot: Snapshot) -> Tuple[List[ManifestEntry], List[ManifestEntry]]:
        """The (data, delete) manifest entries ``snapshot`` itself recorded"""
        return self.file_manager.read_snapshot_delta(snapshot.manifest_list)

    def create_snapshot(
        self,
        base_metadata: TableMetadata,
        added_data_files: List[DataFile],
        added_delete_files: List[DeleteFile],
        removed_data_files: List[DataFile],
        operation: str,
        sequence_number: int,
        summary: Optional[Dict[str, str]] = None,
    ) -> Snapshot:
        """Write the delta manifests and swap the pointer to a new child snapshot.

        The new snapshot's parent is ``base_metadata``'s current snapshot.

        Raises:
            ConcurrentModificationException: If the pointer moved since ``base_metadata`` was read
        """
        # 63 bits keeps the id a positive signed long for Avro
        snapshot_id = uuid.uuid4().int & ((1 << 63) - 1)

        data_entries = [
            ManifestEntry(ManifestEntryStatus.ADDED, snapshot_id, f) for f in added_data_files
        ] + [ManifestEntry(ManifestEntryStatus.DELETED, snapshot_id, f) for f in removed_data_files]
        delete_entries = [
            ManifestEntry(ManifestEntryStatus.ADDED, snapshot_id, f) for f in added_delete_files
        ]

        manifests = []
        if data_entries:
            manifests.append(
                self.file_manager.write_manifest(
                    data_entries, ManifestContent.DATA, snapshot_id, sequence_number
                )
            )
        if delete_entries:
            manifests.append(
                self.file_manager.write_manifest(
                    delete_entries, ManifestContent.DELETES, snapshot_id, sequence_number
                )
            )
        manifest_list = self.file_manager.write_manifest_list(manifests, snapshot_id)

        snapshot = Snapshot(
            snapshot_id=snapshot_id,
            timestamp_ms=int(datetime.now().timestamp() * 1000),
            manifest_list=manifest_list,
            sequence_number=sequence_number,
            parent_snapshot_id=base_metadata.current_snapshot_id,
            operation=operation,
            summary=summary or {},
            schema_id=base_metadata.current_schema_id,
            spec_id=base_metadata.default_spec_id,
        )

        new_metadata = deepcopy(base_metadata)
        new_metadata.snapshots.append(snapshot)
        new_metadata.current_snapshot_id = snapshot_id
        new_metadata.last_sequence_number = sequence_number
        new_metadata.snapshot_log.append(
            HistoryEntry(timestamp_ms=snapshot.timestamp_ms, snapshot_id=snapshot_id)
        )

        self.metadata_manager.commit(base_metadata, new_metadata)

        parent_live = self._cached(base_metadata.current_snapshot_id) if (
            base_metadata.current_snapshot_id is not None
        ) else EMPTY_LIVE_FILES
        if parent_live is not None:
            self._remember(snapshot_id, apply_delta(parent_live, data_entries, delete_entries))

        logger.info(
            f"Created snapshot {snapshot_id} (seq {sequence_number}, {operation}) "
            f"on parent {snapshot.parent_snapshot_id}"
        )
        return snapshot

    def snapshot_as_of(
        self, timestamp_ms: int, metadata: Optional[TableMetadata] = None
    ) -> Optional[Snapshot]:
        """The snapshot that was current at ``timestamp_ms``, from the snapshot log"""
        meta = self._metadata(metadata)
        target_id = None
        for entry in sorted(meta.snapshot_log, key=lambda e: e.timestamp_ms):
            if entry.timestamp_ms <= timestamp_ms:
                target_id = entry.snapshot_id
            else:
                break
        return meta.snapshot_by_id(target_id) if target_id is not None else None

    def list_snapshots(self, metadata: Optional[TableMetadata] = None) -> List[Dict[str, Any]]:
        """List all snapshots with their details, in commit order"""
        return [
            {
                "snapshot_id": snapshot.snapshot_id,
                "parent_id": snapshot.parent_snapshot_id,
                "sequence_number": snapshot.sequence_number,
                "timestamp_ms": snapshot.timestamp_ms,
                "timestamp": datetime.fromtimestamp(snapshot.timestamp_ms / 1000.0),
                "operation": snapshot.operation,
                "summary": snapshot.summary,
                "schema_id": snapshot.schema_id,
                "spec_id": snapshot.spec_id,
            }
            for snapshot in sorted(self._metadata(metadata).snapshots, key=lambda s: s.sequence_number)
        ]


def apply_delta(
    live: LiveFiles,
    data_entries: Iterable[ManifestEntry],
    delete_entries: Iterable[ManifestEntry],
) -> LiveFiles:
    """Apply one snapshot's added/removed entries to a live view, keyed by file path"""
    data = {f.file_path: f for f in live.data_files}
    deletes = {f.file_path: f for f in live.delete_files}

    for entry in data_entries:
        if entry.status == ManifestEntryStatus.ADDED:
            data[entry.file.file_path] = entry.file
        else:
            data.pop(entry.file.file_path, None)

    for entry in delete_entries:
        if entry.status == ManifestEntryStatus.ADDED:
            deletes[entry.file.file_path] = entry.file
        else:
            deletes.pop(entry.file.file_path, None)

    return LiveFiles(frozenset(data.values()), frozenset(deletes.values()))

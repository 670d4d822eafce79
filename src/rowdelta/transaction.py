"""
Row delta transactions with optimistic concurrency control.

A transaction collects added data files, added delete files and removed data
files against a base snapshot. Commit validates the changes against every
snapshot committed since that base, writes the new snapshot's manifests and
swaps the table pointer; when another writer swaps it first the transaction
re-validates against the new current snapshot and retries.
"""

import random
import threading
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from .config import TableProperties, property_as_int
from .data_structures import DataFile, DeleteFile, FileContent, LiveFiles, Snapshot, TableMetadata
from .delete_index import DeleteFileIndex
from .errors import (
    CommitConflict,
    ConcurrentModificationException,
    MalformedDeleteFile,
    MissingFile,
    SchemaMismatch,
)
from .file_manager import FileManager
from .logging_config import get_logger
from .metadata_manager import MetadataManager
from .snapshot_manager import EMPTY_LIVE_FILES, SnapshotManager

logger = get_logger(__name__)


class CommitState(Enum):
    """Lifecycle of a transaction"""

    PROPOSED = "proposed"
    VALIDATED = "validated"
    COMMITTED = "committed"
    CONFLICTED = "conflicted"
    ABORTED = "aborted"


class Transaction:
    """A row delta against ``base_snapshot_id`` (None for an empty table)"""

    def __init__(
        self,
        metadata_manager: MetadataManager,
        snapshot_manager: SnapshotManager,
        file_manager: FileManager,
        base_snapshot_id: Optional[int],
    ):
        self.metadata_manager = metadata_manager
        self.snapshot_manager = snapshot_manager
        self.file_manager = file_manager
        self.base_snapshot_id = base_snapshot_id

        self._added_data: List[DataFile] = []
        self._added_deletes: List[DeleteFile] = []
        self._removed_paths: List[str] = []
        self._required_paths: List[str] = []

        self._state = CommitState.PROPOSED
        self._lock = threading.RLock()
        self.snapshot_id: Optional[int] = None

    @property
    def state(self) -> CommitState:
        return self._state

    def _check_open(self) -> None:
        if self._state != CommitState.PROPOSED:
            raise RuntimeError(f"Transaction is {self._state.value}, cannot be changed")

    def add_data_file(self, data_file: DataFile) -> "Transaction":
        with self._lock:
            self._check_open()
            self._added_data.append(data_file)
        return self

    def add_delete_file(self, delete_file: DeleteFile) -> "Transaction":
        with self._lock:
            self._check_open()
            self._added_deletes.append(delete_file)
        return self

    def remove_data_file(self, data_file: Union[DataFile, str]) -> "Transaction":
        """Drop a live data file from the table, as when rewriting it"""
        path = data_file if isinstance(data_file, str) else data_file.file_path
        with self._lock:
            self._check_open()
            self._removed_paths.append(path)
        return self

    def validate_data_files_exist(self, paths: Iterable[str]) -> "Transaction":
        """Require ``paths`` to still be live when the transaction commits"""
        with self._lock:
            self._check_open()
            self._required_paths.extend(paths)
        return self

    def abort(self) -> None:
        """Abandon the transaction. Nothing it prepared becomes visible."""
        with self._lock:
            if self._state in (CommitState.PROPOSED, CommitState.VALIDATED):
                self._state = CommitState.ABORTED
                logger.info(f"Aborted transaction on base snapshot {self.base_snapshot_id}")

    def commit(self) -> int:
        """Validate and publish the changes as a new snapshot.

        Returns:
            The id of the new snapshot

        Raises:
            CommitConflict: If a concurrent commit invalidated the changes, or
                the pointer kept moving for ``commit.retry.num-retries`` retries
            MissingFile: If an added file is absent from storage
            MalformedDeleteFile: If a position delete targets a file that was never live
            SchemaMismatch: If a file names an unknown schema or spec
        """
        with self._lock:
            self._check_open()
            if not (self._added_data or self._added_deletes or self._removed_paths):
                raise ValueError("Nothing to commit: transaction has no changes")

            try:
                self.file_manager.validate_files(self._added_data + self._added_deletes)
                self.snapshot_id = self._commit_with_retries()
            except CommitConflict:
                self._state = CommitState.CONFLICTED
                raise
            except Exception:
                self._state = CommitState.ABORTED
                raise

            self._state = CommitState.COMMITTED
            return self.snapshot_id

    def _commit_with_retries(self) -> int:
        attempt = 0
        while True:
            metadata = self.metadata_manager.refresh()
            if metadata is None:
                raise RuntimeError(f"No table metadata found at {self.metadata_manager.table_path}")

            num_retries = property_as_int(
                metadata.properties,
                TableProperties.COMMIT_NUM_RETRIES,
                TableProperties.COMMIT_NUM_RETRIES_DEFAULT,
            )

            current_live = self.snapshot_manager.live_files(metadata.current_snapshot(), metadata)
            removed = self._validate(metadata, current_live)
            self._state = CommitState.VALIDATED

            sequence_number = metadata.last_sequence_number + 1
            added_data = [replace(f, sequence_number=sequence_number) for f in self._added_data]
            added_deletes = [
                replace(f, sequence_number=sequence_number) for f in self._added_deletes
            ]

            try:
                snapshot = self.snapshot_manager.create_snapshot(
                    metadata,
                    added_data,
                    added_deletes,
                    removed,
                    operation=self._operation(),
                    sequence_number=sequence_number,
                    summary=self._summary(added_data, added_deletes, removed),
                )
            except ConcurrentModificationException as e:
                attempt += 1
                if attempt > num_retries:
                    raise CommitConflict(
                        f"Failed to commit after {num_retries} retries: {e}",
                        base_snapshot_id=self.base_snapshot_id,
                    ) from e
                delay = self._backoff(metadata, attempt)
                logger.warning(
                    f"Commit attempt {attempt} lost the pointer race, retrying in {delay:.3f}s"
                )
                self._state = CommitState.PROPOSED
                time.sleep(delay)
                continue

            logger.info(
                f"Committed snapshot {snapshot.snapshot_id} (seq {sequence_number}): "
                f"{len(added_data)} data files, {len(added_deletes)} delete files added, "
                f"{len(removed)} data files removed"
            )
            return snapshot.snapshot_id

    @staticmethod
    def _backoff(metadata: TableMetadata, attempt: int) -> float:
        min_wait = property_as_int(
            metadata.properties,
            TableProperties.COMMIT_MIN_RETRY_WAIT_MS,
            TableProperties.COMMIT_MIN_RETRY_WAIT_MS_DEFAULT,
        )
        max_wait = property_as_int(
            metadata.properties,
            TableProperties.COMMIT_MAX_RETRY_WAIT_MS,
            TableProperties.COMMIT_MAX_RETRY_WAIT_MS_DEFAULT,
        )
        delay = min(min_wait * (2 ** (attempt - 1)), max_wait) / 1000.0
        return delay + random.uniform(0, delay * 0.5)

    def _validate(self, metadata: TableMetadata, current_live: LiveFiles) -> List[DataFile]:
        """Check the changes against the observed current snapshot.

        Returns the live records of the removed data files.
        """
        self._validate_files(metadata)

        live_by_path: Dict[str, DataFile] = {f.file_path: f for f in current_live.data_files}
        base_live = current_live
        since_base = None
        if metadata.current_snapshot_id != self.base_snapshot_id:
            since_base = self.snapshot_manager.snapshots_since(self.base_snapshot_id, metadata)
            if since_base is None:
                raise CommitConflict(
                    f"Base snapshot {self.base_snapshot_id} is not an ancestor of the "
                    f"current snapshot {metadata.current_snapshot_id}",
                    base_snapshot_id=self.base_snapshot_id,
                )
            base_live = (
                self.snapshot_manager.live_files(
                    self.snapshot_manager.at(self.base_snapshot_id, metadata), metadata
                )
                if self.base_snapshot_id is not None
                else EMPTY_LIVE_FILES
            )
        base_paths = {f.file_path for f in base_live.data_files}

        def require_live(path: str, missing_error: Exception) -> None:
            if path in live_by_path:
                return
            if path in base_paths:
                raise CommitConflict(
                    f"Data file {path} was removed by a concurrent commit",
                    base_snapshot_id=self.base_snapshot_id,
                )
            raise missing_error

        for delete_file in self._added_deletes:
            if delete_file.is_positional:
                target = delete_file.referenced_data_file
                if target is None:
                    raise MalformedDeleteFile(
                        "Position delete file has no target data file", delete_file.file_path
                    )
                require_live(
                    target,
                    MalformedDeleteFile(
                        f"Position delete targets {delete_file.referenced_data_file}, "
                        f"which is not a live data file",
                        delete_file.file_path,
                    ),
                )
        for path in self._required_paths:
            require_live(path, MissingFile(path))
        for path in self._removed_paths:
            require_live(path, MissingFile(path))

        for data_file in self._added_data:
            if data_file.file_path in live_by_path:
                raise ValueError(f"Data file {data_file.file_path} is already part of the table")

        removed = [live_by_path[path] for path in dict.fromkeys(self._removed_paths)]
        if removed and since_base:
            self._check_new_deletes(metadata, since_base, removed)
        return removed

    def _check_new_deletes(
        self, metadata: TableMetadata, since_base: List[Snapshot], removed: List[DataFile]
    ) -> None:
        # Deletes committed after the base would be lost with the files they apply to
        new_deletes: List[DeleteFile] = []
        for snapshot in since_base:
            _, delete_entries = self.snapshot_manager.snapshot_delta(snapshot)
            new_deletes.extend(entry.file for entry in delete_entries)  # type: ignore[misc]
        if not new_deletes:
            return

        index = DeleteFileIndex.from_files(new_deletes, metadata.specs_by_id())
        for data_file in removed:
            applicable = index.applicable_deletes(data_file)
            if applicable:
                raise CommitConflict(
                    f"Cannot remove {data_file.file_path}: {len(applicable)} delete files "
                    f"committed since snapshot {self.base_snapshot_id} apply to it",
                    base_snapshot_id=self.base_snapshot_id,
                )

    def _validate_files(self, metadata: TableMetadata) -> None:
        specs = metadata.specs_by_id()
        for content_file in [*self._added_data, *self._added_deletes]:
            spec = specs.get(content_file.spec_id)
            if spec is None:
                raise SchemaMismatch(
                    f"{content_file.file_path} names unknown partition spec {content_file.spec_id}"
                )
            if set(content_file.partition_values) != set(spec.field_names()):
                raise SchemaMismatch(
                    f"{content_file.file_path} partition values {sorted(content_file.partition_values)} "
                    f"do not match spec {spec.spec_id} fields {spec.field_names()}"
                )
            schema = metadata.schema_by_id(content_file.schema_id)
            if isinstance(content_file, DeleteFile) and content_file.equality_ids:
                for field_id in content_file.equality_ids:
                    schema.find_field(field_id)

    def _operation(self) -> str:
        if self._removed_paths:
            return "overwrite" if (self._added_data or self._added_deletes) else "delete"
        if self._added_deletes:
            return "overwrite" if self._added_data else "delete"
        return "append"

    @staticmethod
    def _summary(
        added_data: List[DataFile], added_deletes: List[DeleteFile], removed: List[DataFile]
    ) -> Dict[str, str]:
        positional = [d for d in added_deletes if d.content == FileContent.POSITION_DELETES]
        return {
            "added-data-files": str(len(added_data)),
            "added-records": str(sum(f.record_count for f in added_data)),
            "added-position-delete-files": str(len(positional)),
            "added-equality-delete-files": str(len(added_deletes) - len(positional)),
            "removed-data-files": str(len(removed)),
            "removed-records": str(sum(f.record_count for f in removed)),
        }

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is not None:
            self.abort()
        elif self._state == CommitState.PROPOSED:
            self.commit()

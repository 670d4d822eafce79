"""
Delete file applicability.

A delete file applies to a data file when all of the following hold:

- its partition scope covers the data file: either the delete was written
  under an unpartitioned spec (global scope), or it shares the data file's
  spec id and partition values;
- its sequence number is strictly greater than the data file's, so deletes
  never touch rows written at or after them;
- for position deletes, its referenced data file is this data file.
"""

from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Tuple

from .data_structures import DataFile, DeleteFile, PartitionSpec, Snapshot
from .errors import MalformedDeleteFile
from .logging_config import get_logger

if TYPE_CHECKING:
    from .snapshot_manager import SnapshotManager

logger = get_logger(__name__)

PartitionKey = Tuple[int, Tuple[Tuple[str, object], ...]]


def _partition_key(spec_id: int, partition_values: Mapping[str, object]) -> PartitionKey:
    return spec_id, tuple(sorted(partition_values.items()))


def _ordered(deletes: Iterable[DeleteFile]) -> List[DeleteFile]:
    return sorted(deletes, key=lambda d: (d.sequence_number or 0, d.file_path))


class DeleteFileIndex:
    """Pre-grouped view of the delete files live in one snapshot.

    Build once per scan with :meth:`from_files`; :meth:`applicable_deletes`
    is a pure lookup and may be called concurrently.
    """

    def __init__(
        self,
        global_deletes: List[DeleteFile],
        partitioned_deletes: Dict[PartitionKey, List[DeleteFile]],
        positional_by_target: Dict[str, List[DeleteFile]],
    ):
        self._global = global_deletes
        self._by_partition = partitioned_deletes
        self._positional_by_target = positional_by_target

    @classmethod
    def from_files(
        cls, delete_files: Iterable[DeleteFile], specs: Mapping[int, PartitionSpec]
    ) -> "DeleteFileIndex":
        """Group delete files by scope.

        Raises:
            MalformedDeleteFile: If a delete file names a spec the table does not have
        """
        global_deletes: List[DeleteFile] = []
        partitioned: Dict[PartitionKey, List[DeleteFile]] = {}
        positional: Dict[str, List[DeleteFile]] = {}

        for delete_file in delete_files:
            if delete_file.sequence_number is None:
                raise MalformedDeleteFile(
                    "Delete file has no sequence number", delete_file.file_path
                )
            spec = specs.get(delete_file.spec_id)
            if spec is None:
                raise MalformedDeleteFile(
                    f"Delete file references unknown partition spec {delete_file.spec_id}",
                    delete_file.file_path,
                )

            if spec.is_unpartitioned:
                global_deletes.append(delete_file)
            else:
                key = _partition_key(delete_file.spec_id, delete_file.partition_values)
                partitioned.setdefault(key, []).append(delete_file)

            if delete_file.is_positional:
                if delete_file.referenced_data_file is None:
                    raise MalformedDeleteFile(
                        "Position delete file has no target data file", delete_file.file_path
                    )
                positional.setdefault(delete_file.referenced_data_file, []).append(delete_file)

        return cls(global_deletes, partitioned, positional)

    def applicable_deletes(self, data_file: DataFile) -> List[DeleteFile]:
        """Delete files that apply to ``data_file``.

        Position deletes come first, then equality deletes; each group is
        ordered by sequence number, then path.

        Raises:
            MalformedDeleteFile: If a position delete targets ``data_file`` by
                path but is scoped to a different partition
        """
        data_seq = data_file.sequence_number
        if data_seq is None:
            raise ValueError(f"Data file has not been committed: {data_file.file_path}")

        candidates = list(self._global)
        candidates.extend(
            self._by_partition.get(_partition_key(data_file.spec_id, data_file.partition_values), [])
        )

        in_scope = {d.file_path for d in candidates}
        for positional in self._positional_by_target.get(data_file.file_path, []):
            if positional.file_path not in in_scope:
                raise MalformedDeleteFile(
                    f"Position delete targets {data_file.file_path} but is scoped to spec "
                    f"{positional.spec_id} partition {positional.partition_values}, data file is "
                    f"spec {data_file.spec_id} partition {data_file.partition_values}",
                    positional.file_path,
                )

        positional_deletes = []
        equality_deletes = []
        for delete_file in candidates:
            delete_seq = delete_file.sequence_number
            if delete_seq is None:
                raise MalformedDeleteFile("Delete file has no sequence number", delete_file.file_path)
            if delete_seq <= data_seq:
                continue
            if delete_file.is_positional:
                if delete_file.referenced_data_file == data_file.file_path:
                    positional_deletes.append(delete_file)
            else:
                equality_deletes.append(delete_file)

        result = _ordered(positional_deletes) + _ordered(equality_deletes)
        logger.debug(
            f"{data_file.file_path} (seq {data_seq}): {len(positional_deletes)} position, "
            f"{len(equality_deletes)} equality deletes apply"
        )
        return result

    def __len__(self) -> int:
        scoped = sum(len(group) for group in self._by_partition.values())
        return len(self._global) + scoped


def applicable_deletes(
    data_file: DataFile,
    snapshot: Optional[Snapshot],
    snapshot_manager: "SnapshotManager",
) -> List[DeleteFile]:
    """Delete files live at ``snapshot`` that apply to ``data_file``"""
    metadata = snapshot_manager.metadata_manager.refresh()
    if metadata is None:
        return []
    live = snapshot_manager.live_files(snapshot, metadata)
    index = DeleteFileIndex.from_files(live.delete_files, metadata.specs_by_id())
    return index.applicable_deletes(data_file)

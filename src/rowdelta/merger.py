"""
Row delta merge: filter a data file's rows against its applicable deletes.

Rows are dicts keyed by field id, paired with their zero-based offset in the
data file's read order. Merging is lazy; nothing is materialized beyond the
delete payloads themselves.
"""

from typing import (
    Any,
    Collection,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
)

from .data_structures import (
    DataFile,
    DeleteContents,
    DeleteFile,
    EqualityDeletes,
    PositionDeletes,
)
from .errors import MalformedDeleteFile, OrderingViolation
from .logging_config import get_logger

logger = get_logger(__name__)

Row = Dict[int, Any]


class RowSource(Protocol):
    """Iterable of ``(offset, row)`` pairs from one data file.

    ``stable_order`` is True when offsets match the order the file was written
    in, which position deletes depend on.
    """

    stable_order: bool

    def __iter__(self) -> Iterator[Tuple[int, Row]]:
        ...


class DeleteLoader(Protocol):
    def load(self, delete_file: DeleteFile) -> DeleteContents:
        ...


class _EqualityMatcher:
    """Key lookup for one equality delete file"""

    def __init__(self, deletes: EqualityDeletes):
        self.key_ids = deletes.equality_ids
        self._keys: Set[Tuple[Any, ...]] = set()
        self._unhashable: List[Tuple[Any, ...]] = []

        for delete_row in deletes.rows:
            key = tuple(delete_row.get(field_id) for field_id in self.key_ids)
            # A null never equals anything, so such a record matches nothing
            if any(value is None for value in key):
                continue
            try:
                self._keys.add(key)
            except TypeError:
                self._unhashable.append(key)

    def matches(self, row: Row) -> bool:
        key = tuple(row.get(field_id) for field_id in self.key_ids)
        if any(value is None for value in key):
            return False
        try:
            if key in self._keys:
                return True
        except TypeError:
            pass
        return any(key == candidate for candidate in self._unhashable)


def _collect_offsets(positional: Iterable[PositionDeletes], record_count: int) -> Set[int]:
    offsets: Set[int] = set()
    for deletes in positional:
        for offset in deletes.offsets:
            if offset < 0 or offset >= record_count:
                raise MalformedDeleteFile(
                    f"Position {offset} is out of range for {deletes.data_file_path} "
                    f"with {record_count} rows",
                    deletes.file_path,
                )
            offsets.add(offset)
    return offsets


def merge(
    rows: Iterable[Tuple[int, Row]],
    deletes: Sequence[DeleteContents],
    record_count: int,
    projected_ids: Collection[int],
) -> Iterator[Row]:
    """Yield the rows of one data file that survive ``deletes``, in order.

    Delete payloads are validated before the first row is produced.

    Args:
        rows: ``(offset, row)`` pairs in the data file's read order
        deletes: Loaded delete contents, position and equality in any mix
        record_count: Number of rows in the data file
        projected_ids: Field ids present in each row

    Raises:
        MalformedDeleteFile: For an out-of-range offset, or an equality key
            field that is not among ``projected_ids``
    """
    positional: List[PositionDeletes] = []
    equality: List[EqualityDeletes] = []
    for contents in deletes:
        if isinstance(contents, PositionDeletes):
            positional.append(contents)
        elif isinstance(contents, EqualityDeletes):
            equality.append(contents)
        else:
            raise TypeError(f"Unknown delete contents: {contents!r}")

    offsets = _collect_offsets(positional, record_count)

    projected = set(projected_ids)
    for contents in equality:
        missing = [field_id for field_id in contents.equality_ids if field_id not in projected]
        if missing:
            raise MalformedDeleteFile(
                f"Equality key fields {missing} are not in the row projection",
                contents.file_path,
            )
    matchers = [_EqualityMatcher(contents) for contents in equality]

    return _filter_rows(rows, offsets, matchers)


def _filter_rows(
    rows: Iterable[Tuple[int, Row]],
    offsets: Set[int],
    matchers: List[_EqualityMatcher],
) -> Iterator[Row]:
    for offset, row in rows:
        if offset in offsets:
            continue
        if any(matcher.matches(row) for matcher in matchers):
            continue
        yield row


def apply_deletes(
    data_file: DataFile,
    delete_files: Sequence[DeleteFile],
    row_source: RowSource,
    loader: DeleteLoader,
    projected_ids: Optional[Collection[int]] = None,
) -> Iterator[Row]:
    """Load ``delete_files`` and merge them into the rows of ``row_source``.

    ``projected_ids`` defaults to the union of every equality key, which
    is right when the row source was opened with those ids projected.

    Raises:
        OrderingViolation: If position deletes apply but the source order is not stable
        MalformedDeleteFile: If a position delete names another data file
    """
    contents: List[DeleteContents] = [loader.load(delete_file) for delete_file in delete_files]

    has_positional = False
    for loaded in contents:
        if isinstance(loaded, PositionDeletes):
            has_positional = True
            if loaded.data_file_path != data_file.file_path:
                raise MalformedDeleteFile(
                    f"Position delete rows reference {loaded.data_file_path}, "
                    f"expected {data_file.file_path}",
                    loaded.file_path,
                )

    if has_positional and not getattr(row_source, "stable_order", False):
        raise OrderingViolation(
            f"Position deletes apply to {data_file.file_path} but the row source "
            f"does not guarantee file order"
        )

    if projected_ids is None:
        projected_ids = {
            field_id
            for loaded in contents
            if isinstance(loaded, EqualityDeletes)
            for field_id in loaded.equality_ids
        }

    logger.debug(f"Merging {len(contents)} deletes into {data_file.file_path}")
    return merge(row_source, contents, data_file.record_count, projected_ids)

"""
Tests for the row delta merge: position deletes, equality deletes, null
semantics and validation of delete payloads.
"""

import pytest

from rowdelta import (
    DataFile,
    DeleteFile,
    EqualityDeletes,
    FileContent,
    FileFormat,
    MalformedDeleteFile,
    OrderingViolation,
    PositionDeletes,
    apply_deletes,
    merge,
)

ROWS = [
    {1: 0, 2: "Alice", 3: "Brown"},
    {1: 1, 2: "Bob", 3: "Green"},
    {1: 2, 2: "Trudy", 3: "Pink"},
]
ALL_IDS = [1, 2, 3]


class ListSource:
    """In-memory row source"""

    def __init__(self, rows, stable_order=True):
        self.rows = rows
        self.stable_order = stable_order

    def __iter__(self):
        return iter(enumerate(self.rows))


class DictLoader:
    def __init__(self, contents):
        self.contents = contents
        self.loaded = []

    def load(self, delete_file):
        self.loaded.append(delete_file.file_path)
        return self.contents[delete_file.file_path]


def _data_file(path="data/a.parquet", record_count=3):
    return DataFile(
        file_path=path,
        file_format=FileFormat.PARQUET,
        partition_values={},
        record_count=record_count,
        file_size_in_bytes=100,
        sequence_number=1,
    )


def _position_delete(path="data/pos.parquet", target="data/a.parquet"):
    return DeleteFile(
        file_path=path,
        file_format=FileFormat.PARQUET,
        content=FileContent.POSITION_DELETES,
        partition_values={},
        record_count=1,
        file_size_in_bytes=10,
        sequence_number=2,
        referenced_data_file=target,
    )


def _equality_delete(path="data/eq.parquet", equality_ids=(1, 2)):
    return DeleteFile(
        file_path=path,
        file_format=FileFormat.PARQUET,
        content=FileContent.EQUALITY_DELETES,
        partition_values={},
        record_count=1,
        file_size_in_bytes=10,
        sequence_number=2,
        equality_ids=equality_ids,
    )


def test_no_deletes_returns_every_row_in_order():
    result = list(merge(enumerate(ROWS), [], len(ROWS), ALL_IDS))
    assert result == ROWS


def test_position_deletes_remove_exact_offsets():
    deletes = [PositionDeletes("pos.parquet", "data/a.parquet", (0, 2))]
    result = list(merge(enumerate(ROWS), deletes, len(ROWS), ALL_IDS))
    assert result == [ROWS[1]]


def test_position_offsets_from_several_files_combine():
    deletes = [
        PositionDeletes("pos-1.parquet", "data/a.parquet", (0,)),
        PositionDeletes("pos-2.parquet", "data/a.parquet", (1,)),
    ]
    result = list(merge(enumerate(ROWS), deletes, len(ROWS), ALL_IDS))
    assert result == [ROWS[2]]


def test_equality_delete_matches_on_all_key_fields():
    deletes = [EqualityDeletes("eq.parquet", (1, 2), ({1: 1, 2: "Bob"},))]
    result = list(merge(enumerate(ROWS), deletes, len(ROWS), ALL_IDS))
    assert [row[1] for row in result] == [0, 2]


def test_equality_delete_ignores_fields_outside_the_key():
    rows = [
        {1: 7, 2: "Sam", 3: "Gray"},
        {1: 7, 2: "Sam", 3: "White"},
        {1: 8, 2: "Sam", 3: "Gray"},
    ]
    deletes = [EqualityDeletes("eq.parquet", (1, 2), ({1: 7, 2: "Sam"},))]
    result = list(merge(enumerate(rows), deletes, len(rows), ALL_IDS))
    assert result == [rows[2]]


def test_partial_matches_across_delete_records_do_not_combine():
    deletes = [EqualityDeletes("eq.parquet", (1, 2), ({1: 0, 2: "Bob"}, {1: 1, 2: "Alice"}))]
    result = list(merge(enumerate(ROWS), deletes, len(ROWS), ALL_IDS))
    assert result == ROWS


def test_null_key_in_delete_record_matches_nothing():
    rows = [{1: 0, 2: None, 3: "Brown"}, {1: 1, 2: "Bob", 3: "Green"}]
    deletes = [EqualityDeletes("eq.parquet", (2,), ({2: None},))]
    result = list(merge(enumerate(rows), deletes, len(rows), ALL_IDS))
    assert result == rows


def test_null_key_in_data_row_is_never_removed():
    rows = [{1: 0, 2: None, 3: "Brown"}, {1: 1, 2: "Bob", 3: "Green"}]
    deletes = [EqualityDeletes("eq.parquet", (1, 2), ({1: 0, 2: "Alice"}, {1: 1, 2: "Bob"}))]
    result = list(merge(enumerate(rows), deletes, len(rows), ALL_IDS))
    assert result == [rows[0]]


def test_position_and_equality_deletes_together():
    deletes = [
        PositionDeletes("pos.parquet", "data/a.parquet", (0,)),
        EqualityDeletes("eq.parquet", (1,), ({1: 2},)),
    ]
    result = list(merge(enumerate(ROWS), deletes, len(ROWS), ALL_IDS))
    assert result == [ROWS[1]]


def test_offset_out_of_range_is_rejected_before_any_row():
    consumed = []

    def rows():
        for pair in enumerate(ROWS):
            consumed.append(pair[0])
            yield pair

    deletes = [PositionDeletes("pos.parquet", "data/a.parquet", (1, 3))]
    with pytest.raises(MalformedDeleteFile):
        merge(rows(), deletes, len(ROWS), ALL_IDS)
    assert consumed == []


def test_negative_offset_is_rejected():
    deletes = [PositionDeletes("pos.parquet", "data/a.parquet", (-1,))]
    with pytest.raises(MalformedDeleteFile):
        merge(enumerate(ROWS), deletes, len(ROWS), ALL_IDS)


def test_equality_key_outside_projection_is_rejected():
    deletes = [EqualityDeletes("eq.parquet", (1, 3), ({1: 1, 3: "Green"},))]
    with pytest.raises(MalformedDeleteFile, match="not in the row projection"):
        merge(enumerate(ROWS), deletes, len(ROWS), [1, 2])


def test_merge_is_lazy():
    def rows():
        yield 0, ROWS[0]
        raise AssertionError("read past the first row")

    result = merge(rows(), [], 3, ALL_IDS)
    assert next(result) == ROWS[0]


def test_apply_deletes_loads_and_merges():
    data_file = _data_file()
    position_delete = _position_delete()
    equality_delete = _equality_delete()
    loader = DictLoader(
        {
            position_delete.file_path: PositionDeletes(
                position_delete.file_path, data_file.file_path, (0,)
            ),
            equality_delete.file_path: EqualityDeletes(
                equality_delete.file_path, (1, 2), ({1: 2, 2: "Trudy"},)
            ),
        }
    )

    result = list(
        apply_deletes(data_file, [position_delete, equality_delete], ListSource(ROWS), loader)
    )

    assert result == [ROWS[1]]
    assert loader.loaded == [position_delete.file_path, equality_delete.file_path]


def test_apply_deletes_requires_stable_order_for_position_deletes():
    data_file = _data_file()
    position_delete = _position_delete()
    loader = DictLoader(
        {position_delete.file_path: PositionDeletes(position_delete.file_path, data_file.file_path, (0,))}
    )

    with pytest.raises(OrderingViolation):
        apply_deletes(data_file, [position_delete], ListSource(ROWS, stable_order=False), loader)


def test_apply_deletes_allows_unstable_order_for_equality_deletes():
    data_file = _data_file()
    equality_delete = _equality_delete()
    loader = DictLoader(
        {equality_delete.file_path: EqualityDeletes(equality_delete.file_path, (1, 2), ({1: 1, 2: "Bob"},))}
    )

    result = list(
        apply_deletes(data_file, [equality_delete], ListSource(ROWS, stable_order=False), loader)
    )
    assert [row[1] for row in result] == [0, 2]


def test_apply_deletes_rejects_position_rows_for_another_file():
    data_file = _data_file()
    position_delete = _position_delete()
    loader = DictLoader(
        {position_delete.file_path: PositionDeletes(position_delete.file_path, "data/other.parquet", (0,))}
    )

    with pytest.raises(MalformedDeleteFile):
        apply_deletes(data_file, [position_delete], ListSource(ROWS), loader)

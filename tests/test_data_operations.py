"""
Tests for the Parquet layer: field ids in file metadata, reading by field id,
and the delete file writers and loader.
"""

from dataclasses import replace

import pyarrow.parquet as pq
import pytest

from rowdelta import FileContent, MalformedDeleteFile, MissingFile
from rowdelta.data_operations import (
    FIELD_ID_KEY,
    POS_DELETE_FILE_PATH_ID,
    POS_DELETE_POS_ID,
    POS_DELETE_ROW_ID,
    ParquetDeleteLoader,
    ParquetRowReader,
)


def test_columns_carry_field_ids(people_table, people):
    data_file = people_table.write_data_file(people)

    path = people_table.storage._resolve_path(data_file.file_path)
    schema = pq.read_schema(path)
    assert [f.metadata[FIELD_ID_KEY] for f in schema] == [b"1", b"2", b"3"]
    assert data_file.record_count == 3
    assert data_file.sequence_number is None
    assert data_file.file_size_in_bytes > 0


def test_reader_resolves_columns_by_field_id(people_table, people):
    data_file = people_table.write_data_file(people)

    reader = ParquetRowReader(people_table.storage, data_file.file_path, [3, 1, 99])
    rows = list(reader)
    assert rows[0] == (0, {3: "Brown", 1: 0, 99: None})
    assert [offset for offset, _ in rows] == [0, 1, 2]
    assert reader.stable_order


def test_reader_with_no_stored_columns_yields_nulls(people_table, people):
    data_file = people_table.write_data_file(people)

    rows = list(ParquetRowReader(people_table.storage, data_file.file_path, [42]))
    assert rows == [(0, {42: None}), (1, {42: None}), (2, {42: None})]


def test_reader_on_missing_file(people_table):
    with pytest.raises(MissingFile):
        list(ParquetRowReader(people_table.storage, "data/missing.parquet", [1]))


def test_position_delete_file(people_table, people):
    data_file = people_table.write_data_file(people)
    delete_file = people_table.write_position_deletes(data_file, [2, 0, 2])

    assert delete_file.content == FileContent.POSITION_DELETES
    assert delete_file.referenced_data_file == data_file.file_path
    assert delete_file.record_count == 2

    schema = pq.read_schema(people_table.storage._resolve_path(delete_file.file_path))
    assert schema.names == ["file_path", "pos"]
    assert schema.field("file_path").metadata[FIELD_ID_KEY] == str(POS_DELETE_FILE_PATH_ID).encode()
    assert schema.field("pos").metadata[FIELD_ID_KEY] == str(POS_DELETE_POS_ID).encode()

    contents = people_table.delete_loader.load(delete_file)
    assert contents.data_file_path == data_file.file_path
    assert contents.offsets == (0, 2)
    assert contents.rows is None


def test_position_delete_file_keeps_deleted_rows(people_table, people):
    data_file = people_table.write_data_file(people)
    delete_file = people_table.write_position_deletes(data_file, [2, 0], rows=[people[2], people[0]])

    schema = pq.read_schema(people_table.storage._resolve_path(delete_file.file_path))
    assert schema.names == ["file_path", "pos", "row"]
    assert schema.field("row").metadata[FIELD_ID_KEY] == str(POS_DELETE_ROW_ID).encode()

    contents = people_table.delete_loader.load(delete_file)
    assert contents.offsets == (0, 2)
    assert contents.rows == (
        {1: 0, 2: "Alice", 3: "Brown"},
        {1: 2, 2: "Trudy", 3: "Pink"},
    )


def test_deleted_rows_must_match_positions(people_table, people):
    data_file = people_table.write_data_file(people)
    with pytest.raises(ValueError, match="deleted rows"):
        people_table.write_position_deletes(data_file, [0, 1], rows=[people[0]])


def test_position_delete_out_of_range(people_table, people):
    data_file = people_table.write_data_file(people)
    with pytest.raises(ValueError, match="out of range"):
        people_table.write_position_deletes(data_file, [3])


def test_equality_delete_file_holds_only_key_columns(people_table):
    delete_file = people_table.write_equality_deletes(
        [{"id": 1, "name": "Bob", "surname": "ignored"}], ["name", "id"]
    )

    assert delete_file.equality_ids == (2, 1)
    assert delete_file.spec_id == 0
    assert delete_file.partition_values == {}

    table = pq.read_table(people_table.storage._resolve_path(delete_file.file_path))
    assert table.column_names == ["name", "id"]

    contents = people_table.delete_loader.load(delete_file)
    assert contents.rows == ({2: "Bob", 1: 1},)


def test_equality_delete_needs_a_key(people_table):
    with pytest.raises(ValueError):
        people_table.write_equality_deletes([{"id": 1}], [])


def test_loader_caches_payloads(people_table):
    delete_file = people_table.write_equality_deletes([{"id": 1}], ["id"])
    loader = people_table.delete_loader

    first = loader.load(delete_file)
    people_table.storage.delete_file(delete_file.file_path)
    assert loader.load(delete_file) is first


def test_loader_rejects_missing_key_column(people_table):
    delete_file = people_table.write_equality_deletes([{"id": 1}], ["id"])
    wrong_key = replace(delete_file, equality_ids=(1, 3))
    with pytest.raises(MalformedDeleteFile):
        people_table.delete_loader.load(wrong_key)


def test_loader_cache_is_bounded(people_table):
    loader = ParquetDeleteLoader(people_table.storage, max_entries=2)
    delete_files = [people_table.write_equality_deletes([{"id": i}], ["id"]) for i in range(3)]

    first = loader.load(delete_files[0])
    loader.load(delete_files[1])
    assert loader.load(delete_files[0]) is first
    loader.load(delete_files[2])
    assert len(loader) == 2

    # The least recently used payload was evicted and must be read again
    people_table.storage.delete_file(delete_files[1].file_path)
    with pytest.raises(MissingFile):
        loader.load(delete_files[1])
    assert loader.load(delete_files[0]) is first

    with pytest.raises(ValueError):
        ParquetDeleteLoader(people_table.storage, max_entries=0)

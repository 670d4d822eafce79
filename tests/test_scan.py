"""
End-to-end scans: merge-on-read through Parquet files, manifests and the
table pointer.
"""

import os
import tempfile
from decimal import Decimal

import pyarrow as pa
import pytest

from rowdelta import (
    MalformedDeleteFile,
    MissingFile,
    PartitionField,
    PartitionSpec,
    Schema,
    UnknownField,
    create_table,
)


def ids(records):
    return sorted(r["id"] for r in records)


def test_empty_table_scans_to_nothing(people_table):
    assert people_table.scan().to_records() == []
    assert people_table.scan_plan() == []


def test_scenario_a_equality_delete_on_two_columns(people_table, people):
    people_table.append_records(people)
    people_table.delete_rows([{"id": 1, "name": "Bob"}], ["id", "name"])

    records = sorted(people_table.scan().to_records(), key=lambda r: r["id"])
    assert records == [people[0], people[2]]


def test_scenario_b_position_deletes_on_partitioned_file(region_table):
    rows = [
        {"id": 10, "name": "first", "region": "eu"},
        {"id": 11, "name": "second", "region": "eu"},
        {"id": 12, "name": "third", "region": "eu"},
    ]
    base = region_table.append_records(rows)
    (data_file,) = region_table.live_files().data_files
    assert data_file.partition_values == {"region": "eu"}

    delete_file = region_table.write_position_deletes(data_file, [0, 2])
    region_table.commit_row_delta(base, added_delete_files=[delete_file])

    assert region_table.scan().to_records() == [rows[1]]


def test_position_deletes_carrying_deleted_rows(people_table, people):
    base = people_table.append_records(people)
    (data_file,) = people_table.live_files().data_files
    delete_file = people_table.write_position_deletes(data_file, [1], rows=[people[1]])
    people_table.commit_row_delta(base, added_delete_files=[delete_file])

    assert people_table.scan().to_records() == [people[0], people[2]]


def test_scenario_c_equality_delete_on_column_subset(people_table, people):
    rows = [
        {"id": 7, "name": "Sam", "surname": "Gray"},
        {"id": 7, "name": "Sam", "surname": "White"},
        {"id": 8, "name": "Sam", "surname": "Gray"},
    ]
    people_table.append_records(rows)
    people_table.delete_rows([{"id": 7, "name": "Sam", "surname": "Black"}], ["id", "name"])

    assert people_table.scan().to_records() == [rows[2]]


def test_delete_does_not_touch_rows_written_after_it(people_table, people):
    people_table.append_records(people)
    people_table.delete_rows([{"id": 1}], ["id"])
    people_table.append_records([{"id": 1, "name": "Bob", "surname": "Again"}])

    records = people_table.scan().to_records()
    assert ids(records) == [0, 1, 2]
    assert {"id": 1, "name": "Bob", "surname": "Again"} in records


def test_delete_committed_with_data_does_not_apply_to_it(people_table, people):
    data_file = people_table.write_data_file(people)
    delete_file = people_table.write_equality_deletes([{"id": 0}], ["id"])
    people_table.commit_row_delta(None, [data_file], [delete_file])

    assert ids(people_table.scan().to_records()) == [0, 1, 2]


def test_rename_does_not_change_which_rows_are_deleted(people_table, people):
    people_table.append_records(people)
    people_table.delete_rows([{"name": "Trudy"}], ["name"])
    people_table.rename_column("name", "first_name")

    records = sorted(people_table.scan().to_records(), key=lambda r: r["id"])
    assert records == [
        {"id": 0, "first_name": "Alice", "surname": "Brown"},
        {"id": 1, "first_name": "Bob", "surname": "Green"},
    ]


def test_delete_written_after_rename_matches_older_files(people_table, people):
    people_table.append_records(people)
    people_table.rename_column("name", "first_name")
    people_table.delete_rows([{"first_name": "Alice"}], ["first_name"])

    assert ids(people_table.scan().to_records()) == [1, 2]


def test_added_column_reads_as_null_in_older_files(people_table, people):
    people_table.append_records(people[:1])
    people_table.add_column("email", "string")
    people_table.append_records([{"id": 5, "name": "Eve", "surname": "Black", "email": "eve@example.com"}])

    records = sorted(people_table.scan().to_records(), key=lambda r: r["id"])
    assert records[0]["email"] is None
    assert records[1]["email"] == "eve@example.com"


def test_time_travel_reads_older_snapshots_unchanged(people_table, people):
    first = people_table.append_records(people)
    second = people_table.delete_rows([{"id": 2}], ["id"])
    people_table.add_column("email", "string")

    old_records = people_table.scan(snapshot_id=first).to_records()
    assert ids(old_records) == [0, 1, 2]
    assert set(old_records[0]) == {"id", "name", "surname"}

    assert ids(people_table.scan(snapshot_id=second).to_records()) == [0, 1]
    current = people_table.scan().to_records()
    assert ids(current) == [0, 1]
    assert all(r["email"] is None for r in current)


def test_equality_key_missing_from_older_file_fails_the_scan(people_table, people):
    people_table.append_records(people)
    people_table.add_column("email", "string")
    people_table.delete_rows([{"email": "bob@example.com"}], ["email"])

    with pytest.raises(MalformedDeleteFile):
        people_table.scan().to_records()


def test_column_projection(people_table, people):
    people_table.append_records(people)
    people_table.delete_rows([{"surname": "Green"}], ["surname"])

    records = sorted(people_table.scan().to_records(columns=["name"]), key=lambda r: r["name"])
    assert records == [{"name": "Alice"}, {"name": "Trudy"}]


def test_unknown_column_in_projection(people_table, people):
    people_table.append_records(people)
    with pytest.raises(UnknownField):
        people_table.scan().to_records(columns=["nope"])


def test_partition_filter_prunes_files(region_table):
    region_table.append_records(
        [
            {"id": 1, "name": "a", "region": "eu"},
            {"id": 2, "name": "b", "region": "us"},
            {"id": 3, "name": "c", "region": "eu"},
        ]
    )

    plan = region_table.scan_plan(partition_filter={"region": "us"})
    assert [task.data_file.partition_values for task in plan] == [{"region": "us"}]

    assert ids(region_table.scan(partition_filter={"region": ("in", ["eu"])}).to_records()) == [1, 3]
    by_callable = region_table.scan(
        partition_filter=lambda f: f.partition_values["region"] != "eu"
    ).to_records()
    assert ids(by_callable) == [2]


def test_partition_scoped_delete_only_touches_its_partition(region_table):
    region_table.append_records(
        [
            {"id": 1, "name": "same", "region": "eu"},
            {"id": 2, "name": "same", "region": "us"},
        ]
    )
    base = region_table.metadata().current_snapshot_id
    delete_file = region_table.write_equality_deletes(
        [{"name": "same"}], ["name"], partition_values={"region": "eu"}
    )
    region_table.commit_row_delta(base, added_delete_files=[delete_file])

    assert ids(region_table.scan().to_records()) == [2]


def test_parallel_scan_keeps_plan_order(people_table, people):
    for i in range(4):
        people_table.append_records([{"id": i * 10 + j, "name": f"n{j}", "surname": "s"} for j in range(3)])
    people_table.delete_rows([{"name": "n1"}], ["name"])

    sequential = people_table.scan().to_records(parallel=False)
    threaded = people_table.scan().to_records(parallel=4)
    assert threaded == sequential
    assert len(sequential) == 8


def test_to_arrow(people_table, people):
    people_table.append_records(people)
    people_table.delete_rows([{"id": 0}], ["id"])

    arrow_table = people_table.scan().to_arrow(columns=["id", "surname"])
    assert arrow_table.num_rows == 2
    assert arrow_table.column_names == ["id", "surname"]


def test_to_pandas(people_table, people):
    pytest.importorskip("pandas")
    people_table.append_records(people)

    df = people_table.scan().to_pandas()
    assert len(df) == 3
    assert sorted(df["name"].tolist()) == ["Alice", "Bob", "Trudy"]


def test_missing_data_file_fails_the_scan(people_table, people):
    people_table.append_records(people)
    (data_file,) = people_table.live_files().data_files
    people_table.storage.delete_file(data_file.file_path)

    with pytest.raises(MissingFile):
        people_table.scan().to_records()


def test_row_count_ignores_deletes(people_table, people):
    people_table.append_records(people)
    people_table.delete_rows([{"id": 0}], ["id"])

    assert people_table.row_count() == 3
    assert len(people_table.scan().to_records()) == 2


def test_deletes_across_partition_and_schema_evolution(people_table, people):
    people_table.add_partition_field("surname")
    people_table.add_partition_field("id", "bucket[16]")
    people_table.append_records(people)
    people_table.append_records([{"id": 3, "name": "Joanna", "surname": "Pierce"}])

    people_table.register_spec(
        PartitionSpec(spec_id=-1, fields=[PartitionField(3, 0, "surname_bucket", "bucket[64]")])
    )
    people_table.add_column("department", "string")
    people_table.rename_column("name", "given_name")
    people_table.append_records(
        [
            {"id": 20, "given_name": "Natalie", "surname": "Bloom", "department": "Finance"},
            {"id": 22, "given_name": "Joanna", "surname": "Huberman", "department": "Operations"},
        ]
    )
    assert len({f.spec_id for f in people_table.live_files().data_files}) == 2

    people_table.delete_rows([{"id": 2}], ["id"])
    people_table.delete_rows([{"given_name": "Joanna"}], ["given_name"])

    records = sorted(people_table.scan().to_records(), key=lambda r: r["id"])
    assert records == [
        {"id": 0, "given_name": "Alice", "surname": "Brown", "department": None},
        {"id": 1, "given_name": "Bob", "surname": "Green", "department": None},
        {"id": 20, "given_name": "Natalie", "surname": "Bloom", "department": "Finance"},
    ]


def test_decimal_columns_are_read_and_deleted():
    schema = Schema(
        schema_id=0,
        fields=[
            {"id": 1, "name": "id", "type": "long", "required": True},
            {"id": 2, "name": "price", "type": "decimal(10,2)"},
        ],
    )
    with tempfile.TemporaryDirectory() as temp_dir:
        table = create_table(os.path.join(temp_dir, "prices"), schema=schema)
        table.add_partition_field("price", "bucket[4]")
        table.append_records(
            [
                {"id": 1, "price": Decimal("14.20")},
                {"id": 2, "price": Decimal("3.50")},
                {"id": 3, "price": None},
            ]
        )
        table.delete_rows([{"price": Decimal("14.20")}], ["price"])

        records = sorted(table.scan().to_records(), key=lambda r: r["id"])
        assert records == [{"id": 2, "price": Decimal("3.50")}, {"id": 3, "price": None}]
        assert table.scan().to_arrow().schema.field("price").type == pa.decimal128(10, 2)

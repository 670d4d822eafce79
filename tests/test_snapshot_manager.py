"""
Tests for the snapshot chain: delta manifests, live file replay, ancestry
and time travel lookups.
"""

import time

import pytest

from rowdelta import SnapshotNotFound, load_table
from rowdelta.data_structures import ManifestEntryStatus


def paths(files):
    return sorted(f.file_path for f in files)


def test_snapshots_record_only_their_delta(people_table, people):
    people_table.append_records(people[:1])
    (first_file,) = people_table.live_files().data_files
    people_table.append_records(people[1:])
    second_files = set(paths(people_table.live_files().data_files)) - {first_file.file_path}

    current = people_table.current_snapshot()
    data_entries, delete_entries = people_table.snapshot_manager.snapshot_delta(current)
    assert [e.status for e in data_entries] == [ManifestEntryStatus.ADDED]
    assert {e.file.file_path for e in data_entries} == second_files
    assert delete_entries == []


def test_live_files_replay_additions_and_removals(people_table, people):
    first = people_table.append_records(people[:1])
    (a,) = people_table.live_files().data_files
    second = people_table.append_records(people[1:])
    third = people_table.commit_row_delta(second, removed_data_files=[a])

    assert paths(people_table.live_files(first).data_files) == [a.file_path]
    assert len(people_table.live_files(second).data_files) == 2
    assert a.file_path not in paths(people_table.live_files(third).data_files)
    assert people_table.snapshot_by_id(third).operation == "delete"


def test_live_files_from_a_fresh_reader(people_table, people):
    people_table.append_records(people[:1])
    people_table.delete_rows([{"id": 0}], ["id"])
    people_table.append_records(people[1:])

    reopened = load_table(people_table.table_path)
    assert paths(reopened.live_files().data_files) == paths(people_table.live_files().data_files)
    assert sorted(f.sequence_number for f in reopened.live_files().data_files) == [1, 3]
    assert len(reopened.live_files().delete_files) == 1


def test_ancestors_newest_first(people_table, people):
    ids = [people_table.append_records([row]) for row in people]

    ancestors = people_table.snapshot_manager.ancestors(ids[-1])
    assert [s.snapshot_id for s in ancestors] == list(reversed(ids))


def test_snapshots_since(people_table, people):
    ids = [people_table.append_records([row]) for row in people]
    manager = people_table.snapshot_manager
    metadata = people_table.metadata()

    assert [s.snapshot_id for s in manager.snapshots_since(ids[0], metadata)] == ids[1:]
    assert [s.snapshot_id for s in manager.snapshots_since(None, metadata)] == ids
    assert manager.snapshots_since(ids[-1], metadata) == []
    assert manager.snapshots_since(12345, metadata) is None


def test_unknown_snapshot(people_table, people):
    people_table.append_records(people)
    with pytest.raises(SnapshotNotFound):
        people_table.snapshot_by_id(12345)
    with pytest.raises(SnapshotNotFound):
        people_table.scan(snapshot_id=12345)


def test_snapshot_as_of(people_table, people):
    first = people_table.append_records(people[:1])
    time.sleep(0.01)
    second = people_table.append_records(people[1:])

    first_ts = people_table.snapshot_by_id(first).timestamp_ms
    second_ts = people_table.snapshot_by_id(second).timestamp_ms
    assert people_table.snapshot_as_of(first_ts - 1) is None
    assert people_table.snapshot_as_of(first_ts).snapshot_id == first
    assert people_table.snapshot_as_of(second_ts + 1000).snapshot_id == second


def test_list_snapshots(people_table, people):
    first = people_table.append_records(people)
    second = people_table.delete_rows([{"id": 1}], ["id"])

    snapshots = people_table.snapshots()
    assert [s["snapshot_id"] for s in snapshots] == [first, second]
    assert [s["operation"] for s in snapshots] == ["append", "delete"]
    assert snapshots[1]["parent_id"] == first
    assert snapshots[1]["summary"]["added-equality-delete-files"] == "1"
    assert 0 < snapshots[0]["snapshot_id"] < 2 ** 63

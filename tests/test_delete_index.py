"""
Tests for delete file applicability: partition scope, sequence gating,
position delete targeting and result ordering.
"""

import pytest

from rowdelta import (
    DataFile,
    DeleteFile,
    DeleteFileIndex,
    FileContent,
    FileFormat,
    MalformedDeleteFile,
    PartitionField,
    PartitionSpec,
)

SPECS = {
    0: PartitionSpec(spec_id=0),
    1: PartitionSpec(spec_id=1, fields=[PartitionField(3, 1000, "region", "identity")]),
    2: PartitionSpec(spec_id=2, fields=[PartitionField(3, 1001, "region_void", "void")]),
}


def data_file(path="data/eu-1.parquet", seq=1, region="eu", spec_id=1):
    return DataFile(
        file_path=path,
        file_format=FileFormat.PARQUET,
        partition_values={"region": region} if spec_id == 1 else {},
        record_count=10,
        file_size_in_bytes=1000,
        spec_id=spec_id,
        sequence_number=seq,
    )


def equality_delete(path, seq, spec_id=0, partition_values=None):
    return DeleteFile(
        file_path=path,
        file_format=FileFormat.PARQUET,
        content=FileContent.EQUALITY_DELETES,
        partition_values=partition_values or {},
        record_count=1,
        file_size_in_bytes=10,
        spec_id=spec_id,
        sequence_number=seq,
        equality_ids=(1,),
    )


def position_delete(path, seq, target, region="eu", spec_id=1):
    return DeleteFile(
        file_path=path,
        file_format=FileFormat.PARQUET,
        content=FileContent.POSITION_DELETES,
        partition_values={"region": region},
        record_count=1,
        file_size_in_bytes=10,
        spec_id=spec_id,
        sequence_number=seq,
        referenced_data_file=target,
    )


def paths(deletes):
    return [d.file_path for d in deletes]


def test_global_delete_applies_to_every_partition():
    delete = equality_delete("data/eq-global.parquet", seq=2)
    index = DeleteFileIndex.from_files([delete], SPECS)

    assert paths(index.applicable_deletes(data_file(region="eu"))) == [delete.file_path]
    assert paths(index.applicable_deletes(data_file("data/us-1.parquet", region="us"))) == [
        delete.file_path
    ]


def test_void_only_spec_is_global_scope():
    delete = equality_delete("data/eq-void.parquet", seq=2, spec_id=2, partition_values={"region_void": None})
    index = DeleteFileIndex.from_files([delete], SPECS)

    assert paths(index.applicable_deletes(data_file(region="us"))) == [delete.file_path]


def test_partitioned_delete_applies_only_to_its_partition():
    delete = equality_delete("data/eq-eu.parquet", seq=2, spec_id=1, partition_values={"region": "eu"})
    index = DeleteFileIndex.from_files([delete], SPECS)

    assert paths(index.applicable_deletes(data_file(region="eu"))) == [delete.file_path]
    assert index.applicable_deletes(data_file("data/us-1.parquet", region="us")) == []


def test_partitioned_delete_does_not_cross_specs():
    delete = equality_delete("data/eq-eu.parquet", seq=2, spec_id=1, partition_values={"region": "eu"})
    index = DeleteFileIndex.from_files([delete], SPECS)

    unpartitioned = data_file("data/flat.parquet", spec_id=0)
    assert index.applicable_deletes(unpartitioned) == []


@pytest.mark.parametrize("delete_seq,applies", [(1, False), (2, False), (3, True)])
def test_sequence_gating_is_strict(delete_seq, applies):
    delete = equality_delete("data/eq.parquet", seq=delete_seq)
    index = DeleteFileIndex.from_files([delete], SPECS)

    result = index.applicable_deletes(data_file(seq=2))
    assert bool(result) is applies


def test_position_delete_only_applies_to_its_target():
    target = data_file("data/eu-1.parquet")
    other = data_file("data/eu-2.parquet")
    delete = position_delete("data/pos.parquet", seq=2, target=target.file_path)
    index = DeleteFileIndex.from_files([delete], SPECS)

    assert paths(index.applicable_deletes(target)) == [delete.file_path]
    assert index.applicable_deletes(other) == []


def test_position_delete_with_wrong_partition_is_malformed():
    target = data_file("data/eu-1.parquet", region="eu")
    delete = position_delete("data/pos.parquet", seq=2, target=target.file_path, region="us")
    index = DeleteFileIndex.from_files([delete], SPECS)

    with pytest.raises(MalformedDeleteFile):
        index.applicable_deletes(target)


def test_position_deletes_come_first_ordered_by_sequence_then_path():
    target = data_file(seq=1)
    deletes = [
        equality_delete("data/eq-b.parquet", seq=3),
        equality_delete("data/eq-a.parquet", seq=3),
        equality_delete("data/eq-c.parquet", seq=2),
        position_delete("data/pos-z.parquet", seq=4, target=target.file_path),
        position_delete("data/pos-y.parquet", seq=2, target=target.file_path),
    ]
    index = DeleteFileIndex.from_files(deletes, SPECS)

    assert paths(index.applicable_deletes(target)) == [
        "data/pos-y.parquet",
        "data/pos-z.parquet",
        "data/eq-c.parquet",
        "data/eq-a.parquet",
        "data/eq-b.parquet",
    ]


def test_uncommitted_data_file_is_rejected():
    index = DeleteFileIndex.from_files([], SPECS)
    with pytest.raises(ValueError, match="has not been committed"):
        index.applicable_deletes(data_file(seq=None))


def test_delete_with_unknown_spec_is_malformed():
    delete = equality_delete("data/eq.parquet", seq=2, spec_id=9)
    with pytest.raises(MalformedDeleteFile):
        DeleteFileIndex.from_files([delete], SPECS)


def test_uncommitted_delete_file_is_malformed():
    with pytest.raises(MalformedDeleteFile, match="no sequence number"):
        DeleteFileIndex.from_files([equality_delete("data/eq.parquet", seq=None)], SPECS)

    index = DeleteFileIndex([equality_delete("data/eq.parquet", seq=None)], {}, {})
    with pytest.raises(MalformedDeleteFile, match="no sequence number"):
        index.applicable_deletes(data_file())


def test_position_delete_requires_a_target():
    with pytest.raises(ValueError, match="referenced_data_file"):
        position_delete("data/pos.parquet", seq=2, target=None)

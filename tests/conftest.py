import os
import tempfile

import pytest

from rowdelta import PartitionField, PartitionSpec, Schema, create_table

PEOPLE_FIELDS = [
    {"id": 1, "name": "id", "type": "long", "required": True},
    {"id": 2, "name": "name", "type": "string", "required": False},
    {"id": 3, "name": "surname", "type": "string", "required": False},
]

PEOPLE = [
    {"id": 0, "name": "Alice", "surname": "Brown"},
    {"id": 1, "name": "Bob", "surname": "Green"},
    {"id": 2, "name": "Trudy", "surname": "Pink"},
]


@pytest.fixture(autouse=True)
def short_lock_timeout(monkeypatch):
    """
    Keep a stuck metadata lock from hanging the suite.
    """
    monkeypatch.setenv("ROWDELTA_LOCK_TIMEOUT", "10")


@pytest.fixture
def people_schema():
    return Schema(schema_id=0, fields=[dict(f) for f in PEOPLE_FIELDS])


@pytest.fixture
def people_table(people_schema):
    """Unpartitioned table with id/name/surname columns"""
    with tempfile.TemporaryDirectory() as temp_dir:
        table_path = os.path.join(temp_dir, "people")
        yield create_table(table_path, schema=people_schema)


@pytest.fixture
def region_table():
    """Table partitioned by identity(region)"""
    schema = Schema(
        schema_id=0,
        fields=[
            {"id": 1, "name": "id", "type": "long", "required": True},
            {"id": 2, "name": "name", "type": "string"},
            {"id": 3, "name": "region", "type": "string"},
        ],
    )
    spec = PartitionSpec(spec_id=0, fields=[PartitionField(3, 1000, "region", "identity")])
    with tempfile.TemporaryDirectory() as temp_dir:
        table_path = os.path.join(temp_dir, "regions")
        yield create_table(table_path, schema=schema, partition_spec=spec)


@pytest.fixture
def people():
    return [dict(r) for r in PEOPLE]

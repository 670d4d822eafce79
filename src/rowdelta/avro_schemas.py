# Avro schemas for rowdelta manifests

# Partition values are plain primitives; temporal transforms produce ints
PARTITION_VALUE_TYPE = ["null", "boolean", "long", "double", "string", "bytes"]

MANIFEST_ENTRY_SCHEMA = {
    "type": "record",
    "name": "manifest_entry",
    "fields": [
        # 1 = ADDED, 2 = DELETED
        {"name": "status", "type": "int"},
        {"name": "snapshot_id", "type": "long"},
        {"name": "sequence_number", "type": ["null", "long"], "default": None},
        {
            "name": "data_file",
            "type": {
                "type": "record",
                "name": "content_file",
                "fields": [
                    # 0 = DATA, 1 = POSITION_DELETES, 2 = EQUALITY_DELETES
                    {"name": "content", "type": "int"},
                    {"name": "file_path", "type": "string"},
                    {"name": "file_format", "type": "string"},
                    {
                        "name": "partition",
                        "type": {"type": "map", "values": PARTITION_VALUE_TYPE},
                    },
                    {"name": "record_count", "type": "long"},
                    {"name": "file_size_in_bytes", "type": "long"},
                    {"name": "spec_id", "type": "int"},
                    {"name": "schema_id", "type": "int"},
                    {
                        "name": "equality_ids",
                        "type": ["null", {"type": "array", "items": "int"}],
                        "default": None,
                    },
                    {"name": "referenced_data_file", "type": ["null", "string"], "default": None},
                ],
            },
        },
    ],
}

# content: 0 = DATA manifest, 1 = DELETES manifest
MANIFEST_FILE_SCHEMA = {
    "type": "record",
    "name": "manifest_file",
    "fields": [
        {"name": "manifest_path", "type": "string"},
        {"name": "manifest_length", "type": "long"},
        {"name": "partition_spec_id", "type": "int"},
        {"name": "content", "type": "int"},
        {"name": "sequence_number", "type": ["null", "long"], "default": None},
        {"name": "added_snapshot_id", "type": "long"},
        {"name": "added_files_count", "type": "int"},
        {"name": "deleted_files_count", "type": "int"},
    ],
}

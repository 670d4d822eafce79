"""
Versioned schemas and partition specs keyed by stable field ids.

The registry works on a TableMetadata working copy; the table commits the
copy through the metadata manager. Field ids survive renames and type
widenings, new columns get fresh ids, and dropped ids are never handed out
again (``last_column_id`` only grows).
"""

from typing import Optional, Union

from .data_structures import (
    PartitionField,
    PartitionSpec,
    Schema,
    TableMetadata,
    can_promote,
)
from .errors import SchemaMismatch, UnknownField
from .logging_config import get_logger
from .partitioning import can_transform, parse_transform

logger = get_logger(__name__)


class SchemaRegistry:
    """Registers and evolves schema and partition spec versions"""

    def __init__(self, metadata: TableMetadata):
        self.metadata = metadata

    def schema(self, schema_id: Optional[int] = None) -> Schema:
        if schema_id is None:
            return self.metadata.current_schema()
        return self.metadata.schema_by_id(schema_id)

    def spec(self, spec_id: Optional[int] = None) -> PartitionSpec:
        if spec_id is None:
            return self.metadata.default_spec()
        return self.metadata.spec_by_id(spec_id)

    def resolve_field(self, schema_id: int, name_or_id: Union[str, int]) -> int:
        """Resolve a column name or id to its field id in one schema version.

        Raises:
            UnknownField: If the schema version has no such field
        """
        return int(self.schema(schema_id).find_field(name_or_id)["id"])

    def register_schema(self, schema: Schema) -> int:
        """Validate ``schema`` against the table's history and make it current.

        A schema structurally identical to a registered one reuses that id.

        Returns:
            The schema id now current
        """
        for existing in self.metadata.schemas:
            if existing.same_structure(schema):
                self.metadata.current_schema_id = existing.schema_id
                return existing.schema_id

        current = self.metadata.current_schema()
        has_data = self.metadata.current_snapshot_id is not None
        for field_def in schema.fields:
            field_id = field_def["id"]
            if current.has_field(field_id):
                old_type = current.find_field(field_id)["type"]
                new_type = field_def["type"]
                if old_type != new_type and not can_promote(old_type, new_type):
                    raise SchemaMismatch(
                        f"Cannot change type of field {field_id} from {old_type} to {new_type}"
                    )
                continue
            if field_id <= self.metadata.last_column_id:
                raise SchemaMismatch(
                    f"Field id {field_id} ('{field_def['name']}') was already assigned and "
                    f"cannot be reused; new columns need ids above {self.metadata.last_column_id}"
                )
            if field_def.get("required", False) and has_data:
                raise SchemaMismatch(
                    f"Cannot add required column '{field_def['name']}' to a table with data"
                )

        new_id = max(s.schema_id for s in self.metadata.schemas) + 1
        registered = Schema(schema_id=new_id, fields=[dict(f) for f in schema.fields])
        self.metadata.schemas.append(registered)
        self.metadata.current_schema_id = new_id
        self.metadata.last_column_id = max(
            self.metadata.last_column_id, registered.highest_field_id()
        )
        logger.info(f"Registered schema {new_id} with {len(registered.fields)} fields")
        return new_id

    def register_spec(self, spec: PartitionSpec) -> int:
        """Validate ``spec`` against the current schema and make it the default.

        A (source, transform) pair seen in an earlier spec keeps its partition
        field id; any other partition field gets a fresh id.

        Returns:
            The spec id now default
        """
        schema = self.metadata.current_schema()
        for existing in self.metadata.partition_specs:
            if existing.same_fields(spec):
                self.metadata.default_spec_id = existing.spec_id
                return existing.spec_id

        fields = []
        names = set()
        for pfield in spec.fields:
            try:
                source = schema.find_field(pfield.source_id)
            except UnknownField:
                raise UnknownField(pfield.source_id, schema.schema_id) from None
            parse_transform(pfield.transform)
            if not can_transform(pfield.transform, source["type"]):
                raise SchemaMismatch(
                    f"Transform {pfield.transform} cannot be applied to "
                    f"{source['type']} column '{source['name']}'"
                )
            if pfield.name in names:
                raise SchemaMismatch(f"Duplicate partition field name '{pfield.name}'")
            names.add(pfield.name)

            field_id = self._known_partition_field_id(pfield)
            if field_id is None:
                field_id = self.metadata.last_partition_id + 1
                self.metadata.last_partition_id = field_id
            fields.append(PartitionField(pfield.source_id, field_id, pfield.name, pfield.transform))

        new_id = max(s.spec_id for s in self.metadata.partition_specs) + 1
        self.metadata.partition_specs.append(PartitionSpec(spec_id=new_id, fields=fields))
        self.metadata.default_spec_id = new_id
        logger.info(f"Registered partition spec {new_id}: {[f.name for f in fields]}")
        return new_id

    def _known_partition_field_id(self, pfield: PartitionField) -> Optional[int]:
        for spec in self.metadata.partition_specs:
            for existing in spec.fields:
                if (existing.source_id, existing.transform) == (pfield.source_id, pfield.transform):
                    return existing.field_id
        return None

    def rename_column(self, name: str, new_name: str) -> int:
        """Create a schema version where ``name`` is called ``new_name``"""
        current = self.metadata.current_schema()
        target = current.find_field(name)
        if any(f["name"] == new_name for f in current.fields):
            raise SchemaMismatch(f"Column '{new_name}' already exists")
        fields = [
            dict(f, name=new_name) if f["id"] == target["id"] else dict(f) for f in current.fields
        ]
        return self.register_schema(Schema(schema_id=-1, fields=fields))

    def add_column(self, name: str, field_type: str, required: bool = False) -> int:
        """Create a schema version with a new column under a fresh field id"""
        current = self.metadata.current_schema()
        if any(f["name"] == name for f in current.fields):
            raise SchemaMismatch(f"Column '{name}' already exists")
        new_field = {
            "id": self.metadata.last_column_id + 1,
            "name": name,
            "type": field_type,
            "required": required,
        }
        fields = [dict(f) for f in current.fields] + [new_field]
        return self.register_schema(Schema(schema_id=-1, fields=fields))

    def drop_column(self, name: str) -> int:
        """Create a schema version without ``name``; its id is retired"""
        current = self.metadata.current_schema()
        target = current.find_field(name)
        default_spec = self.metadata.default_spec()
        if any(p.source_id == target["id"] for p in default_spec.fields):
            raise SchemaMismatch(f"Cannot drop partition source column '{name}'")
        fields = [dict(f) for f in current.fields if f["id"] != target["id"]]
        return self.register_schema(Schema(schema_id=-1, fields=fields))

    def widen_column(self, name: str, new_type: str) -> int:
        """Create a schema version promoting ``name`` to a wider type"""
        current = self.metadata.current_schema()
        target = current.find_field(name)
        if not can_promote(target["type"], new_type):
            raise SchemaMismatch(f"Cannot promote '{name}' from {target['type']} to {new_type}")
        fields = [
            dict(f, type=new_type) if f["id"] == target["id"] else dict(f) for f in current.fields
        ]
        return self.register_schema(Schema(schema_id=-1, fields=fields))

    def add_partition_field(
        self, source_name: str, transform: str = "identity", name: Optional[str] = None
    ) -> int:
        """Create a spec version with one more partition field; existing files keep their spec"""
        schema = self.metadata.current_schema()
        source = schema.find_field(source_name)
        name_part = transform.split("[")[0]
        partition_name = name or (
            source["name"] if transform == "identity" else f"{source['name']}_{name_part}"
        )
        current = self.metadata.default_spec()
        fields = [
            PartitionField(f.source_id, f.field_id, f.name, f.transform) for f in current.fields
        ]
        fields.append(PartitionField(source["id"], 0, partition_name, transform))
        return self.register_spec(PartitionSpec(spec_id=-1, fields=fields))

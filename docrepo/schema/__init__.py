"""
Schema module for docrepo.

This module turns entity declarations into versioned table schemas:
- Field annotations and entity declarations
- Metadata provider keyed by model type
- Version resolution and table schema strings

Invariants:
    - Key annotation conflicts fail at declaration time
    - Missing primary keys fail before any table is registered
    - Schema versions only ever add indexes

How to change safely:
    - Introduce new indexes with a new since_version
    - Never remove annotations from an entity with stored rows
"""

from .builder import (
    IndexSpec,
    TableSchema,
    build_table_schema,
    build_version_schemas,
    compound_descriptor,
    parse_schema_string,
)
from .registry import (
    MetadataProvider,
    entity,
    get_metadata_provider,
    reset_metadata_provider,
)
from .types import (
    EntityDef,
    FieldAnnotation,
    KeyKind,
    compound_id,
    id_field,
    incremental_id,
    indexed,
    unique,
)
from .versions import (
    annotations_visible_at,
    fields_visible_at,
    lookup_entity,
    resolve_versions,
)

__all__ = [
    # Types
    "KeyKind",
    "FieldAnnotation",
    "EntityDef",
    "id_field",
    "incremental_id",
    "compound_id",
    "unique",
    "indexed",
    # Registry
    "MetadataProvider",
    "get_metadata_provider",
    "reset_metadata_provider",
    "entity",
    # Versions
    "lookup_entity",
    "resolve_versions",
    "annotations_visible_at",
    "fields_visible_at",
    # Builder
    "TableSchema",
    "IndexSpec",
    "build_table_schema",
    "build_version_schemas",
    "compound_descriptor",
    "parse_schema_string",
]

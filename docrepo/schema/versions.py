"""
Schema version resolution.

Computes which storage schema versions an entity type needs and which of
its annotated fields take part in the schema at each version.

Invariants:
    - Resolved versions are sorted and distinct
    - Every since_version of every annotation is resolved, even when it only
      changes a secondary index
    - Visibility is monotonic: a field visible at v stays visible at v' > v
"""

from __future__ import annotations

from typing import Optional

from ..errors import SchemaError
from .registry import MetadataProvider, get_metadata_provider
from .types import EntityDef, FieldAnnotation


def lookup_entity(
    entity_type: type | EntityDef,
    metadata: Optional[MetadataProvider] = None,
) -> EntityDef:
    """Get the declaration of an entity type, requiring at least one annotation.

    Raises:
        SchemaError: If the entity type has no annotations
    """
    provider = metadata if metadata is not None else get_metadata_provider()
    entity = provider.get(entity_type)
    if entity is None or not entity.annotations:
        name = getattr(entity_type, "__name__", repr(entity_type))
        raise SchemaError(
            f"At least one field of {name} must be annotated with "
            f"id, incremental_id or compound_id",
            entity_type=name,
        )
    return entity


def resolve_versions(
    entity_type: type | EntityDef,
    metadata: Optional[MetadataProvider] = None,
) -> list[int]:
    """Get the sorted, distinct schema versions declared by an entity type.

    Raises:
        SchemaError: If the entity type has no annotations
    """
    entity = lookup_entity(entity_type, metadata)
    return sorted({a.since_version for a in entity.annotations})


def annotations_visible_at(
    entity_type: type | EntityDef,
    version: int,
    metadata: Optional[MetadataProvider] = None,
) -> list[FieldAnnotation]:
    """Get the annotations that are part of the schema at a version."""
    entity = lookup_entity(entity_type, metadata)
    return [a for a in entity.annotations if a.visible_at(version)]


def fields_visible_at(
    entity_type: type | EntityDef,
    version: int,
    metadata: Optional[MetadataProvider] = None,
) -> set[str]:
    """Get the names of the fields annotated at or before a version."""
    return {a.field for a in annotations_visible_at(entity_type, version, metadata)}

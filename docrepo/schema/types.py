"""
Core type definitions for docrepo entity declarations.

This module defines the declarative vocabulary an application uses to
describe persistent entity shapes:
- KeyKind: The role an annotated field plays in the table schema
- FieldAnnotation: One annotation on one field, tagged with a schema version
- EntityDef: An entity model type together with its annotations

Invariants:
    - since_version is a positive integer (>= 1)
    - An entity declares at most one primary key kind: a single ID field,
      a single INCREMENTAL_ID field, or one or more COMPOUND_ID_MEMBER fields
    - Conflicts are reported when the conflicting annotation is declared,
      never later when a repository is constructed
    - UNIQUE and INDEXED annotations are zero-or-many

How to change safely:
    - Add new fields with a since_version above every existing version
    - Never lower the since_version of an existing annotation
    - Never change the primary key of an entity that already has rows

Example:
    >>> from docrepo.schema.types import EntityDef, incremental_id, indexed
    >>> Book = EntityDef(
    ...     model=BookModel,
    ...     annotations=(
    ...         incremental_id("id"),
    ...         indexed("title"),
    ...         indexed("author"),
    ...     ),
    ... )
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any

from ..errors import DeclarationError

DEFAULT_SINCE_VERSION = 1


class KeyKind(Enum):
    """Role of an annotated field in the table schema."""

    ID = "id"
    INCREMENTAL_ID = "incremental_id"
    COMPOUND_ID_MEMBER = "compound_id"
    UNIQUE = "unique"
    INDEXED = "indexed"

    @property
    def is_primary_key(self) -> bool:
        """Whether this kind contributes to the primary key."""
        return self in (KeyKind.ID, KeyKind.INCREMENTAL_ID, KeyKind.COMPOUND_ID_MEMBER)

    @classmethod
    def from_str(cls, value: str) -> KeyKind:
        """Convert string representation to KeyKind.

        Raises:
            ValueError: If value is not a valid key kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid key kind '{value}'. Valid kinds: {valid}")


@dataclass(frozen=True)
class FieldAnnotation:
    """A single annotation on a field of an entity model.

    Attributes:
        field: Name of the annotated property on the stored document
        kind: Role of the field in the table schema
        since_version: Schema version the annotation was introduced in
    """

    field: str
    kind: KeyKind
    since_version: int = DEFAULT_SINCE_VERSION

    def __post_init__(self) -> None:
        """Validate annotation."""
        if not self.field:
            raise ValueError("Annotated field name cannot be empty")
        if isinstance(self.since_version, bool) or not isinstance(self.since_version, int):
            raise ValueError(f"since_version must be an integer, got {self.since_version!r}")
        if self.since_version < 1:
            raise ValueError(f"since_version must be >= 1, got {self.since_version}")

    def visible_at(self, version: int) -> bool:
        """Whether this annotation is part of the schema at a version."""
        return self.since_version <= version

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "field": self.field,
            "kind": self.kind.value,
            "since_version": self.since_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldAnnotation:
        """Create from dictionary representation."""
        return cls(
            field=data["field"],
            kind=KeyKind.from_str(data["kind"]),
            since_version=data.get("since_version", DEFAULT_SINCE_VERSION),
        )


def id_field(name: str, since_version: int = DEFAULT_SINCE_VERSION) -> FieldAnnotation:
    """Declare the unique scalar primary key of an entity."""
    return FieldAnnotation(name, KeyKind.ID, since_version)


def incremental_id(name: str, since_version: int = DEFAULT_SINCE_VERSION) -> FieldAnnotation:
    """Declare an auto-incrementing integer primary key.

    The store assigns the next integer when a document is saved without one.
    """
    return FieldAnnotation(name, KeyKind.INCREMENTAL_ID, since_version)


def compound_id(name: str, since_version: int = DEFAULT_SINCE_VERSION) -> FieldAnnotation:
    """Declare one member of a compound primary key.

    Members form the key in declaration order, so the key of a record is the
    list of member values, e.g. ``["Gandalf", "the White"]``.
    """
    return FieldAnnotation(name, KeyKind.COMPOUND_ID_MEMBER, since_version)


def unique(name: str, since_version: int = DEFAULT_SINCE_VERSION) -> FieldAnnotation:
    """Declare a secondary index that rejects duplicate values."""
    return FieldAnnotation(name, KeyKind.UNIQUE, since_version)


def indexed(name: str, since_version: int = DEFAULT_SINCE_VERSION) -> FieldAnnotation:
    """Declare a secondary index."""
    return FieldAnnotation(name, KeyKind.INDEXED, since_version)


def check_declaration(
    entity_name: str,
    declared: Iterable[FieldAnnotation],
    annotation: FieldAnnotation,
) -> None:
    """Check that an annotation can be added next to the declared ones.

    Args:
        entity_name: Name of the entity type (for error messages)
        declared: Annotations already declared on the entity type
        annotation: The annotation being declared

    Raises:
        DeclarationError: If the annotation conflicts with a declared one
    """
    declared = list(declared)

    for existing in declared:
        if existing.field == annotation.field and existing.kind == annotation.kind:
            raise DeclarationError(
                f"Field '{annotation.field}' of {entity_name} is already declared "
                f"as {annotation.kind.value}",
                entity_type=entity_name,
                field_name=annotation.field,
            )

    if not annotation.kind.is_primary_key:
        return

    key_kinds = {a.kind for a in declared if a.kind.is_primary_key}
    if not key_kinds:
        return

    if annotation.kind in key_kinds and annotation.kind != KeyKind.COMPOUND_ID_MEMBER:
        raise DeclarationError(
            f"Only one field of {entity_name} may be declared as {annotation.kind.value}",
            entity_type=entity_name,
            field_name=annotation.field,
        )
    if key_kinds != {annotation.kind}:
        raise DeclarationError(
            f"Only one kind of primary key may be declared on {entity_name}",
            entity_type=entity_name,
            field_name=annotation.field,
        )


@dataclass(frozen=True)
class EntityDef:
    """Declaration of a persistent entity shape.

    Attributes:
        model: The model class stored in the table
        annotations: Field annotations in declaration order

    Invariants:
        - Annotations are validated one by one in order, so the error names
          the first conflicting annotation
    """

    model: type
    annotations: tuple[FieldAnnotation, ...] = dataclass_field(default_factory=tuple)

    def __post_init__(self) -> None:
        """Validate the declaration."""
        declared: list[FieldAnnotation] = []
        for annotation in self.annotations:
            check_declaration(self.name, declared, annotation)
            declared.append(annotation)

    @property
    def name(self) -> str:
        """Name of the model type, used in messages only."""
        return getattr(self.model, "__name__", repr(self.model))

    def with_annotation(self, annotation: FieldAnnotation) -> EntityDef:
        """Return a copy with one more annotation.

        Raises:
            DeclarationError: If the annotation conflicts with a declared one
        """
        check_declaration(self.name, self.annotations, annotation)
        return EntityDef(model=self.model, annotations=self.annotations + (annotation,))

    def of_kind(self, kind: KeyKind) -> list[FieldAnnotation]:
        """Get the annotations of one kind, in declaration order."""
        return [a for a in self.annotations if a.kind == kind]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "model": self.name,
            "annotations": [a.to_dict() for a in self.annotations],
        }

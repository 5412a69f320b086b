"""
Table schema derivation.

Turns the annotations visible at one schema version into a table schema
string the storage engine understands, and parses such strings back into
index specifications.

Schema string grammar:
    schema  := index ("," index)*
    index   := ["++" | "&"] keypath
    keypath := name | "[" name ("+" name)* "]"

The first index is the primary key. "++" marks an auto-incrementing
primary key, "&" a unique index. A bracketed keypath is a compound key
whose value is the ordered list of member values.

Example:
    >>> build_table_schema(Book, 1).schema_string
    '++id, title, author'
    >>> build_table_schema(Person, 1).id_property_name
    '[firstName+lastName]'
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..errors import SchemaError
from .registry import MetadataProvider
from .types import FieldAnnotation, KeyKind
from .versions import annotations_visible_at, lookup_entity, resolve_versions


@dataclass(frozen=True)
class TableSchema:
    """Table schema of an entity type at one version.

    Attributes:
        version: Schema version
        schema_string: Storage engine schema descriptor
        id_property_name: Name of the primary key descriptor
    """

    version: int
    schema_string: str
    id_property_name: str


@dataclass(frozen=True)
class IndexSpec:
    """One index parsed from a schema string.

    Attributes:
        name: Descriptor as written, without prefixes (e.g. "[a+b]")
        keypath: Property name, or tuple of member names for compound keys
        unique: Whether duplicate values are rejected
        auto_increment: Whether the store assigns integer keys
    """

    name: str
    keypath: str | tuple[str, ...]
    unique: bool = False
    auto_increment: bool = False

    @property
    def compound(self) -> bool:
        return isinstance(self.keypath, tuple)

    @property
    def src(self) -> str:
        """Descriptor with its prefix, as it appears in a schema string."""
        prefix = "++" if self.auto_increment else "&" if self.unique else ""
        return f"{prefix}{self.name}"


def compound_descriptor(fields: list[str]) -> str:
    """Build the descriptor of a compound key from its member names."""
    return f"[{'+'.join(fields)}]"


def build_table_schema(
    entity_type,
    version: int,
    metadata: Optional[MetadataProvider] = None,
) -> TableSchema:
    """Build the table schema of an entity type at a version.

    Args:
        entity_type: Model type or EntityDef
        version: Schema version
        metadata: Provider to read annotations from (default provider if None)

    Returns:
        TableSchema for the version

    Raises:
        SchemaError: If no primary key field is visible at the version
    """
    entity = lookup_entity(entity_type, metadata)
    visible = annotations_visible_at(entity, version)

    def of_kind(kind: KeyKind) -> list[FieldAnnotation]:
        return [a for a in visible if a.kind == kind]

    ids = of_kind(KeyKind.ID)
    incremental_ids = of_kind(KeyKind.INCREMENTAL_ID)
    compound_members = [a.field for a in of_kind(KeyKind.COMPOUND_ID_MEMBER)]

    if ids:
        primary = IndexSpec(ids[0].field, ids[0].field, unique=True)
    elif incremental_ids:
        primary = IndexSpec(
            incremental_ids[0].field, incremental_ids[0].field, auto_increment=True
        )
    elif compound_members:
        primary = IndexSpec(compound_descriptor(compound_members), tuple(compound_members))
    else:
        raise SchemaError(
            f"At least one field of {entity.name} in version {version} must be "
            f"annotated with id, incremental_id or compound_id",
            entity_type=entity.name,
            version=version,
        )

    indexes = [primary]
    indexes.extend(
        IndexSpec(a.field, a.field, unique=True)
        for a in of_kind(KeyKind.UNIQUE)
        if a.field != primary.keypath
    )
    indexes.extend(IndexSpec(a.field, a.field) for a in of_kind(KeyKind.INDEXED))

    return TableSchema(
        version=version,
        schema_string=", ".join(index.src for index in indexes),
        id_property_name=primary.name,
    )


def build_version_schemas(
    entity_type,
    current_version: int = 0,
    metadata: Optional[MetadataProvider] = None,
) -> list[TableSchema]:
    """Build the table schema of every version a store must declare.

    Versions run contiguously from the lowest declared version up to the
    highest declared version or current_version, whichever is larger, so a
    store already at a higher version is never downgraded.

    Raises:
        SchemaError: If any walked version has no primary key
    """
    entity = lookup_entity(entity_type, metadata)
    versions = resolve_versions(entity)
    top = max(versions[-1], current_version)
    return [build_table_schema(entity, v) for v in range(versions[0], top + 1)]


def parse_schema_string(schema_string: str) -> list[IndexSpec]:
    """Parse a schema string into index specifications.

    Raises:
        ValueError: If the string is empty or malformed
    """
    specs: list[IndexSpec] = []
    for position, raw in enumerate(schema_string.split(",")):
        token = raw.strip()
        auto_increment = token.startswith("++")
        if auto_increment:
            token = token[2:]
        is_unique = token.startswith("&")
        if is_unique:
            token = token[1:]
        if not token:
            raise ValueError(f"Empty index in schema string '{schema_string}'")
        if auto_increment and position:
            raise ValueError(f"Only the primary key can auto-increment: '{raw.strip()}'")

        if token.startswith("["):
            if not token.endswith("]"):
                raise ValueError(f"Unterminated compound index '{token}'")
            members = tuple(m.strip() for m in token[1:-1].split("+"))
            if not all(members):
                raise ValueError(f"Empty member in compound index '{token}'")
            specs.append(
                IndexSpec(compound_descriptor(list(members)), members, unique=is_unique)
            )
        else:
            specs.append(
                IndexSpec(token, token, unique=is_unique, auto_increment=auto_increment)
            )
    return specs

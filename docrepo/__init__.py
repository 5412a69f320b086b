"""
docrepo - Typed repositories over a versioned local document store.

Entity types declare their keys and indexes with field annotations. Each
annotation names the schema version it appears in, and docrepo derives
the table schema of every version from them:

    >>> from pydantic import BaseModel
    >>> from docrepo import DatabaseAccess, Repository, entity, id_field, unique
    >>>
    >>> @entity(id_field("name"), unique("address", since_version=3))
    ... class Person(BaseModel):
    ...     name: str
    ...     address: str | None = None
    >>>
    >>> access = DatabaseAccess.get("people")
    >>> people = Repository(access, Person, "people")
    >>> await people.save(Person(name="Gandalf", address="Valinor"))
    >>> gandalf = await people.find_by_id("Gandalf")

Invariants:
    - Schema versions only add indexes; stored rows survive upgrades
    - Declaration and schema errors surface before any I/O

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import StoreSettings
from .errors import (
    ConstraintError,
    DatabaseClosedError,
    DataError,
    DeclarationError,
    DocRepoError,
    NotIndexedError,
    QueryConsumedError,
    SchemaError,
    StorageFailure,
    UpgradeError,
)
from .logging_config import setup_logging
from .repository import (
    DBQuery,
    EventStream,
    MappingRepository,
    NoopRepositoryMapper,
    Repository,
    RepositoryEvent,
    RepositoryEventType,
    RepositoryMapper,
    RepositoryProtocol,
)
from .schema import (
    EntityDef,
    FieldAnnotation,
    KeyKind,
    MetadataProvider,
    TableSchema,
    build_table_schema,
    compound_id,
    entity,
    fields_visible_at,
    get_metadata_provider,
    id_field,
    incremental_id,
    indexed,
    resolve_versions,
    unique,
)
from .store import Database, DatabaseAccess

__all__ = [
    # Version
    "__version__",
    # Declarations
    "KeyKind",
    "FieldAnnotation",
    "EntityDef",
    "entity",
    "id_field",
    "incremental_id",
    "compound_id",
    "unique",
    "indexed",
    "MetadataProvider",
    "get_metadata_provider",
    # Schemas
    "TableSchema",
    "resolve_versions",
    "fields_visible_at",
    "build_table_schema",
    # Storage
    "Database",
    "DatabaseAccess",
    "StoreSettings",
    # Repositories
    "MappingRepository",
    "Repository",
    "RepositoryProtocol",
    "RepositoryMapper",
    "NoopRepositoryMapper",
    "DBQuery",
    "EventStream",
    "RepositoryEvent",
    "RepositoryEventType",
    # Errors
    "DocRepoError",
    "DeclarationError",
    "SchemaError",
    "StorageFailure",
    "ConstraintError",
    "DataError",
    "DatabaseClosedError",
    "UpgradeError",
    "NotIndexedError",
    "QueryConsumedError",
    # Logging
    "setup_logging",
]

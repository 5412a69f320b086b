"""
Typed repositories over docrepo tables.

A MappingRepository owns one table of a shared Database. It derives the
table's schema versions from the entity declarations, registers them with
the database, and exposes async CRUD, queries and a change event stream.
Values pass through a RepositoryMapper on the way in and out.

Construction:
    1. Every version schema of the entity is computed (SchemaError here
       registers nothing)
    2. The database is closed if it is open
    3. Each version is declared with the repository's table schema
    4. The database is opened, which upgrades the file; if that fails the
       previous declarations are restored and the database is reopened
    5. The table is mapped to the entity model and the repository starts
       listening to the change feed

Invariants:
    - Every transaction of a repository is tagged with its source token
    - events() never reports changes made through the same instance
    - save_all() returns one key per value, in value order

How to change safely:
    - Keep construction synchronous; callers rely on a ready repository
    - New operations must tag their transactions through _transaction()
"""

from __future__ import annotations

import asyncio
import itertools
import time
from abc import abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Generic, Optional, Protocol, TypeVar, runtime_checkable
import logging

from ..schema.builder import build_version_schemas
from ..schema.registry import MetadataProvider
from ..schema.types import EntityDef
from ..schema.versions import lookup_entity
from ..store.access import DatabaseAccess
from ..store.base import ChangeRecord, TransactionMode
from ..store.codec import from_document
from ..store.database import Database
from ..store.table import Table
from .events import EventStream, RepositoryEvent, RepositoryEventType
from .mapper import NoopRepositoryMapper, RepositoryMapper, resolve
from .query import DBQuery

logger = logging.getLogger(__name__)

VALUE = TypeVar("VALUE")
MODEL = TypeVar("MODEL")
KEY = TypeVar("KEY")

_instance_counter = itertools.count(1)


def _source_token() -> str:
    # Timestamp plus a process-local counter; instances created within the
    # same clock tick still get distinct tokens.
    return f"{time.time_ns()}-{next(_instance_counter)}"


@runtime_checkable
class RepositoryProtocol(Protocol[VALUE, KEY]):
    """Structural interface of a repository."""

    @abstractmethod
    async def save(self, value: VALUE) -> KEY: ...

    @abstractmethod
    async def save_all(self, *values: VALUE) -> list[KEY]: ...

    @abstractmethod
    async def find_by_id(self, key: KEY) -> Optional[VALUE]: ...

    @abstractmethod
    async def find_all(self) -> list[VALUE]: ...

    @abstractmethod
    async def delete(self, key: KEY) -> None: ...

    @abstractmethod
    async def clear(self) -> None: ...

    @abstractmethod
    async def count(self) -> int: ...


class MappingRepository(Generic[VALUE, MODEL, KEY]):
    """Repository storing MODELs and handing out VALUEs.

    Attributes:
        repository_name: Name of the table the repository owns
        id_property_name: Primary key descriptor at the highest version

    Example:
        >>> access = DatabaseAccess.get("people", settings)
        >>> people = MappingRepository(access, PersonRecord, PersonMapper(), "people")
        >>> key = await people.save(Person(name="Gandalf", address="Valinor"))
        >>> await people.find_by_id(key)
    """

    def __init__(
        self,
        access: DatabaseAccess,
        entity_type: type | EntityDef,
        mapper: RepositoryMapper[VALUE, MODEL],
        name: str,
        metadata: Optional[MetadataProvider] = None,
    ) -> None:
        """Create the repository and register its table.

        Args:
            access: Handle on the shared database
            entity_type: Declared entity model (or its EntityDef)
            mapper: Converter between values and stored models
            name: Table name
            metadata: Registry holding the declaration (global one if None)

        Raises:
            ValueError: If name is empty
            SchemaError: If the entity is unknown or some version has no
                primary key
            UpgradeError: If the database cannot be upgraded
        """
        if not name:
            raise ValueError("Repository name must not be empty")
        self._access = access
        self._entity = lookup_entity(entity_type, metadata)
        self._metadata = metadata
        self._mapper = mapper
        self.repository_name = name
        self.id_property_name = ""
        self._token = _source_token()
        self._events: EventStream[RepositoryEvent] = EventStream()

        self.create_database_versions()
        self._db.table(name).map_to_class(self._entity.model)
        self._subscription = self._db.on_changes(self._on_changes)
        logger.debug(
            f"Created repository {name} for {self._entity.name} "
            f"(id: {self.id_property_name}, source: {self._token})"
        )

    @property
    def _db(self) -> Database:
        return self._access.db

    @property
    def source(self) -> str:
        """Token tagging the changes made through this instance."""
        return self._token

    def create_database_versions(self) -> None:
        """Declare every schema version of the table and (re)open the database.

        Raises:
            SchemaError: If some version has no primary key; nothing is
                declared in that case
            UpgradeError: If the database cannot be upgraded; other tables of
                the database stay usable
        """
        db = self._db
        schemas = build_version_schemas(self._entity, db.verno, self._metadata)

        db.declare(
            {schema.version: {self.repository_name: schema.schema_string} for schema in schemas}
        )
        self.id_property_name = schemas[-1].id_property_name
        logger.info(
            f"Registered {len(schemas)} schema versions for table {self.repository_name} "
            f"(v{schemas[0].version}..v{schemas[-1].version})"
        )

    @asynccontextmanager
    async def _transaction(self, mode: TransactionMode) -> AsyncIterator[Table]:
        async with self._db.transaction(mode, self.repository_name) as tx:
            tx.source = self._token
            yield tx.table(self.repository_name)

    async def _to_value(self, model: MODEL) -> VALUE:
        return await resolve(self._mapper.from_database_model(model))

    async def _to_values(self, models: list[MODEL]) -> list[VALUE]:
        return list(await asyncio.gather(*(self._to_value(m) for m in models)))

    # Writes

    async def save(self, value: VALUE) -> KEY:
        """Store a value, returning its primary key.

        Raises:
            ConstraintError: If a unique index already holds the value
            DataError: If the stored model has no primary key
        """
        model = await resolve(self._mapper.to_database_model(value))
        async with self._transaction(TransactionMode.READ_WRITE) as table:
            return await table.put(model)

    async def save_all(self, *values: VALUE) -> list[KEY]:
        """Store several values in one transaction, returning their keys in order."""
        models = await asyncio.gather(
            *(resolve(self._mapper.to_database_model(v)) for v in values)
        )
        async with self._transaction(TransactionMode.READ_WRITE) as table:
            return await table.bulk_put(models)

    async def delete(self, key: KEY) -> None:
        """Delete the record stored under key, if any."""
        async with self._transaction(TransactionMode.READ_WRITE) as table:
            await table.delete(key)

    async def clear(self) -> None:
        """Delete every record of the table."""
        async with self._transaction(TransactionMode.READ_WRITE) as table:
            await table.clear()

    # Reads

    async def find_by_id(self, key: KEY) -> Optional[VALUE]:
        """Get the value stored under key, or None."""
        async with self._transaction(TransactionMode.READ) as table:
            model = await table.get(key)
        if model is None:
            return None
        return await self._to_value(model)

    async def find_all(self) -> list[VALUE]:
        async with self._transaction(TransactionMode.READ) as table:
            models = await table.to_array()
        return await self._to_values(models)

    async def get_primary_keys(self) -> list[KEY]:
        async with self._transaction(TransactionMode.READ) as table:
            return await table.to_collection().primary_keys()

    async def count(self) -> int:
        async with self._transaction(TransactionMode.READ) as table:
            return await table.count()

    def search(self) -> DBQuery[VALUE, MODEL]:
        """Start a query on the table. The returned query is single-use."""
        return DBQuery(self._db, self.repository_name, self._mapper, self._token)

    # Events

    def events(self) -> EventStream[RepositoryEvent]:
        """Stream of changes made to the table by other repository instances."""
        return self._events

    async def _on_changes(self, changes: list[ChangeRecord]) -> None:
        for change in changes:
            if change.table != self.repository_name or change.source == self._token:
                continue
            try:
                event = RepositoryEvent(
                    type=RepositoryEventType.from_change_type(change.type),
                    key=change.key,
                    new_value=await self._document_value(change.obj),
                    previous_value=await self._document_value(change.old_obj),
                )
            except Exception:
                # Skip the record; the rest of the batch is still delivered
                logger.exception(
                    f"Failed to map change {change.revision} of table {self.repository_name}"
                )
                continue
            self._events.emit(event)

    async def _document_value(self, doc: Optional[dict[str, Any]]) -> Optional[VALUE]:
        if doc is None:
            return None
        return await self._to_value(from_document(doc, self._entity.model))

    def close(self) -> None:
        """Stop listening to the change feed and complete the event stream."""
        self._subscription.unsubscribe()
        self._events.close()
        logger.debug(f"Closed repository {self.repository_name}")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.repository_name!r}, entity={self._entity.name})"


class Repository(MappingRepository[VALUE, VALUE, KEY]):
    """Repository whose values are stored as they are.

    Example:
        >>> books = Repository(access, Book, "books")
        >>> await books.save_all(Book(title="The Hobbit", author="JRRT"))
    """

    def __init__(
        self,
        access: DatabaseAccess,
        entity_type: type | EntityDef,
        name: str,
        metadata: Optional[MetadataProvider] = None,
    ) -> None:
        super().__init__(access, entity_type, NoopRepositoryMapper(), name, metadata)

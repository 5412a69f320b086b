"""
Tables and collections of the docrepo storage engine.

A Table is a view of one SQLite table holding JSON documents keyed by the
primary key of the table schema. A Collection is a lazily evaluated
selection of documents built from index lookups and predicate filters.

Table layout:
    "<name>":
        - pk (primary key value, JSON text for compound keys)
        - doc TEXT (JSON document)
        - one expression index per secondary index of the schema

Invariants:
    - Every write runs inside a read-write transaction and appends one
      change record per affected document
    - put() of an existing key is an update, never a delete plus create
    - Lookups only narrow the candidate rows; the Python matcher decides
      which rows belong to a collection
    - Documents missing an indexed property never match a lookup on it
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import cached_property
from typing import TYPE_CHECKING, Any, Optional
import logging

from ..errors import DataError, NotIndexedError
from ..schema.builder import IndexSpec
from .base import (
    ChangeType,
    TransactionMode,
    decode_key,
    encode_key,
    json_field_expr,
    quote_identifier,
    translate_errors,
)
from .codec import from_document, to_document

if TYPE_CHECKING:
    from .database import Database, Transaction

logger = logging.getLogger(__name__)

_MISSING = object()


def _normalize(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


class Row:
    """A document read from a table, with its model created on demand."""

    def __init__(self, table: Table, stored_key: Any, doc: dict[str, Any]) -> None:
        self.table = table
        self.key = decode_key(stored_key, table.primary.compound)
        self.doc = doc

    @cached_property
    def model(self) -> Any:
        return self.table.hydrate(self.doc)

    def index_value(self, spec: IndexSpec) -> Any:
        """Value of an index for this document, or _MISSING."""
        if spec.compound:
            values = [self.doc.get(member) for member in spec.keypath]
            if any(v is None for v in values):
                return _MISSING
            return values
        value = self.doc.get(spec.keypath)
        return _MISSING if value is None else value


@dataclass(frozen=True)
class Lookup:
    """Equality or inequality lookup on one index."""

    spec: IndexSpec
    primary: bool
    equal: bool
    value: Any

    def matches(self, row: Row) -> bool:
        actual = row.index_value(self.spec)
        if actual is _MISSING:
            return False
        same = _normalize(actual) == _normalize(self.value)
        return same if self.equal else not same

    def to_sql(self) -> Optional[tuple[str, list[Any]]]:
        """SQL condition selecting a superset of the matching rows.

        Returns None when the lookup cannot be expressed in SQL, in which
        case the whole table is scanned.
        """
        if self.primary:
            try:
                stored = encode_key(self.value)
            except DataError:
                return None
            return ("pk = ?" if self.equal else "pk != ?"), [stored]

        if self.spec.compound:
            if not self.equal or not isinstance(self.value, (list, tuple)):
                return None
            if len(self.value) != len(self.spec.keypath) or not all(map(_is_scalar, self.value)):
                return None
            terms = [f"{json_field_expr(m)} = ?" for m in self.spec.keypath]
            return " AND ".join(terms), list(self.value)

        if not _is_scalar(self.value):
            return None
        expr = json_field_expr(self.spec.keypath)
        if self.equal:
            return f"{expr} = ?", [self.value]
        return f"{expr} IS NOT NULL AND {expr} != ?", [self.value]


class Collection:
    """Lazily evaluated selection of documents in a table.

    Attributes:
        table: The table the selection is drawn from
        lookups: Index lookups OR-ed together, or None for a full scan
    """

    def __init__(
        self,
        table: Table,
        lookups: Optional[tuple[Lookup, ...]],
        matcher: Callable[[Row], bool],
    ) -> None:
        self.table = table
        self.lookups = lookups
        self._matcher = matcher

    def and_(self, predicate: Callable[[Any], bool]) -> Collection:
        """Narrow the selection with a predicate over the mapped model."""
        matcher = self._matcher
        return Collection(
            self.table,
            self.lookups,
            lambda row: matcher(row) and bool(predicate(row.model)),
        )

    filter = and_

    def bind(self, transaction: Transaction) -> Collection:
        """Get the same selection, evaluated inside transaction."""
        return Collection(transaction.table(self.table.name), self.lookups, self._matcher)

    def or_(self, index: str) -> WhereClause:
        """Start a lookup whose matches are added to this selection."""
        return WhereClause(self.table, index, parent=self)

    def _union(self, lookup: Lookup) -> Collection:
        matcher = self._matcher
        lookups = None if self.lookups is None else self.lookups + (lookup,)
        return Collection(
            self.table, lookups, lambda row: matcher(row) or lookup.matches(row)
        )

    async def _rows(self) -> list[Row]:
        async with self.table._scope(TransactionMode.READ) as tx:
            return [row for row in self.table._select_rows(tx, self.lookups) if self._matcher(row)]

    async def to_array(self) -> list[Any]:
        """Get the models of all selected documents, in primary key order."""
        return [row.model for row in await self._rows()]

    async def primary_keys(self) -> list[Any]:
        """Get the primary keys of all selected documents."""
        return [row.key for row in await self._rows()]

    async def count(self) -> int:
        """Count the selected documents."""
        return len(await self._rows())


class WhereClause:
    """Pending lookup on one index of a table."""

    def __init__(self, table: Table, index: str, parent: Optional[Collection] = None) -> None:
        self.table = table
        self.spec, self.primary = table.index(index)
        self.parent = parent

    def _collection(self, lookup: Lookup) -> Collection:
        if self.parent is not None:
            return self.parent._union(lookup)
        return Collection(self.table, (lookup,), lookup.matches)

    def equals(self, value: Any) -> Collection:
        """Select documents whose index value equals value."""
        return self._collection(Lookup(self.spec, self.primary, True, value))

    def not_equal(self, value: Any) -> Collection:
        """Select documents that have the index and a different value."""
        return self._collection(Lookup(self.spec, self.primary, False, value))


class Table:
    """View of one table of a database.

    A table obtained from Transaction.table() runs every operation in that
    transaction. A table obtained from Database.table() opens a transaction
    per operation.

    Example:
        >>> async with db.transaction("rw", "books") as tx:
        ...     tx.source = "importer"
        ...     key = await tx.table("books").put({"title": "The Hobbit"})
    """

    def __init__(self, db: Database, name: str, transaction: Optional[Transaction] = None) -> None:
        self.db = db
        self.name = name
        self._tx = transaction

    @property
    def schema(self) -> list[IndexSpec]:
        return self.db.table_schema(self.name)

    @property
    def primary(self) -> IndexSpec:
        return self.schema[0]

    def index(self, name: str) -> tuple[IndexSpec, bool]:
        """Get an index by descriptor name, and whether it is the primary key.

        Raises:
            NotIndexedError: If the table has no such index
        """
        for position, spec in enumerate(self.schema):
            if spec.name == name:
                return spec, position == 0
        raise NotIndexedError(
            f"Property '{name}' is not indexed in table '{self.name}'",
            table=self.name,
            property_name=name,
        )

    def map_to_class(self, model: type) -> type:
        """Return documents of this table as instances of model."""
        self.db.map_class(self.name, model)
        return model

    def hydrate(self, doc: dict[str, Any]) -> Any:
        """Convert a stored document to the mapped model."""
        return from_document(doc, self.db.mapped_class(self.name))

    @asynccontextmanager
    async def _scope(self, mode: TransactionMode) -> AsyncIterator[Transaction]:
        if self._tx is not None:
            self._tx.check(self.name, mode)
            yield self._tx
        else:
            async with self.db.transaction(mode, self.name) as tx:
                yield tx

    # Reads

    async def get(self, key: Any) -> Any:
        """Get the model stored under key, or None."""
        async with self._scope(TransactionMode.READ) as tx:
            doc = self._select_doc(tx, encode_key(key, self.name))
        return None if doc is None else self.hydrate(doc)

    async def count(self) -> int:
        async with self._scope(TransactionMode.READ) as tx:
            with translate_errors(self.name):
                row = tx.connection.execute(
                    f"SELECT COUNT(*) FROM {quote_identifier(self.name)}"
                ).fetchone()
        return row[0]

    async def to_array(self) -> list[Any]:
        return await self.to_collection().to_array()

    def to_collection(self) -> Collection:
        """Select every document of the table."""
        return Collection(self, None, lambda row: True)

    def where(self, index: str) -> WhereClause:
        """Start a lookup on an indexed property.

        Raises:
            NotIndexedError: If the property is not indexed
        """
        return WhereClause(self, index)

    def filter(self, predicate: Callable[[Any], bool]) -> Collection:
        """Select the documents whose mapped model satisfies predicate."""
        return self.to_collection().and_(predicate)

    # Writes

    async def put(self, obj: Any) -> Any:
        """Insert or replace a document, returning its primary key."""
        async with self._scope(TransactionMode.READ_WRITE) as tx:
            return self._put_one(tx, obj)

    async def bulk_put(self, objs: Iterable[Any]) -> list[Any]:
        """Insert or replace several documents, returning their keys in order."""
        async with self._scope(TransactionMode.READ_WRITE) as tx:
            return [self._put_one(tx, obj) for obj in objs]

    async def delete(self, key: Any) -> None:
        """Delete the document stored under key. Missing keys are ignored."""
        async with self._scope(TransactionMode.READ_WRITE) as tx:
            stored = encode_key(key, self.name)
            old = self._select_doc(tx, stored)
            if old is None:
                return
            with translate_errors(self.name):
                tx.connection.execute(
                    f"DELETE FROM {quote_identifier(self.name)} WHERE pk = ?", (stored,)
                )
            tx.record_change(self.name, ChangeType.DELETE, key, None, old)

    async def clear(self) -> None:
        """Delete every document of the table."""
        async with self._scope(TransactionMode.READ_WRITE) as tx:
            rows = self._select_rows(tx, None)
            with translate_errors(self.name):
                tx.connection.execute(f"DELETE FROM {quote_identifier(self.name)}")
            for row in rows:
                tx.record_change(self.name, ChangeType.DELETE, row.key, None, row.doc)

    # SQL helpers (run inside a transaction)

    def _select_doc(self, tx: Transaction, stored_key: Any) -> Optional[dict[str, Any]]:
        with translate_errors(self.name):
            row = tx.connection.execute(
                f"SELECT doc FROM {quote_identifier(self.name)} WHERE pk = ?", (stored_key,)
            ).fetchone()
        return None if row is None else json.loads(row[0])

    def _select_rows(
        self, tx: Transaction, lookups: Optional[tuple[Lookup, ...]]
    ) -> list[Row]:
        sql = f"SELECT pk, doc FROM {quote_identifier(self.name)}"
        params: list[Any] = []
        conditions = [lookup.to_sql() for lookup in lookups] if lookups is not None else [None]
        if all(c is not None for c in conditions):
            sql += " WHERE " + " OR ".join(f"({c[0]})" for c in conditions)
            for c in conditions:
                params.extend(c[1])
        sql += " ORDER BY pk"
        with translate_errors(self.name):
            cursor = tx.connection.execute(sql, params)
            return [Row(self, pk, json.loads(doc)) for pk, doc in cursor.fetchall()]

    def _put_one(self, tx: Transaction, obj: Any) -> Any:
        doc = to_document(obj, self.name)
        primary = self.primary

        if primary.auto_increment:
            key = doc.get(primary.keypath)
            if key is None:
                key = tx.next_sequence(self.name)
                doc[primary.keypath] = key
            else:
                tx.bump_sequence(self.name, key)
        elif primary.compound:
            key = [doc.get(member) for member in primary.keypath]
            if any(v is None for v in key):
                raise DataError(
                    f"Document is missing a member of compound key {primary.name} "
                    f"in table '{self.name}'",
                    table=self.name,
                )
        else:
            key = doc.get(primary.keypath)
            if key is None:
                raise DataError(
                    f"Document is missing primary key '{primary.name}' in table '{self.name}'",
                    table=self.name,
                )

        stored = encode_key(key, self.name)
        old = self._select_doc(tx, stored)
        text = json.dumps(doc)
        table = quote_identifier(self.name)
        with translate_errors(self.name):
            if old is None:
                tx.connection.execute(f"INSERT INTO {table} (pk, doc) VALUES (?, ?)", (stored, text))
            else:
                tx.connection.execute(f"UPDATE {table} SET doc = ? WHERE pk = ?", (text, stored))

        change_type = ChangeType.CREATE if old is None else ChangeType.UPDATE
        tx.record_change(self.name, change_type, key, doc, old)
        return key

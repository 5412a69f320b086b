"""
Composable queries over a repository table.

A DBQuery accumulates equality, inequality and predicate constraints and
compiles them into one storage engine collection. The first constraint
seeds an index lookup; later ones narrow the selection with a filter or
widen it with the engine's or_ combinator.

Invariants:
    - Every builder method mutates the query and returns it
    - A query is single-use: find() consumes it, and any later call raises
      QueryConsumedError
    - or_equal/or_not_equal need an indexed property, like the first
      constraint; and_* narrowing works on any property
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar

from ..errors import QueryConsumedError
from ..store.base import TransactionMode
from ..store.table import Collection, Table
from .mapper import resolve

if TYPE_CHECKING:
    from ..store.database import Database
    from .mapper import RepositoryMapper

VALUE = TypeVar("VALUE")
MODEL = TypeVar("MODEL")

_MISSING = object()


def model_property(model: Any, name: str) -> Any:
    """Read a property of a mapped model (mappings and plain objects)."""
    if isinstance(model, Mapping):
        return model.get(name, _MISSING)
    return getattr(model, name, _MISSING)


class DBQuery(Generic[VALUE, MODEL]):
    """Single-use query builder returned by MappingRepository.search().

    Builder methods resolve the table and index lookups as they are
    called, so the chain itself can raise before find() runs:
    NotIndexedError for an unindexed seed or or_* property,
    DatabaseClosedError if the database is not open, and
    QueryConsumedError once find() has run.

    Example:
        >>> books = await (
        ...     repo.search()
        ...     .and_equal("author", "GRRM")
        ...     .and_(lambda book: "Of" in book.title)
        ...     .find()
        ... )
    """

    def __init__(
        self,
        db: Database,
        table_name: str,
        mapper: RepositoryMapper[VALUE, MODEL],
        source: str,
    ) -> None:
        self._db = db
        self._table_name = table_name
        self._mapper = mapper
        self._source = source
        self._selection: Optional[Collection] = None
        self._consumed = False

    @property
    def consumed(self) -> bool:
        return self._consumed

    def _table(self) -> Table:
        if self._consumed:
            raise QueryConsumedError(
                f"Query on '{self._table_name}' was already executed; start a new search()"
            )
        return self._db.table(self._table_name)

    def and_equal(self, prop: str, value: Any) -> DBQuery[VALUE, MODEL]:
        """Keep only records whose property equals value."""
        table = self._table()
        if self._selection is None:
            self._selection = table.where(prop).equals(value)
        else:
            self._selection = self._selection.and_(
                lambda model: model_property(model, prop) == value
            )
        return self

    def and_not_equal(self, prop: str, value: Any) -> DBQuery[VALUE, MODEL]:
        """Drop records whose property equals value."""
        table = self._table()
        if self._selection is None:
            self._selection = table.where(prop).not_equal(value)
        else:
            self._selection = self._selection.and_(
                lambda model: model_property(model, prop) != value
            )
        return self

    def or_equal(self, prop: str, value: Any) -> DBQuery[VALUE, MODEL]:
        """Add records whose indexed property equals value."""
        table = self._table()
        if self._selection is None:
            self._selection = table.where(prop).equals(value)
        else:
            self._selection = self._selection.or_(prop).equals(value)
        return self

    def or_not_equal(self, prop: str, value: Any) -> DBQuery[VALUE, MODEL]:
        """Add records whose indexed property is set to something else than value."""
        table = self._table()
        if self._selection is None:
            self._selection = table.where(prop).not_equal(value)
        else:
            self._selection = self._selection.or_(prop).not_equal(value)
        return self

    def and_(self, predicate: Callable[[MODEL], bool]) -> DBQuery[VALUE, MODEL]:
        """Keep only records whose stored model satisfies predicate."""
        table = self._table()
        if self._selection is None:
            self._selection = table.filter(predicate)
        else:
            self._selection = self._selection.and_(predicate)
        return self

    async def find(self) -> list[VALUE]:
        """Run the query and map every matching model to a value.

        An empty builder matches every record.
        """
        table = self._table()
        selection = table.to_collection() if self._selection is None else self._selection
        self._consumed = True
        self._selection = None

        async with self._db.transaction(TransactionMode.READ, self._table_name) as tx:
            tx.source = self._source
            models = await selection.bind(tx).to_array()

        return list(
            await asyncio.gather(*(resolve(self._mapper.from_database_model(m)) for m in models))
        )

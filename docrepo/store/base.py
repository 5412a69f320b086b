"""
Shared types for the docrepo storage engine.

This module defines the change feed record format, transaction modes and
the key encoding used by SQLite tables.

Invariants:
    - ChangeType values match the numeric codes of the change log
      (1 create, 2 update, 3 delete)
    - Compound keys are stored as the JSON text of the member list, so
      equal member lists always produce the same stored key
    - Change records are immutable once read from the log
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Iterator, Optional

from ..errors import ConstraintError, DataError, StorageFailure


class ChangeType(IntEnum):
    """Kind of change recorded in the change log."""

    CREATE = 1
    UPDATE = 2
    DELETE = 3


class TransactionMode(Enum):
    """Access mode of a transaction."""

    READ = "r"
    READ_WRITE = "rw"

    @classmethod
    def parse(cls, value: str | TransactionMode) -> TransactionMode:
        """Accept "r"/"rw" as well as "readonly"/"readwrite".

        Raises:
            ValueError: If value is not a known mode
        """
        if isinstance(value, TransactionMode):
            return value
        aliases = {"r": cls.READ, "readonly": cls.READ, "rw": cls.READ_WRITE, "readwrite": cls.READ_WRITE}
        try:
            return aliases[value]
        except KeyError:
            raise ValueError(f"Invalid transaction mode '{value}'. Valid modes: {sorted(aliases)}") from None


@dataclass(frozen=True)
class ChangeRecord:
    """One entry of the change feed.

    Attributes:
        revision: Position in the change log (increasing)
        table: Table the change was made in
        type: Create, update or delete
        key: Primary key of the changed document
        obj: Document after the change (None for deletes)
        old_obj: Document before the change (None for creates)
        source: Tag of the transaction that made the change
    """

    revision: int
    table: str
    type: ChangeType
    key: Any
    obj: Optional[Dict[str, Any]] = None
    old_obj: Optional[Dict[str, Any]] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and debugging."""
        return {
            "revision": self.revision,
            "table": self.table,
            "type": self.type.name.lower(),
            "key": self.key,
            "source": self.source,
        }


class Subscription:
    """Handle returned by subscribe-style calls.

    Calling unsubscribe() more than once is harmless.
    """

    def __init__(self, on_unsubscribe: Callable[[], None]) -> None:
        self._on_unsubscribe: Optional[Callable[[], None]] = on_unsubscribe

    @property
    def closed(self) -> bool:
        return self._on_unsubscribe is None

    def unsubscribe(self) -> None:
        callback, self._on_unsubscribe = self._on_unsubscribe, None
        if callback is not None:
            callback()


def validate_key(key: Any, table: Optional[str] = None) -> Any:
    """Check that a value can be used as a primary key.

    Valid keys are strings, numbers (not booleans) and non-empty
    lists/tuples of those.

    Raises:
        DataError: If the key is not valid
    """
    if isinstance(key, (list, tuple)):
        if not key:
            raise DataError("Compound key cannot be empty", table=table)
        for member in key:
            validate_key(member, table)
        return key
    if key is None or isinstance(key, bool) or not isinstance(key, (str, int, float)):
        raise DataError(f"Invalid key {key!r}", table=table)
    return key


def encode_key(key: Any, table: Optional[str] = None) -> Any:
    """Encode a primary key for the pk column."""
    validate_key(key, table)
    if isinstance(key, (list, tuple)):
        return json.dumps(list(key))
    return key


def decode_key(stored: Any, compound: bool) -> Any:
    """Decode a pk column value."""
    if compound:
        return json.loads(stored)
    return stored


@contextmanager
def translate_errors(table: Optional[str] = None) -> Iterator[None]:
    """Re-raise sqlite3 errors as storage failures.

    Raises:
        ConstraintError: For unique and primary key violations
        StorageFailure: For any other SQLite error
    """
    try:
        yield
    except sqlite3.IntegrityError as e:
        where = f" in table '{table}'" if table else ""
        raise ConstraintError(f"Constraint failed{where}: {e}", table=table) from e
    except sqlite3.Error as e:
        where = f" in table '{table}'" if table else ""
        raise StorageFailure(f"Storage operation failed{where}: {e}", table=table) from e


def quote_identifier(name: str) -> str:
    """Quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def json_field_expr(prop: str) -> str:
    """SQL expression extracting a document property.

    Index definitions and lookups must use the exact same text for SQLite
    to pick the expression index.
    """
    path = '$."' + prop.replace('"', '\\"') + '"'
    return "json_extract(doc, '" + path.replace("'", "''") + "')"

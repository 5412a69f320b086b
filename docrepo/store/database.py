"""
Versioned SQLite document database for docrepo.

A Database is one SQLite file holding any number of document tables.
Table schemas are declared per version, Dexie style:

    db.version(1).stores({"books": "++id, title"})
    db.version(2).stores({"books": "++id, title, &isbn"})
    db.open()

Opening applies the schema of the highest declared version. Later versions
inherit every table of earlier versions unless they redeclare it (or set it
to None to drop it).

Internal tables:
    _docrepo_tables:
        - name TEXT PRIMARY KEY
        - schema TEXT (schema string the table was last reconciled with)
    _docrepo_sequences:
        - table_name TEXT PRIMARY KEY
        - value INTEGER (last auto-increment key)
    _docrepo_changes:
        - revision INTEGER PRIMARY KEY AUTOINCREMENT
        - table_name, type, key, obj, old_obj, source

Invariants:
    - The on-disk version (PRAGMA user_version) never decreases
    - All declared schemas are applied in one transaction; a failed upgrade
      leaves the file untouched
    - The primary key of an existing table never changes
    - Every write is logged to _docrepo_changes in its own transaction, so
      listeners see each committed change exactly once per Database

How to change safely:
    - Only add indexes in new versions
    - Keep change records backward compatible; other connections read them
"""

from __future__ import annotations

import asyncio
import inspect
import json
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional, Union
import logging

from ..config import StoreSettings
from ..errors import DatabaseClosedError, StorageFailure, UpgradeError
from ..schema.builder import IndexSpec, parse_schema_string
from .base import (
    ChangeRecord,
    ChangeType,
    Subscription,
    TransactionMode,
    json_field_expr,
    quote_identifier,
    translate_errors,
)
from .table import Table

logger = logging.getLogger(__name__)

ChangeListener = Callable[[list[ChangeRecord]], Union[None, Awaitable[None]]]

INTERNAL_PREFIX = "_docrepo_"


class Version:
    """Schema declaration of one database version."""

    def __init__(self, db: Database, number: int) -> None:
        self.db = db
        self.number = number
        self.tables: dict[str, Optional[str]] = {}

    def stores(self, schema: dict[str, Optional[str]]) -> Version:
        """Declare table schemas for this version.

        Args:
            schema: Mapping of table name to schema string (None drops the table)

        Raises:
            StorageFailure: If the database is open
            ValueError: If a schema string is malformed or a name is reserved
        """
        if self.db.is_open():
            raise StorageFailure("Cannot declare versions while the database is open")
        for name, schema_string in schema.items():
            if name.startswith(INTERNAL_PREFIX):
                raise ValueError(f"Table names starting with '{INTERNAL_PREFIX}' are reserved")
            if schema_string is not None:
                parse_schema_string(schema_string)
            self.tables[name] = schema_string
        return self


class Transaction:
    """A transaction on a set of tables.

    Attributes:
        mode: Read or read-write
        tables: Names of the tables the transaction may touch
        source: Tag recorded with every change made in this transaction
    """

    def __init__(
        self,
        db: Database,
        connection: sqlite3.Connection,
        mode: TransactionMode,
        tables: frozenset[str],
    ) -> None:
        self.db = db
        self.connection = connection
        self.mode = mode
        self.tables = tables
        self.source: Optional[str] = None
        self.changed = False

    def table(self, name: str) -> Table:
        """Get a table bound to this transaction."""
        self.check(name, TransactionMode.READ)
        return Table(self.db, name, self)

    def check(self, name: str, mode: TransactionMode) -> None:
        """Check that this transaction may access a table in a mode.

        Raises:
            StorageFailure: If the table is outside the transaction scope or
                a write is attempted in a read-only transaction
        """
        if name not in self.tables:
            raise StorageFailure(f"Table '{name}' is not part of the transaction", table=name)
        if mode == TransactionMode.READ_WRITE and self.mode == TransactionMode.READ:
            raise StorageFailure(f"Cannot write to '{name}' in a read-only transaction", table=name)

    def record_change(
        self,
        table: str,
        change_type: ChangeType,
        key: Any,
        obj: Optional[dict[str, Any]],
        old_obj: Optional[dict[str, Any]],
    ) -> None:
        """Append a change to the change log."""
        with translate_errors(table):
            self.connection.execute(
                f"""
                INSERT INTO {INTERNAL_PREFIX}changes
                    (table_name, type, key, obj, old_obj, source)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    table,
                    int(change_type),
                    json.dumps(key),
                    None if obj is None else json.dumps(obj),
                    None if old_obj is None else json.dumps(old_obj),
                    self.source,
                ),
            )
        self.changed = True

    def next_sequence(self, table: str) -> int:
        """Allocate the next auto-increment key of a table."""
        with translate_errors(table):
            self.connection.execute(
                f"""
                INSERT INTO {INTERNAL_PREFIX}sequences (table_name, value) VALUES (?, 1)
                ON CONFLICT(table_name) DO UPDATE SET value = value + 1
                """,
                (table,),
            )
            row = self.connection.execute(
                f"SELECT value FROM {INTERNAL_PREFIX}sequences WHERE table_name = ?",
                (table,),
            ).fetchone()
        return row[0]

    def bump_sequence(self, table: str, key: Any) -> None:
        """Make sure generated keys stay above an explicitly written key."""
        if isinstance(key, bool) or not isinstance(key, (int, float)):
            return
        with translate_errors(table):
            self.connection.execute(
                f"""
                INSERT INTO {INTERNAL_PREFIX}sequences (table_name, value) VALUES (?, ?)
                ON CONFLICT(table_name) DO UPDATE SET value = MAX(value, excluded.value)
                """,
                (table, int(key)),
            )


class Database:
    """Versioned document database stored in one SQLite file.

    Thread safety:
        One connection per Database, used from one event loop. Transactions
        are serialized with an asyncio lock.

    Example:
        >>> db = Database("library", StoreSettings(data_dir="/tmp/docrepo"))
        >>> db.version(1).stores({"books": "++id, title, author"})
        >>> db.open()
        >>> key = await db.table("books").put({"title": "The Hobbit"})
    """

    def __init__(
        self,
        name: str,
        settings: Optional[StoreSettings] = None,
        path: Optional[str | Path] = None,
    ) -> None:
        """Initialize a database handle. Nothing is opened yet.

        Args:
            name: Logical database name
            settings: Store settings (loaded from environment if None)
            path: Explicit file path (derived from name and data_dir if None)
        """
        self.name = name
        self.settings = settings or StoreSettings()
        self.path = Path(path) if path is not None else self._default_path()
        self._versions: dict[int, Version] = {}
        self._schemas: dict[str, list[IndexSpec]] = {}
        self._classes: dict[str, type] = {}
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._listeners: list[ChangeListener] = []
        self._last_revision = 0
        self._poller: Optional[asyncio.Task] = None

    def _default_path(self) -> Path:
        # Sanitize name to prevent path traversal
        safe_name = "".join(c for c in self.name if c.isalnum() or c in "-_")
        return Path(self.settings.data_dir) / f"{safe_name}.sqlite3"

    # Versions

    def version(self, number: int) -> Version:
        """Get (or create) the declaration of a version.

        Raises:
            ValueError: If number is not a positive integer
        """
        if isinstance(number, bool) or not isinstance(number, int) or number < 1:
            raise ValueError(f"Version must be a positive integer, got {number!r}")
        if number not in self._versions:
            self._versions[number] = Version(self, number)
        return self._versions[number]

    def declare(self, declarations: dict[int, dict[str, Optional[str]]]) -> None:
        """Declare table schemas for several versions and (re)open the database.

        The database is closed first if it is open. If the new declarations
        cannot be applied, the previous ones are restored and the database
        is reopened if it was open before.

        Args:
            declarations: Mapping of version number to table schemas, in the
                form taken by Version.stores()

        Raises:
            UpgradeError: If a declared schema cannot be applied
            StorageFailure: If SQLite fails
            ValueError: If a version number or schema string is invalid
        """
        was_open = self.is_open()
        previous = {number: dict(version.tables) for number, version in self._versions.items()}
        self.close()
        try:
            for number in sorted(declarations):
                self.version(number).stores(declarations[number])
            self.open()
        except BaseException:
            self._versions = {}
            for number, tables in previous.items():
                self.version(number).tables.update(tables)
            logger.warning(f"Restored previous declarations of database {self.name}")
            if was_open:
                self.open()
            raise

    @property
    def verno(self) -> int:
        """Highest of the declared versions and the on-disk version."""
        declared = max(self._versions, default=0)
        return max(declared, self._disk_version())

    def _disk_version(self) -> int:
        if self._conn is not None:
            return self._conn.execute("PRAGMA user_version").fetchone()[0]
        if not self.path.exists():
            return 0
        conn = sqlite3.connect(str(self.path))
        try:
            return conn.execute("PRAGMA user_version").fetchone()[0]
        finally:
            conn.close()

    def effective_schema(self, version: Optional[int] = None) -> dict[str, str]:
        """Table schemas in force at a version (highest declared if None)."""
        version = version if version is not None else max(self._versions, default=0)
        tables: dict[str, Optional[str]] = {}
        for number in sorted(self._versions):
            if number > version:
                break
            tables.update(self._versions[number].tables)
        return {name: schema for name, schema in tables.items() if schema is not None}

    def table_schema(self, name: str) -> list[IndexSpec]:
        """Parsed schema of an open table.

        Raises:
            DatabaseClosedError: If the database is not open
            StorageFailure: If the table does not exist
        """
        self._require_open()
        try:
            return self._schemas[name]
        except KeyError:
            raise StorageFailure(f"Table '{name}' does not exist", table=name) from None

    # Lifecycle

    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> None:
        """Open the database file and apply the declared schemas.

        Raises:
            UpgradeError: If a declared schema cannot be applied
            StorageFailure: If no version is declared or SQLite fails
        """
        if self._conn is not None:
            return
        if not self._versions:
            raise StorageFailure(f"No versions declared for database '{self.name}'")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.settings.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.settings.busy_timeout_ms}")
            if self.settings.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            self._upgrade(conn)
            self._last_revision = conn.execute(
                f"SELECT COALESCE(MAX(revision), 0) FROM {INTERNAL_PREFIX}changes"
            ).fetchone()[0]
        except sqlite3.Error as e:
            conn.close()
            raise StorageFailure(f"Failed to open database '{self.name}': {e}") from e
        except BaseException:
            conn.close()
            raise

        self._conn = conn
        logger.info(f"Opened database {self.name} at version {self.verno}: {self.path}")
        self._ensure_poller()

    def _upgrade(self, conn: sqlite3.Connection) -> None:
        target = max(self._versions)
        conn.execute("BEGIN IMMEDIATE")
        try:
            disk = conn.execute("PRAGMA user_version").fetchone()[0]
            self._create_internal_tables(conn)
            stored = dict(
                conn.execute(f"SELECT name, schema FROM {INTERNAL_PREFIX}tables").fetchall()
            )
            schemas: dict[str, list[IndexSpec]] = {}
            for name, schema_string in self.effective_schema(target).items():
                specs = parse_schema_string(schema_string)
                self._reconcile_table(conn, name, specs, stored.get(name))
                schemas[name] = specs
            for name in set(stored) - set(schemas):
                if name in self._declared_tables():
                    self._drop_table(conn, name)
                else:
                    # Declared by another application of the same file; keep it
                    schemas[name] = parse_schema_string(stored[name])
            if target > disk:
                conn.execute(f"PRAGMA user_version = {int(target)}")
                logger.info(f"Upgraded database {self.name} from version {disk} to {target}")
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        self._schemas = schemas

    def _declared_tables(self) -> set[str]:
        return {name for version in self._versions.values() for name in version.tables}

    def _create_internal_tables(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {INTERNAL_PREFIX}tables (
                name TEXT PRIMARY KEY,
                schema TEXT NOT NULL
            )
            """
        )
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {INTERNAL_PREFIX}sequences (
                table_name TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {INTERNAL_PREFIX}changes (
                revision INTEGER PRIMARY KEY AUTOINCREMENT,
                table_name TEXT NOT NULL,
                type INTEGER NOT NULL,
                key TEXT NOT NULL,
                obj TEXT,
                old_obj TEXT,
                source TEXT
            )
            """
        )

    def _reconcile_table(
        self,
        conn: sqlite3.Connection,
        name: str,
        specs: list[IndexSpec],
        stored_schema: Optional[str],
    ) -> None:
        table = quote_identifier(name)
        if stored_schema is not None:
            old_primary = parse_schema_string(stored_schema)[0]
            if (old_primary.keypath, old_primary.auto_increment) != (
                specs[0].keypath,
                specs[0].auto_increment,
            ):
                raise UpgradeError(
                    f"Cannot change primary key of table '{name}' "
                    f"from {old_primary.src} to {specs[0].src}",
                    table=name,
                )
        conn.execute(f"CREATE TABLE IF NOT EXISTS {table} (pk PRIMARY KEY NOT NULL, doc TEXT NOT NULL)")

        wanted = {self._index_name(name, spec): spec for spec in specs[1:]}
        existing = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ? "
                "AND sql IS NOT NULL",
                (name,),
            )
        }
        for index_name in existing - set(wanted):
            conn.execute(f"DROP INDEX {quote_identifier(index_name)}")
            logger.debug(f"Dropped index {index_name}")
        for index_name, spec in wanted.items():
            if index_name in existing:
                continue
            members = spec.keypath if spec.compound else (spec.keypath,)
            columns = ", ".join(json_field_expr(m) for m in members)
            kind = "UNIQUE INDEX" if spec.unique else "INDEX"
            try:
                conn.execute(f"CREATE {kind} {quote_identifier(index_name)} ON {table} ({columns})")
            except sqlite3.IntegrityError as e:
                raise UpgradeError(
                    f"Cannot add unique index {spec.name} to table '{name}': {e}",
                    table=name,
                ) from e
            logger.debug(f"Created index {index_name}")

        schema_string = ", ".join(spec.src for spec in specs)
        conn.execute(
            f"""
            INSERT INTO {INTERNAL_PREFIX}tables (name, schema) VALUES (?, ?)
            ON CONFLICT(name) DO UPDATE SET schema = excluded.schema
            """,
            (name, schema_string),
        )

    def _drop_table(self, conn: sqlite3.Connection, name: str) -> None:
        conn.execute(f"DROP TABLE IF EXISTS {quote_identifier(name)}")
        conn.execute(f"DELETE FROM {INTERNAL_PREFIX}tables WHERE name = ?", (name,))
        conn.execute(f"DELETE FROM {INTERNAL_PREFIX}sequences WHERE table_name = ?", (name,))
        logger.info(f"Dropped table {name} from database {self.name}")

    @staticmethod
    def _index_name(table: str, spec: IndexSpec) -> str:
        prefix = "uq" if spec.unique else "ix"
        return f"{prefix}__{table}__{spec.name}"

    def close(self) -> None:
        """Close the connection. Declarations and listeners are kept."""
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug(f"Closed database {self.name}")

    async def delete(self) -> None:
        """Close the database and delete its files."""
        poller = self._poller
        self.close()
        if poller is not None:
            try:
                await poller
            except asyncio.CancelledError:
                pass
        for suffix in ("", "-wal", "-shm"):
            Path(f"{self.path}{suffix}").unlink(missing_ok=True)
        logger.info(f"Deleted database {self.name}")

    def _require_open(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseClosedError(f"Database '{self.name}' is not open")
        return self._conn

    # Tables and transactions

    def table(self, name: str) -> Table:
        """Get a table that opens a transaction per operation."""
        self.table_schema(name)
        return Table(self, name)

    def map_class(self, table: str, model: type) -> None:
        self._classes[table] = model

    def mapped_class(self, table: str) -> Optional[type]:
        return self._classes.get(table)

    @asynccontextmanager
    async def transaction(
        self,
        mode: str | TransactionMode,
        *tables: str | Table,
    ) -> AsyncIterator[Transaction]:
        """Run a block in one all-or-nothing transaction.

        Args:
            mode: "r" or "rw"
            tables: Tables (or names) the block may touch

        Yields:
            Transaction; set its source before the first write to tag changes

        Raises:
            DatabaseClosedError: If the database is not open
            StorageFailure: If a table does not exist
        """
        mode = TransactionMode.parse(mode)
        names = frozenset(t.name if isinstance(t, Table) else t for t in tables)
        for name in names:
            self.table_schema(name)
        self._ensure_poller()

        async with self._lock:
            conn = self._require_open()
            with translate_errors():
                conn.execute("BEGIN IMMEDIATE" if mode == TransactionMode.READ_WRITE else "BEGIN")
            tx = Transaction(self, conn, mode, names)
            try:
                yield tx
            except BaseException:
                if self._conn is conn:
                    conn.execute("ROLLBACK")
                raise
            else:
                try:
                    with translate_errors():
                        if tx.changed:
                            self._trim_changes(conn)
                        conn.execute("COMMIT")
                except BaseException:
                    if self._conn is conn and conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise

        if tx.changed:
            await self.poll_changes()

    def _trim_changes(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            f"""
            DELETE FROM {INTERNAL_PREFIX}changes
            WHERE revision <= (SELECT MAX(revision) FROM {INTERNAL_PREFIX}changes) - ?
            """,
            (self.settings.change_log_limit,),
        )

    # Change feed

    def on_changes(self, listener: ChangeListener) -> Subscription:
        """Register a listener for committed changes.

        Listeners receive the changes committed after registration, in
        revision order, including changes made through other Database
        objects on the same file.
        """
        self._listeners.append(listener)
        self._ensure_poller()

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(remove)

    async def poll_changes(self) -> int:
        """Deliver changes committed since the last poll.

        Returns:
            Number of change records delivered
        """
        async with self._lock:
            if self._conn is None:
                return 0
            with translate_errors():
                rows = self._conn.execute(
                    f"""
                    SELECT revision, table_name, type, key, obj, old_obj, source
                    FROM {INTERNAL_PREFIX}changes WHERE revision > ? ORDER BY revision
                    """,
                    (self._last_revision,),
                ).fetchall()
            if not rows:
                return 0
            self._last_revision = rows[-1][0]

        changes = [
            ChangeRecord(
                revision=revision,
                table=table,
                type=ChangeType(change_type),
                key=json.loads(key),
                obj=None if obj is None else json.loads(obj),
                old_obj=None if old_obj is None else json.loads(old_obj),
                source=source,
            )
            for revision, table, change_type, key, obj, old_obj, source in rows
        ]
        for listener in list(self._listeners):
            try:
                result = listener(changes)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Change listener failed in database {self.name}")
        return len(changes)

    def _ensure_poller(self) -> None:
        if self._poller is not None or self._conn is None or not self._listeners:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._poller = loop.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.change_poll_interval)
            try:
                await self.poll_changes()
            except StorageFailure:
                logger.exception(f"Failed to poll changes of database {self.name}")

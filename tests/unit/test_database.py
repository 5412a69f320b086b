"""
Unit tests for the SQLite document database.

Tests cover:
- Version declarations and upgrades
- Table CRUD, sequences and constraints
- Index lookups and collections
- Transactions and the change feed
"""

import asyncio
import sqlite3
import tempfile

import pytest
import pytest_asyncio

from docrepo.config import StoreSettings
from docrepo.errors import (
    ConstraintError,
    DatabaseClosedError,
    DataError,
    NotIndexedError,
    StorageFailure,
    UpgradeError,
)
from docrepo.store.base import ChangeType
from docrepo.store.database import Database


@pytest.fixture
def settings():
    """Settings pointing at a temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield StoreSettings(data_dir=tmpdir, change_poll_interval=60.0)


@pytest_asyncio.fixture
async def db(settings):
    """Open database with a books and a people table."""
    database = Database("library", settings)
    database.version(1).stores(
        {
            "books": "++id, title, author",
            "people": "[firstName+lastName], &email, age",
        }
    )
    database.open()
    yield database
    await database.delete()


class TestVersions:
    """Tests for version declarations and upgrades."""

    def test_file_path_from_name(self, settings):
        database = Database("my library/../x", settings)

        assert database.path.name == "mylibraryx.sqlite3"

    def test_invalid_version(self, settings):
        database = Database("library", settings)

        with pytest.raises(ValueError):
            database.version(0)

    def test_malformed_schema(self, settings):
        database = Database("library", settings)

        with pytest.raises(ValueError):
            database.version(1).stores({"books": "id, ++seq"})

    def test_reserved_table_name(self, settings):
        database = Database("library", settings)

        with pytest.raises(ValueError, match="reserved"):
            database.version(1).stores({"_docrepo_changes": "++id"})

    def test_open_without_versions(self, settings):
        with pytest.raises(StorageFailure):
            Database("library", settings).open()

    @pytest.mark.asyncio
    async def test_declare_while_open_raises(self, db):
        with pytest.raises(StorageFailure, match="while the database is open"):
            db.version(2).stores({"books": "++id"})

    @pytest.mark.asyncio
    async def test_verno_reads_disk(self, settings):
        """verno reports the stored version even before open."""
        first = Database("library", settings)
        first.version(3).stores({"books": "++id"})
        first.open()
        first.close()

        second = Database("library", settings)

        assert second.verno == 3
        second.version(1).stores({"books": "++id"})
        assert second.verno == 3
        await first.delete()

    @pytest.mark.asyncio
    async def test_version_never_decreases(self, settings):
        first = Database("library", settings)
        first.version(2).stores({"books": "++id"})
        first.open()
        first.close()

        second = Database("library", settings)
        second.version(1).stores({"books": "++id"})
        second.open()

        assert second.verno == 2
        await second.delete()

    def test_effective_schema_inherits(self, settings):
        database = Database("library", settings)
        database.version(1).stores({"books": "++id", "notes": "++id"})
        database.version(2).stores({"books": "++id, author", "notes": None})

        assert database.effective_schema(1) == {"books": "++id", "notes": "++id"}
        assert database.effective_schema() == {"books": "++id, author"}

    @pytest.mark.asyncio
    async def test_upgrade_keeps_rows_and_adds_index(self, settings):
        first = Database("library", settings)
        first.version(1).stores({"books": "++id, title"})
        first.open()
        await first.table("books").put({"title": "The Hobbit", "author": "JRRT"})
        first.close()

        second = Database("library", settings)
        second.version(1).stores({"books": "++id, title"})
        second.version(2).stores({"books": "++id, title, author"})
        second.open()

        books = second.table("books")
        assert await books.count() == 1
        found = await books.where("author").equals("JRRT").to_array()
        assert [b["title"] for b in found] == ["The Hobbit"]
        await second.delete()

    @pytest.mark.asyncio
    async def test_primary_key_change_refused(self, settings):
        first = Database("library", settings)
        first.version(1).stores({"books": "++id, title"})
        first.open()
        first.close()

        second = Database("library", settings)
        second.version(2).stores({"books": "&isbn, title"})

        with pytest.raises(UpgradeError):
            second.open()
        assert not second.is_open()
        assert second.verno == 2
        assert Database("library", settings).verno == 1
        await first.delete()

    @pytest.mark.asyncio
    async def test_unique_index_on_duplicates_refused(self, settings):
        first = Database("library", settings)
        first.version(1).stores({"books": "++id"})
        first.open()
        await first.table("books").bulk_put([{"isbn": "1"}, {"isbn": "1"}])
        first.close()

        second = Database("library", settings)
        second.version(2).stores({"books": "++id, &isbn"})

        with pytest.raises(UpgradeError):
            second.open()
        await first.delete()

    @pytest.mark.asyncio
    async def test_dropped_table(self, settings):
        database = Database("library", settings)
        database.version(1).stores({"books": "++id", "notes": "++id"})
        database.version(2).stores({"notes": None})
        database.open()

        with pytest.raises(StorageFailure, match="does not exist"):
            database.table("notes")
        await database.delete()

    @pytest.mark.asyncio
    async def test_delete_removes_file(self, settings):
        database = Database("library", settings)
        database.version(1).stores({"books": "++id"})
        database.open()
        path = database.path

        await database.delete()

        assert not path.exists()
        assert not database.is_open()


class TestTable:
    """Tests for table CRUD."""

    @pytest.mark.asyncio
    async def test_incremental_keys(self, db):
        books = db.table("books")

        keys = await books.bulk_put(
            [{"title": "The Hobbit", "author": "JRRT"}, {"title": "Fire & Blood", "author": "GRRM"}]
        )

        assert keys == [1, 2]
        assert (await books.get(2))["id"] == 2

    @pytest.mark.asyncio
    async def test_explicit_key_moves_sequence(self, db):
        books = db.table("books")

        await books.put({"id": 10, "title": "Silmarillion"})
        key = await books.put({"title": "Unfinished Tales"})

        assert key == 11

    @pytest.mark.asyncio
    async def test_put_existing_key_updates(self, db):
        books = db.table("books")
        key = await books.put({"title": "The Hobit"})

        await books.put({"id": key, "title": "The Hobbit"})

        assert await books.count() == 1
        assert (await books.get(key))["title"] == "The Hobbit"

    @pytest.mark.asyncio
    async def test_get_missing(self, db):
        assert await db.table("books").get(99) is None

    @pytest.mark.asyncio
    async def test_invalid_key(self, db):
        with pytest.raises(DataError):
            await db.table("books").get(None)

    @pytest.mark.asyncio
    async def test_compound_key(self, db):
        people = db.table("people")

        key = await people.put({"firstName": "Gandalf", "lastName": "Grey", "email": "g@shire"})

        assert key == ["Gandalf", "Grey"]
        assert (await people.get(("Gandalf", "Grey")))["email"] == "g@shire"
        assert await people.to_collection().primary_keys() == [["Gandalf", "Grey"]]

    @pytest.mark.asyncio
    async def test_missing_compound_member(self, db):
        with pytest.raises(DataError, match="compound key"):
            await db.table("people").put({"firstName": "Gimli"})

    @pytest.mark.asyncio
    async def test_unique_violation(self, db):
        people = db.table("people")
        await people.put({"firstName": "Gandalf", "lastName": "Grey", "email": "g@shire"})

        with pytest.raises(ConstraintError) as exc_info:
            await people.put({"firstName": "Gandalf", "lastName": "White", "email": "g@shire"})

        assert exc_info.value.table == "people"
        assert await people.count() == 1

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, db):
        books = db.table("books")
        await books.bulk_put([{"title": "A"}, {"title": "B"}, {"title": "C"}])

        await books.delete(2)
        await books.delete(2)
        assert await books.to_collection().primary_keys() == [1, 3]

        await books.clear()
        assert await books.count() == 0

    @pytest.mark.asyncio
    async def test_map_to_class(self, db):
        class Book:
            pass

        books = db.table("books")
        books.map_to_class(Book)
        await books.put({"title": "The Hobbit"})

        book = await books.get(1)

        assert isinstance(book, Book)
        assert book.title == "The Hobbit"

    @pytest.mark.asyncio
    async def test_closed_database(self, settings):
        database = Database("library", settings)
        database.version(1).stores({"books": "++id"})

        with pytest.raises(DatabaseClosedError):
            database.table("books")


class TestCollections:
    """Tests for index lookups and filters."""

    @pytest_asyncio.fixture
    async def books(self, db):
        table = db.table("books")
        await table.bulk_put(
            [
                {"title": "The Hobbit", "author": "JRRT"},
                {"title": "A Game of Thrones", "author": "GRRM"},
                {"title": "The Silmarillion", "author": "JRRT"},
                {"title": "Untitled"},
            ]
        )
        return table

    @pytest.mark.asyncio
    async def test_equals(self, books):
        found = await books.where("author").equals("JRRT").to_array()

        assert [b["title"] for b in found] == ["The Hobbit", "The Silmarillion"]

    @pytest.mark.asyncio
    async def test_not_equal_skips_missing(self, books):
        """Documents without the property are not in the index."""
        found = await books.where("author").not_equal("JRRT").to_array()

        assert [b["title"] for b in found] == ["A Game of Thrones"]

    @pytest.mark.asyncio
    async def test_primary_key_lookup(self, books):
        assert await books.where("id").equals(3).primary_keys() == [3]

    @pytest.mark.asyncio
    async def test_and_filter(self, books):
        collection = books.where("author").equals("JRRT").and_(lambda b: "Hobbit" in b["title"])

        assert await collection.count() == 1

    @pytest.mark.asyncio
    async def test_or(self, books):
        collection = books.where("author").equals("GRRM").or_("title").equals("The Hobbit")

        assert await collection.primary_keys() == [1, 2]

    @pytest.mark.asyncio
    async def test_filter_full_scan(self, books):
        found = await books.filter(lambda b: "author" not in b).to_array()

        assert [b["title"] for b in found] == ["Untitled"]

    @pytest.mark.asyncio
    async def test_not_indexed(self, books):
        with pytest.raises(NotIndexedError) as exc_info:
            books.where("year")

        assert exc_info.value.property_name == "year"
        assert exc_info.value.code == "NOT_INDEXED"

    @pytest.mark.asyncio
    async def test_compound_lookup(self, db):
        people = db.table("people")
        await people.bulk_put(
            [
                {"firstName": "Gandalf", "lastName": "Grey", "age": 2000},
                {"firstName": "Gandalf", "lastName": "White", "age": 2000},
            ]
        )

        found = await people.where("[firstName+lastName]").equals(["Gandalf", "White"]).to_array()

        assert [p["lastName"] for p in found] == ["White"]


class TestTransactions:
    """Tests for transactions and the change feed."""

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, db):
        with pytest.raises(RuntimeError):
            async with db.transaction("rw", "books") as tx:
                await tx.table("books").put({"title": "The Hobbit"})
                raise RuntimeError("abort")

        assert await db.table("books").count() == 0

    @pytest.mark.asyncio
    async def test_read_only_transaction(self, db):
        async with db.transaction("r", "books") as tx:
            with pytest.raises(StorageFailure, match="read-only"):
                await tx.table("books").put({"title": "The Hobbit"})

    @pytest.mark.asyncio
    async def test_table_outside_scope(self, db):
        async with db.transaction("r", "books") as tx:
            with pytest.raises(StorageFailure, match="not part of the transaction"):
                tx.table("people")

    @pytest.mark.asyncio
    async def test_invalid_mode(self, db):
        with pytest.raises(ValueError):
            async with db.transaction("w", "books"):
                pass

    @pytest.mark.asyncio
    async def test_changes_after_commit(self, db):
        """Listeners get committed changes with their source."""
        received = []
        db.on_changes(received.extend)

        async with db.transaction("rw", "books") as tx:
            tx.source = "importer"
            books = tx.table("books")
            await books.put({"title": "The Hobit"})
            await books.put({"id": 1, "title": "The Hobbit"})
            await books.delete(1)

        assert [c.type for c in received] == [ChangeType.CREATE, ChangeType.UPDATE, ChangeType.DELETE]
        assert all(c.source == "importer" for c in received)
        assert received[1].old_obj["title"] == "The Hobit"
        assert received[1].obj["title"] == "The Hobbit"
        assert received[2].obj is None

    @pytest.mark.asyncio
    async def test_rolled_back_changes_not_delivered(self, db):
        received = []
        db.on_changes(received.extend)

        with pytest.raises(RuntimeError):
            async with db.transaction("rw", "books") as tx:
                await tx.table("books").put({"title": "The Hobbit"})
                raise RuntimeError("abort")

        assert received == []

    @pytest.mark.asyncio
    async def test_async_listener(self, db):
        received = []

        async def listener(changes):
            received.extend(changes)

        db.on_changes(listener)
        await db.table("books").put({"title": "The Hobbit"})

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, db):
        received = []
        subscription = db.on_changes(received.extend)

        subscription.unsubscribe()
        await db.table("books").put({"title": "The Hobbit"})

        assert received == []

    @pytest.mark.asyncio
    async def test_changes_from_other_connection(self, db, settings):
        """A second Database on the same file sees writes after a poll."""
        other = Database("library", settings)
        other.version(1).stores({"books": "++id, title, author"})
        other.open()
        received = []
        other.on_changes(received.extend)

        await db.table("books").put({"title": "The Hobbit"})
        delivered = await other.poll_changes()

        assert delivered == 1
        assert received[0].key == 1
        other.close()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_change_log_trimmed(self, settings):
        small = settings.model_copy(update={"change_log_limit": 2})
        database = Database("trimmed", small)
        database.version(1).stores({"books": "++id"})
        database.open()

        await database.table("books").bulk_put([{"n": i} for i in range(5)])

        conn = sqlite3.connect(str(database.path))
        try:
            count = conn.execute("SELECT COUNT(*) FROM _docrepo_changes").fetchone()[0]
        finally:
            conn.close()
        assert count == 2
        await database.delete()

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back(self, db):
        """A failing COMMIT leaves no open transaction behind."""

        class FailingCommit:
            def __init__(self, conn):
                self._conn = conn
                self.failures = 1

            def execute(self, sql, *args):
                if sql == "COMMIT" and self.failures:
                    self.failures -= 1
                    raise sqlite3.OperationalError("disk I/O error")
                return self._conn.execute(sql, *args)

            def __getattr__(self, name):
                return getattr(self._conn, name)

        db._conn = FailingCommit(db._conn)
        books = db.table("books")

        with pytest.raises(StorageFailure):
            await books.put({"title": "The Hobbit"})

        assert not db._conn.in_transaction
        assert await books.count() == 0
        await books.put({"title": "The Silmarillion"})
        assert await books.count() == 1

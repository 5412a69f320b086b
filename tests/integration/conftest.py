"""
Repository test fixtures.

Every test gets its own data directory and a DatabaseAccess on a fresh
database file. The background change poller is slowed down so tests
decide when changes from other Database objects are picked up.
"""

import tempfile

import pytest
import pytest_asyncio

from docrepo.config import StoreSettings
from docrepo.store.access import DatabaseAccess


@pytest.fixture
def settings():
    """Settings pointing at a temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield StoreSettings(data_dir=tmpdir, change_poll_interval=60.0)


@pytest_asyncio.fixture
async def access(settings):
    """Access handle on the "test" database, deleted afterwards."""
    handle = DatabaseAccess.get("test", settings)
    yield handle
    await handle.db.delete()


@pytest_asyncio.fixture
async def other_access(settings):
    """Second, independent access handle on the same database file."""
    handle = DatabaseAccess.get("test", settings)
    yield handle
    await handle.db.delete()

"""
Storage access handle for repositories.

A DatabaseAccess wraps the Database that one or more repositories share.
The caller creates it and passes it to every repository of the logical
database; there is no process-wide instance.

Invariants:
    - One DatabaseAccess (and so one Database) per logical database per
      process; two handles on the same file behave like two browser tabs
      and see each other's writes only through the change feed
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from ..config import StoreSettings
from .database import Database


class DatabaseAccess:
    """Caller-held handle on a Database.

    Example:
        >>> access = DatabaseAccess.get("library", StoreSettings(data_dir="/tmp/lib"))
        >>> books = Repository(access, Book, "books")
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    @classmethod
    def get(
        cls,
        name: str,
        settings: Optional[StoreSettings] = None,
        path: Optional[str | Path] = None,
    ) -> DatabaseAccess:
        """Create a handle on a new Database object for name."""
        return cls(Database(name, settings=settings, path=path))

"""
Storage engine for docrepo.

A versioned, transactional document store on SQLite:
- Database: version declarations, open/close/delete, transactions
- Table / Collection: CRUD, index lookups and predicate filters
- Change feed: committed changes with their transaction source tag
- DatabaseAccess: caller-held handle shared by repositories

Invariants:
    - Every operation runs in one all-or-nothing transaction
    - Storage errors surface as StorageFailure subclasses
"""

from .access import DatabaseAccess
from .base import ChangeRecord, ChangeType, Subscription, TransactionMode
from .codec import from_document, to_document
from .database import Database, Transaction, Version
from .table import Collection, Table, WhereClause

__all__ = [
    "DatabaseAccess",
    "Database",
    "Version",
    "Transaction",
    "Table",
    "Collection",
    "WhereClause",
    "ChangeRecord",
    "ChangeType",
    "Subscription",
    "TransactionMode",
    "to_document",
    "from_document",
]

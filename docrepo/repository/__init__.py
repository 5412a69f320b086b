"""
Repository module for docrepo.

Typed repositories over storage engine tables:
- MappingRepository / Repository: async CRUD with value mapping
- DBQuery: single-use query builder
- EventStream of RepositoryEvents for changes made elsewhere

Invariants:
    - A repository never sees its own writes on events()
    - Mapper results may be plain values or awaitables
"""

from .events import EventStream, RepositoryEvent, RepositoryEventType
from .mapper import NoopRepositoryMapper, RepositoryMapper, resolve
from .mapping import MappingRepository, Repository, RepositoryProtocol
from .query import DBQuery

__all__ = [
    "MappingRepository",
    "Repository",
    "RepositoryProtocol",
    "RepositoryMapper",
    "NoopRepositoryMapper",
    "resolve",
    "DBQuery",
    "EventStream",
    "RepositoryEvent",
    "RepositoryEventType",
]

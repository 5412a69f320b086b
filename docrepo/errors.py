"""
Error types for docrepo.

This module defines all exception types raised by the library:
- DocRepoError: Base exception
- DeclarationError: Conflicting key annotations on an entity type
- SchemaError: No primary key for a resolved schema version
- StorageFailure: Any failure from the storage engine
- QueryConsumedError: Query builder reused after find()

Invariants:
    - All errors inherit from DocRepoError
    - Declaration and schema errors are raised synchronously, before any I/O
    - Storage failures are scoped to the single operation that hit them
    - A missing record is never an error (find_by_id returns None)
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class DocRepoError(Exception):
    """Base exception for all docrepo errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCREPO_ERROR"
        self.details = details or {}


class DeclarationError(DocRepoError):
    """Entity type declares conflicting key annotations.

    Raised when:
    - A second primary key kind is declared (e.g. id after incremental id)
    - A second id or incremental id field is declared
    """

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        field_name: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="DECLARATION_ERROR",
            details={"entity_type": entity_type, "field": field_name},
        )
        self.entity_type = entity_type
        self.field_name = field_name


class SchemaError(DocRepoError):
    """Table schema cannot be derived for an entity type.

    Raised when:
    - The entity type has no annotations at all
    - No primary key field is visible at one of the resolved versions
    """

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        version: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="SCHEMA_ERROR",
            details={"entity_type": entity_type, "version": version},
        )
        self.entity_type = entity_type
        self.version = version


class StorageFailure(DocRepoError):
    """The storage engine failed to carry out an operation."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        code: str = "STORAGE_FAILURE",
    ) -> None:
        super().__init__(message, code=code, details={"table": table})
        self.table = table


class ConstraintError(StorageFailure):
    """A unique index or primary key constraint was violated."""

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        super().__init__(message, table=table, code="CONSTRAINT_ERROR")


class DataError(StorageFailure):
    """A document or key cannot be stored.

    Raised when:
    - The primary key value is missing from a document
    - A document is not JSON serializable
    """

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        super().__init__(message, table=table, code="DATA_ERROR")


class DatabaseClosedError(StorageFailure):
    """Operation attempted on a database that is not open."""

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        super().__init__(message, table=table, code="DATABASE_CLOSED")


class UpgradeError(StorageFailure):
    """A declared schema version cannot be applied to the stored data."""

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        super().__init__(message, table=table, code="UPGRADE_ERROR")


class NotIndexedError(StorageFailure):
    """A lookup was seeded on a property the table does not index."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        property_name: Optional[str] = None,
    ) -> None:
        super().__init__(message, table=table, code="NOT_INDEXED")
        self.property_name = property_name
        self.details["property"] = property_name


class QueryConsumedError(DocRepoError):
    """A query builder was used again after find() consumed it."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="QUERY_CONSUMED")

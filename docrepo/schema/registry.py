"""
Metadata provider for docrepo.

The MetadataProvider associates entity model types with their field
annotations. Repositories read from it when they derive table schemas.
It provides:
- Registration of whole entity declarations
- Incremental annotation of a model type, one annotation at a time
- Lookup by model type

Invariants:
    - One declaration per model type
    - Key annotation conflicts are rejected when declared
    - Repositories only read from the provider

Example:
    >>> provider = MetadataProvider()
    >>> provider.annotate(Book, incremental_id("id"))
    >>> provider.annotate(Book, indexed("author"))
    >>> provider.get(Book).annotations
    (FieldAnnotation(field='id', ...), FieldAnnotation(field='author', ...))
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from typing import Optional, TypeVar
import logging

from ..errors import DeclarationError
from .types import EntityDef, FieldAnnotation

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=type)

# Default provider used by the @entity decorator
_default_provider: Optional[MetadataProvider] = None
_provider_lock = threading.Lock()


class MetadataProvider:
    """Registry of entity declarations keyed by model type.

    Thread-safety:
        Registration is thread-safe (uses internal lock).

    Example:
        >>> provider = MetadataProvider()
        >>> provider.register(EntityDef(model=User, annotations=(id_field("email"),)))
        >>> provider.get(User)
        EntityDef(model=<class 'User'>, ...)
    """

    def __init__(self) -> None:
        """Initialize an empty provider."""
        self._entities: dict[type, EntityDef] = {}
        self._lock = threading.Lock()

    def register(self, entity: EntityDef) -> None:
        """Register a complete entity declaration.

        Args:
            entity: The declaration to register

        Raises:
            DeclarationError: If the model type is already declared
        """
        with self._lock:
            if entity.model in self._entities:
                raise DeclarationError(
                    f"{entity.name} is already declared",
                    entity_type=entity.name,
                )
            self._entities[entity.model] = entity
            logger.debug(
                f"Registered entity: {entity.name} "
                f"({len(entity.annotations)} annotations)"
            )

    def annotate(self, model: type, annotation: FieldAnnotation) -> EntityDef:
        """Add one annotation to a model type.

        Args:
            model: The model type
            annotation: The annotation to add

        Returns:
            The updated declaration

        Raises:
            DeclarationError: If the annotation conflicts with a declared one
        """
        with self._lock:
            current = self._entities.get(model) or EntityDef(model=model)
            updated = current.with_annotation(annotation)
            self._entities[model] = updated
            return updated

    def get(self, model: type | EntityDef) -> Optional[EntityDef]:
        """Get the declaration of a model type.

        An EntityDef passed in is returned unchanged, so callers can hand a
        declaration to a repository without registering it.
        """
        if isinstance(model, EntityDef):
            return model
        return self._entities.get(model)

    def entities(self) -> Iterator[EntityDef]:
        """Iterate over all declarations."""
        yield from self._entities.values()

    def __contains__(self, model: object) -> bool:
        return model in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    def to_dict(self) -> dict:
        """Convert provider to dictionary representation, sorted by model name."""
        return {
            "entities": [
                e.to_dict() for e in sorted(self._entities.values(), key=lambda e: e.name)
            ]
        }


def get_metadata_provider() -> MetadataProvider:
    """Get the default metadata provider.

    Creates a new provider if none exists.
    """
    global _default_provider
    with _provider_lock:
        if _default_provider is None:
            _default_provider = MetadataProvider()
        return _default_provider


def reset_metadata_provider() -> None:
    """Reset the default provider (for testing only)."""
    global _default_provider
    with _provider_lock:
        _default_provider = None


def entity(
    *annotations: FieldAnnotation,
    metadata: Optional[MetadataProvider] = None,
) -> Callable[[T], T]:
    """Class decorator declaring the annotations of a model type.

    Annotations are declared in the order given, so a conflict is reported
    on the first offending annotation.

    Example:
        >>> @entity(incremental_id("id"), indexed("title"), indexed("author"))
        ... class Book(BaseModel):
        ...     id: int | None = None
        ...     title: str
        ...     author: str
    """

    def decorate(model: T) -> T:
        provider = metadata if metadata is not None else get_metadata_provider()
        for annotation in annotations:
            provider.annotate(model, annotation)
        return model

    return decorate

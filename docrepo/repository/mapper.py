"""
Mapping between repository values and stored models.

A repository stores MODELs and hands out VALUEs. A RepositoryMapper
converts between the two, in either direction, synchronously or
asynchronously. Callers always go through resolve(), so both styles
look the same to the repository.

Invariants:
    - A mapper must not change the primary key of what it converts
    - resolve() only awaits real awaitables; a plain return value is used
      as is, without yielding to the event loop
"""

from __future__ import annotations

import inspect
from abc import abstractmethod
from collections.abc import Awaitable
from typing import Protocol, TypeVar, Union, runtime_checkable

T = TypeVar("T")
VALUE = TypeVar("VALUE")
MODEL = TypeVar("MODEL")

MaybeAwaitable = Union[T, Awaitable[T]]


async def resolve(result: MaybeAwaitable[T]) -> T:
    """Get the result of a mapper call that may or may not be awaitable."""
    if inspect.isawaitable(result):
        return await result
    return result


@runtime_checkable
class RepositoryMapper(Protocol[VALUE, MODEL]):
    """Protocol for value/model converters.

    Example:
        >>> class PersonMapper:
        ...     def to_database_model(self, value: Person) -> PersonRecord:
        ...         return PersonRecord(**value.model_dump())
        ...
        ...     async def from_database_model(self, model: PersonRecord) -> Person:
        ...         return Person(**model.model_dump())
    """

    @abstractmethod
    def to_database_model(self, value: VALUE) -> MaybeAwaitable[MODEL]:
        """Convert a value to the model that is stored."""
        ...

    @abstractmethod
    def from_database_model(self, model: MODEL) -> MaybeAwaitable[VALUE]:
        """Convert a stored model back to a value."""
        ...


class NoopRepositoryMapper:
    """Mapper for repositories whose values are their stored models."""

    def to_database_model(self, value):
        return value

    def from_database_model(self, model):
        return model

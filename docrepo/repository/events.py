"""
Repository change events.

A repository republishes committed changes of its table as typed
RepositoryEvents on an EventStream. The stream is multicast: every
subscriber gets every event emitted after it subscribed. Nothing is
replayed and nothing is persisted.

Invariants:
    - Events are emitted in change log order
    - A subscriber receives an event at most once
    - The stream only completes when its repository is closed
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar
import logging

from ..store.base import ChangeType, Subscription

logger = logging.getLogger(__name__)

E = TypeVar("E")

_COMPLETE = object()


class RepositoryEventType(Enum):
    """Kind of change a repository event reports."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def from_change_type(cls, change_type: ChangeType) -> RepositoryEventType:
        return {
            ChangeType.CREATE: cls.CREATE,
            ChangeType.UPDATE: cls.UPDATE,
            ChangeType.DELETE: cls.DELETE,
        }[change_type]


@dataclass(frozen=True)
class RepositoryEvent:
    """A change to a repository made outside this repository instance.

    Attributes:
        type: Create, update or delete
        key: Primary key of the changed record
        new_value: Value after the change (None for deletes)
        previous_value: Value before the change (None for creates)
    """

    type: RepositoryEventType
    key: Any
    new_value: Any = None
    previous_value: Any = None


class EventStream(Generic[E]):
    """Multicast stream of events.

    Consume it with callbacks or with ``async for``:

        >>> subscription = repo.events().subscribe(print)
        >>> async for event in repo.events():
        ...     handle(event)

    Delivery has no back-pressure; async iterators buffer without limit.
    """

    def __init__(self) -> None:
        self._callbacks: list[tuple[Callable[[E], None], Optional[Callable[[], None]]]] = []
        self._queues: list[asyncio.Queue] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(
        self,
        on_event: Callable[[E], None],
        on_complete: Optional[Callable[[], None]] = None,
    ) -> Subscription:
        """Call on_event for every event emitted from now on."""
        entry = (on_event, on_complete)
        if self._closed:
            if on_complete is not None:
                on_complete()
            return Subscription(lambda: None)
        self._callbacks.append(entry)

        def remove() -> None:
            if entry in self._callbacks:
                self._callbacks.remove(entry)

        return Subscription(remove)

    def emit(self, event: E) -> None:
        """Deliver an event to every current subscriber."""
        if self._closed:
            return
        for on_event, _ in list(self._callbacks):
            try:
                on_event(event)
            except Exception:
                logger.exception("Event subscriber failed")
        for queue in self._queues:
            queue.put_nowait(event)

    def close(self) -> None:
        """Complete the stream. Later emits are ignored."""
        if self._closed:
            return
        self._closed = True
        callbacks, self._callbacks = self._callbacks, []
        for _, on_complete in callbacks:
            if on_complete is not None:
                on_complete()
        for queue in self._queues:
            queue.put_nowait(_COMPLETE)

    def __aiter__(self) -> AsyncIterator[E]:
        queue: asyncio.Queue = asyncio.Queue()
        if self._closed:
            queue.put_nowait(_COMPLETE)
        else:
            self._queues.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue) -> AsyncIterator[E]:
        try:
            while True:
                event = await queue.get()
                if event is _COMPLETE:
                    return
                yield event
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

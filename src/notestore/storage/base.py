"""Base class for storage backends."""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, List, Optional, Sequence, TypeVar

from notestore.exceptions import BackendTimeoutError
from notestore.models.schema import Document, Entity, EntityKind

T = TypeVar("T")


class StorageBackend(ABC):
    """Durable storage for the four entity kinds.

    Every method is a coroutine and yields to the event loop, whatever the
    medium underneath. Callers never need to know which implementation is
    active; ``name`` is informational only.
    """

    name: str = "abstract"

    @abstractmethod
    async def read_all(self, kind: EntityKind) -> List[Entity]:
        """Return every entity of a kind (order is not significant).

        Singleton kinds return a one-element list.
        """
        pass

    @abstractmethod
    async def read_one(self, kind: EntityKind, entity_id: Optional[str] = None) -> Optional[Entity]:
        """Return one entity, or None when it does not exist.

        ``entity_id`` is ignored for singleton kinds.
        """
        pass

    @abstractmethod
    async def write_document(self, doc: Document) -> None:
        """Persist one document (the unit of debouncing)."""
        pass

    @abstractmethod
    async def write_all(self, kind: EntityKind, entities: Sequence[Entity]) -> None:
        """Replace every entity of a kind; entities not in ``entities`` are removed."""
        pass

    @abstractmethod
    async def delete_one(self, kind: EntityKind, entity_id: str) -> Optional[str]:
        """Physically remove one entity.

        Returns:
            The location of a recoverable copy when the backend keeps one,
            otherwise None.
        """
        pass

    async def close(self) -> None:
        """Release resources held by the backend."""
        return None


async def call_with_timeout(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    operation: str,
    entity_id: Optional[str] = None,
) -> T:
    """Await a backend call, raising BackendTimeoutError past ``timeout`` seconds.

    A timeout of None or 0 waits indefinitely.
    """
    if not timeout:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise BackendTimeoutError(operation, timeout, entity_id=entity_id) from e

"""Bookkeeping of the sessions currently attached to the relay."""
from __future__ import annotations

import logging
from typing import Dict, Iterator, Optional, Tuple

from tagrelay.models import Connection

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Live connections keyed by id.

    All mutation happens on the event loop thread, so there is no lock.
    Both ``register`` and ``unregister`` are idempotent.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}

    def register(self, connection: Connection) -> bool:
        if connection.id in self._connections:
            logger.debug("register ignored, %s already present", connection.id)
            return False
        self._connections[connection.id] = connection
        return True

    def unregister(self, connection_id: str) -> Optional[Connection]:
        return self._connections.pop(connection_id, None)

    def members(self) -> Tuple[str, ...]:
        """Snapshot of ids; may be stale by the time it is iterated."""
        return tuple(self._connections)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))


__all__ = ["ConnectionRegistry"]

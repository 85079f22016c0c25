from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol
import logging

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Anything able to deliver a named event to one remote peer."""

    async def send(self, event: str, data: Any) -> None:  # pragma: no cover - protocol
        ...


@dataclass
class Connection:
    """One live transport session, registered by id.

    ``transport`` is owned by whoever accepted the session; the relay only
    ever calls ``send`` on it.
    """
    id: str
    transport: Transport
    remote_address: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    async def send(self, event: str, data: Any) -> None:
        logger.debug("send %s -> %s", event, self.id)
        await self.transport.send(event, data)

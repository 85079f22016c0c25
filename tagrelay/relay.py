"""Relay core: stamps submitted tag events and fans them out."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from tagrelay import protocol
from tagrelay.config import BroadcastMode
from tagrelay.metrics import MetricsLogger, record
from tagrelay.models import Connection, TaggedEvent
from tagrelay.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class RelayCore:
    """Receive events from any connection and forward them to the others.

    Nothing is stored once a submit returns: late joiners never see earlier
    events. Delivery is best effort; a recipient whose send fails is skipped
    without affecting anybody else.
    """

    def __init__(
        self,
        *,
        registry: Optional[ConnectionRegistry] = None,
        broadcast_mode: BroadcastMode | str = BroadcastMode.ALL,
        server_info: Optional[Dict[str, str]] = None,
        metrics: Optional[MetricsLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        message_id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.broadcast_mode = BroadcastMode.parse(broadcast_mode)
        self.server_info = dict(server_info or {})
        self.metrics = metrics
        self._clock = clock or protocol.utc_now
        self._new_message_id = message_id_factory or protocol.new_message_id

    def now(self) -> str:
        return protocol.iso_timestamp(self._clock())

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self, connection: Connection) -> bool:
        """Register ``connection`` and greet it with ``connection_ack``."""
        if not self.registry.register(connection):
            return False
        logger.info(
            "Client connected: %s from %s (%d connected)",
            connection.id,
            connection.remote_address,
            len(self.registry),
        )
        record(self.metrics, "connect", connection=connection.id, status="ok",
               value=float(len(self.registry)), extra={"address": connection.remote_address})
        await self.deliver(
            connection,
            protocol.CONNECTION_ACK,
            {
                "status": "connected",
                "id": connection.id,
                "serverTime": self.now(),
                "serverInfo": dict(self.server_info),
            },
        )
        return True

    def disconnect(self, connection_id: str, reason: str = protocol.TRANSPORT_CLOSE) -> bool:
        """Unregister ``connection_id``; repeated calls are no-ops."""
        removed = self.registry.unregister(connection_id)
        if removed is None:
            return False
        logger.info("Client disconnected: %s (%s, %d connected)", connection_id, reason, len(self.registry))
        record(self.metrics, "disconnect", connection=connection_id, status="ok",
               value=float(len(self.registry)), message=reason)
        return True

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------
    def targets(self, source_id: str) -> List[str]:
        members: Iterable[str] = self.registry.members()
        if self.broadcast_mode is BroadcastMode.OTHERS:
            return [member for member in members if member != source_id]
        return list(members)

    async def submit(self, source_id: str, payload: Any) -> Tuple[str, str]:
        """Relay ``payload`` from ``source_id`` and acknowledge it.

        The payload is not validated. Returns ``(server_timestamp, message_id)``.
        If the source is already gone the broadcast still happens and only the
        acknowledgment is dropped.
        """
        event = TaggedEvent(
            payload=payload,
            source_connection_id=source_id,
            server_timestamp=self.now(),
            message_id=self._new_message_id(),
        )
        if source_id not in self.registry:
            logger.debug("submit from unregistered connection %s", source_id)
        logger.info("Received NFC data from %s at %s", source_id, event.server_timestamp)

        delivered = await self.broadcast(protocol.NFC_DATA_RECEIVED, event.broadcast(), self.targets(source_id))
        record(self.metrics, "relay", connection=source_id, status="ok",
               value=float(delivered), extra={"messageId": event.message_id})

        source = self.registry.get(source_id)
        acked = source is not None and await self.deliver(source, protocol.NFC_DATA_ACK, event.acknowledgment())
        if not acked:
            record(self.metrics, "ack_dropped", connection=source_id, status="dropped",
                   extra={"messageId": event.message_id})
        return event.server_timestamp, event.message_id

    async def broadcast(self, event: str, data: Any, recipients: Iterable[str]) -> int:
        """Send to every recipient still registered; returns the delivered count."""
        connections = [conn for conn in map(self.registry.get, recipients) if conn is not None]
        if not connections:
            return 0
        results = await asyncio.gather(*(self.deliver(conn, event, data) for conn in connections))
        return sum(1 for ok in results if ok)

    def ping(self, connection_id: str) -> Dict[str, str]:
        return {"serverTime": self.now(), "clientId": connection_id}

    async def deliver(self, connection: Connection, event: str, data: Any) -> bool:
        try:
            await connection.send(event, data)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Dropped %s to %s: %s", event, connection.id, exc)
            return False
        return True


__all__ = ["RelayCore"]

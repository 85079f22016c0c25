"""Wire format shared by the relay server and its clients.

Every WebSocket text frame carries one JSON envelope::

    {"event": "<name>", "data": <payload>}

``data`` may be omitted for events without a body (``ping``).
"""
from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

CONNECTION_ACK = "connection_ack"
NFC_DATA = "nfcData"
NFC_DATA_RECEIVED = "nfcDataReceived"
NFC_DATA_ACK = "nfcDataAck"
PING = "ping"
PONG = "pong"

# Local lifecycle events raised by the client session, never sent on the wire.
CONNECT = "connect"
DISCONNECT = "disconnect"
CONNECT_ERROR = "connect_error"
RECONNECT_ATTEMPT = "reconnect_attempt"

# Disconnect reasons, named after the socket.io strings the mobile app checks.
SERVER_DISCONNECT = "io server disconnect"
TRANSPORT_CLOSE = "transport close"
TRANSPORT_ERROR = "transport error"
CLIENT_DISCONNECT = "client namespace disconnect"


class ProtocolError(ValueError):
    """Raised when a frame is not a valid event envelope."""


@dataclass(slots=True)
class Envelope:
    event: str
    data: Any = None

    def encode(self) -> str:
        payload = {"event": self.event}
        if self.data is not None:
            payload["data"] = self.data
        return json.dumps(payload, separators=(",", ":"), default=str)


def encode(event: str, data: Any = None) -> str:
    return Envelope(event, data).encode()


def decode(raw: str | bytes) -> Envelope:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"frame is not UTF-8: {exc}") from exc
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"frame is not JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise ProtocolError("frame must be a JSON object")
    event = message.get("event")
    if not isinstance(event, str) or not event:
        raise ProtocolError("frame is missing an event name")
    return Envelope(event, message.get("data"))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(dt: Optional[datetime] = None) -> str:
    """Millisecond ISO-8601 in UTC with a ``Z`` suffix, as JavaScript prints it."""
    dt = dt or utc_now()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    text = dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def new_message_id() -> str:
    # Short random token; uniqueness is statistical only.
    return secrets.token_urlsafe(8)


def new_connection_id() -> str:
    return secrets.token_urlsafe(15)


__all__ = [
    "CONNECTION_ACK",
    "NFC_DATA",
    "NFC_DATA_RECEIVED",
    "NFC_DATA_ACK",
    "PING",
    "PONG",
    "CONNECT",
    "DISCONNECT",
    "CONNECT_ERROR",
    "RECONNECT_ATTEMPT",
    "SERVER_DISCONNECT",
    "TRANSPORT_CLOSE",
    "TRANSPORT_ERROR",
    "CLIENT_DISCONNECT",
    "Envelope",
    "ProtocolError",
    "encode",
    "decode",
    "utc_now",
    "iso_timestamp",
    "new_message_id",
    "new_connection_id",
]

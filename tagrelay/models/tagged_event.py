from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Mapping


@dataclass(frozen=True)
class TaggedEvent:
    """A single relayed payload, alive only for the duration of one submit."""
    payload: Any
    source_connection_id: str
    server_timestamp: str
    message_id: str

    def broadcast(self) -> Dict[str, Any]:
        """Body of the copy fanned out to recipients (no message id)."""
        if isinstance(self.payload, Mapping):
            body: Dict[str, Any] = dict(self.payload)
        else:
            body = {"tagData": self.payload}
        body["timestamp"] = self.server_timestamp
        body["sourceClientId"] = self.source_connection_id
        return body

    def acknowledgment(self) -> Dict[str, Any]:
        return {
            "received": True,
            "timestamp": self.server_timestamp,
            "messageId": self.message_id,
        }

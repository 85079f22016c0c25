"""Producer side: turn tag reads into ``nfcData`` submissions."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from tagrelay import protocol
from tagrelay.client import RelaySession
from tagrelay.ndef import RecordPayload, decode_text_record, language_code

logger = logging.getLogger(__name__)

READY = "NFC Ready - Waiting for tag"
READ_OK = "Tag read successfully!"
READ_FAILED = "Error reading tag data"


class TagReader:
    """Submits decoded tag text through a session and tracks what happened.

    ``status`` is advisory text for the user; a failed read or send updates it
    and returns ``False`` rather than raising.
    """

    def __init__(self, session: RelaySession) -> None:
        self.session = session
        self.status = READY
        self.last_text: Optional[str] = None
        self.last_ack: Optional[Dict[str, Any]] = None
        self.last_language: Optional[str] = None
        self._acked = asyncio.Event()
        self._stack: Optional[contextlib.ExitStack] = None

    def start(self) -> None:
        if self._stack is not None:
            return
        stack = contextlib.ExitStack()
        stack.enter_context(self.session.subscriptions({protocol.NFC_DATA_ACK: self._on_ack}))
        self._stack = stack

    def stop(self) -> None:
        stack, self._stack = self._stack, None
        if stack is not None:
            stack.close()

    def __enter__(self) -> "TagReader":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    async def submit_text(self, text: str) -> bool:
        self.last_text = text
        self._acked.clear()
        payload = {"timestamp": protocol.iso_timestamp(), "tagData": text}
        try:
            await self.session.emit(protocol.NFC_DATA, payload)
        except Exception as exc:
            self.status = f"Error sending tag data: {exc}"
            logger.warning("Could not send tag data: %s", exc)
            return False
        self.status = READ_OK
        return True

    async def wait_for_ack(self, timeout: float) -> Optional[Dict[str, Any]]:
        """Wait for the acknowledgment of the last submission."""
        try:
            await asyncio.wait_for(self._acked.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return self.last_ack

    async def submit_record(self, payload: RecordPayload) -> bool:
        if not isinstance(payload, (bytes, bytearray)):
            payload = list(payload)
        try:
            text = decode_text_record(payload)
            self.last_language = language_code(payload)
        except ValueError as exc:
            logger.warning("Error processing tag: %s", exc)
            self.status = READ_FAILED
            return False
        logger.debug("Tag text record in language %r", self.last_language)
        return await self.submit_text(text)

    async def submit_message(self, records: Sequence[Mapping[str, Any]]) -> bool:
        """Submit the first record of an NDEF message (list of record dicts)."""
        if not records or not records[0].get("payload"):
            self.status = READ_FAILED
            return False
        return await self.submit_record(records[0]["payload"])

    def _on_ack(self, ack: Any) -> None:
        self.last_ack = dict(ack) if isinstance(ack, Mapping) else {"received": ack}
        logger.info("Server acknowledged NFC data: %s", self.last_ack.get("messageId"))
        self._acked.set()


__all__ = ["TagReader", "READY", "READ_OK", "READ_FAILED"]

"""Simulation tests for the client session using a fake websocket."""
from __future__ import annotations

import asyncio
import unittest
from typing import Any, List

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

from tagrelay import protocol
from tagrelay.client import RelaySession, socket_url
from tagrelay.liveness import LivenessMonitor


class _FakeWebSocket:
    def __init__(self, client_id: str) -> None:
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: List[Any] = []
        self.closed = False
        self.incoming.put_nowait(
            protocol.encode(
                protocol.CONNECTION_ACK,
                {"status": "connected", "id": client_id, "serverInfo": {"platform": "Local", "version": "1.0.0"}},
            )
        )

    async def recv(self) -> Any:
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, raw: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, Close(1000, ""))
        envelope = protocol.decode(raw)
        self.sent.append(envelope)
        if envelope.event == protocol.PING:
            self.incoming.put_nowait(protocol.encode(protocol.PONG, {"serverTime": "now", "clientId": "c1"}))

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(ConnectionClosedOK(None, Close(1000, "")))

    def server_close(self) -> None:
        self.incoming.put_nowait(ConnectionClosedOK(Close(1000, "shutdown"), Close(1000, "shutdown"), rcvd_then_sent=True))

    def drop(self) -> None:
        self.incoming.put_nowait(ConnectionClosedError(None, None))


class _Connector:
    def __init__(self, failures: int = 0) -> None:
        self.sockets: List[_FakeWebSocket] = []
        self.calls = 0
        self.failures = failures
        self.kwargs: List[dict] = []

    async def __call__(self, url: str, **kwargs: Any) -> _FakeWebSocket:
        self.calls += 1
        self.kwargs.append(kwargs)
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        ws = _FakeWebSocket(f"c{self.calls}")
        self.sockets.append(ws)
        return ws


async def _until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class RelaySessionSimulationTest(unittest.IsolatedAsyncioTestCase):
    def _session(self, connector: _Connector, **kwargs: Any) -> RelaySession:
        kwargs.setdefault("reconnection_delay", 0.01)
        kwargs.setdefault("reconnection_delay_max", 0.02)
        session = RelaySession("http://relay.test:3000", connector=connector, **kwargs)
        self.addAsyncCleanup(session.disconnect)
        return session

    def test_socket_url_rewrites_http_base(self) -> None:
        self.assertEqual(socket_url("http://host:3000"), "ws://host:3000/socket")
        self.assertEqual(socket_url("https://demo.glitch.me/"), "wss://demo.glitch.me/socket")
        self.assertEqual(socket_url("ws://host:9000/custom"), "ws://host:9000/custom")

    def test_backoff_is_bounded_between_one_and_five_seconds(self) -> None:
        session = RelaySession("ws://relay.test/socket")
        delays = [session.backoff(attempt) for attempt in range(1, 8)]
        self.assertEqual(delays[:4], [1.0, 2.0, 4.0, 5.0])
        self.assertTrue(all(1.0 <= delay <= 5.0 for delay in delays))

    async def test_connect_records_identity_from_connection_ack(self) -> None:
        connector = _Connector()
        session = self._session(connector)
        events: List[str] = []
        session.on(protocol.CONNECT, lambda: events.append("connect"))

        self.assertTrue(await session.connect())
        self.assertTrue(await session.connect())
        await _until(lambda: session.client_id is not None)

        self.assertEqual(connector.calls, 1)
        self.assertEqual(session.client_id, "c1")
        self.assertEqual(session.status.server_info["version"], "1.0.0")
        self.assertEqual(session.status.connection_status, "Connected")
        self.assertEqual(events, ["connect"])
        self.assertEqual(connector.kwargs[0]["open_timeout"], 20.0)

    async def test_request_resolves_with_response_event(self) -> None:
        session = self._session(_Connector())
        await session.connect()
        response = await session.request(protocol.PING, response_event=protocol.PONG, timeout=1.0)
        self.assertEqual(response["clientId"], "c1")

    async def test_emit_without_connection_raises(self) -> None:
        session = self._session(_Connector())
        with self.assertRaises(RuntimeError):
            await session.emit(protocol.NFC_DATA, {"tagData": "x"})

    async def test_transport_drop_reconnects_automatically(self) -> None:
        connector = _Connector()
        session = self._session(connector)
        reasons: List[str] = []
        attempts: List[int] = []
        session.on(protocol.DISCONNECT, reasons.append)
        session.on(protocol.RECONNECT_ATTEMPT, attempts.append)

        await session.connect()
        connector.sockets[0].drop()
        await _until(lambda: connector.calls == 2 and session.connected)

        self.assertEqual(reasons, [protocol.TRANSPORT_CLOSE])
        self.assertEqual(attempts, [1])
        self.assertEqual(session.status.connection_status, "Connected")

    async def test_server_close_is_reported_as_server_disconnect(self) -> None:
        connector = _Connector()
        session = self._session(connector, reconnection=False)
        reasons: List[str] = []
        session.on(protocol.DISCONNECT, reasons.append)

        await session.connect()
        connector.sockets[0].server_close()
        await _until(lambda: bool(reasons))

        self.assertEqual(reasons, [protocol.SERVER_DISCONNECT])
        self.assertFalse(session.connected)
        self.assertEqual(session.status.connection_status, f"Disconnected: {protocol.SERVER_DISCONNECT}")

    async def test_client_disconnect_never_reconnects(self) -> None:
        connector = _Connector()
        session = self._session(connector)
        reasons: List[str] = []
        session.on(protocol.DISCONNECT, reasons.append)

        await session.connect()
        await session.disconnect()
        await asyncio.sleep(0.05)

        self.assertEqual(reasons, [protocol.CLIENT_DISCONNECT])
        self.assertEqual(connector.calls, 1)
        self.assertFalse(session.connected)

    async def test_disconnect_after_server_close_stays_closed_under_monitor(self) -> None:
        connector = _Connector()
        session = self._session(connector, reconnection=False)
        reasons: List[str] = []
        session.on(protocol.DISCONNECT, reasons.append)

        async with LivenessMonitor(session, interval=60.0, reconnect_delay=0.05):
            await session.connect()
            connector.sockets[0].server_close()
            await _until(lambda: bool(reasons))
            await session.disconnect()
            self.assertTrue(session.closed_by_client)
            await asyncio.sleep(0.2)

        self.assertEqual(reasons, [protocol.SERVER_DISCONNECT])
        self.assertEqual(connector.calls, 1)
        self.assertFalse(session.connected)

    async def test_connect_error_keeps_retrying(self) -> None:
        connector = _Connector(failures=2)
        session = self._session(connector)
        errors: List[str] = []
        session.on(protocol.CONNECT_ERROR, errors.append)

        self.assertFalse(await session.connect())
        self.assertTrue(session.status.last_error.startswith("Connection error"))
        await _until(lambda: session.connected)

        self.assertEqual(connector.calls, 3)
        self.assertEqual(len(errors), 2)
        self.assertIsNone(session.status.last_error)

    async def test_subscriptions_are_released_on_exit(self) -> None:
        session = self._session(_Connector())
        received: List[Any] = []
        with session.subscriptions({protocol.NFC_DATA_RECEIVED: received.append}) as subs:
            self.assertEqual(len(subs), 1)
            session._dispatch(protocol.NFC_DATA_RECEIVED, {"tagData": "a"})
        session._dispatch(protocol.NFC_DATA_RECEIVED, {"tagData": "b"})
        self.assertEqual(received, [{"tagData": "a"}])

    async def test_async_listener_is_scheduled(self) -> None:
        session = self._session(_Connector())
        seen = asyncio.Event()

        async def _listener(data: Any) -> None:
            seen.set()

        session.on(protocol.NFC_DATA_RECEIVED, _listener)
        await session.connect()
        connector_ws = session._ws
        connector_ws.incoming.put_nowait(protocol.encode(protocol.NFC_DATA_RECEIVED, {"tagData": "z"}))
        await asyncio.wait_for(seen.wait(), timeout=1.0)


if __name__ == "__main__":
    unittest.main()

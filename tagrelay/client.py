"""Client session for the relay, built on top of websockets."""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Set, Union
from urllib.parse import urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed

from tagrelay import protocol

logger = logging.getLogger(__name__)

Callback = Callable[..., Union[None, Awaitable[None]]]

DEFAULT_OPEN_TIMEOUT = 20.0
DEFAULT_RECONNECTION_DELAY = 1.0
DEFAULT_RECONNECTION_DELAY_MAX = 5.0


def socket_url(base: str) -> str:
	"""Turn ``http://host:3000`` into ``ws://host:3000/socket``.

	URLs that already carry a ws scheme and a path are returned unchanged.
	"""
	parts = urlsplit(base)
	scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme or "ws")
	path = parts.path if parts.path not in ("", "/") else "/socket"
	return urlunsplit((scheme, parts.netloc, path, parts.query, parts.fragment))


@dataclass(frozen=True, slots=True)
class Subscription:
	"""Handle returned by :meth:`RelaySession.on`."""

	event: str
	token: int


@dataclass(slots=True)
class SessionStatus:
	"""What the user gets to see about the connection."""

	connected: bool = False
	connection_status: str = "Disconnected"
	last_error: Optional[str] = None
	client_id: Optional[str] = None
	server_info: Dict[str, Any] = field(default_factory=dict)


class RelaySession:
	"""One explicitly owned connection to a relay server.

	Besides sending and receiving named events the session carries the
	transport reconnection policy: unless the close was requested locally it
	keeps reconnecting forever, waiting ``reconnection_delay`` doubled per
	attempt up to ``reconnection_delay_max``.
	"""

	def __init__(
		self,
		url: str,
		*,
		reconnection: bool = True,
		reconnection_delay: float = DEFAULT_RECONNECTION_DELAY,
		reconnection_delay_max: float = DEFAULT_RECONNECTION_DELAY_MAX,
		open_timeout: float = DEFAULT_OPEN_TIMEOUT,
		connector: Optional[Callable[..., Awaitable[Any]]] = None,
	) -> None:
		self.url = socket_url(url)
		self.reconnection = reconnection
		self.reconnection_delay = max(0.0, reconnection_delay)
		self.reconnection_delay_max = max(self.reconnection_delay, reconnection_delay_max)
		self.open_timeout = open_timeout
		self.status = SessionStatus()
		self._connector = connector or websockets.connect
		self._ws: Any = None
		self._reader: Optional[asyncio.Task[None]] = None
		self._reconnect_task: Optional[asyncio.Task[None]] = None
		self._lock = asyncio.Lock()
		self._initialized = False
		self._closing = False
		self._listeners: Dict[str, Dict[int, Callback]] = {}
		self._tokens = itertools.count(1)
		self._pending: Dict[str, asyncio.Future[Any]] = {}
		self._callback_tasks: Set[asyncio.Task[Any]] = set()

	@property
	def connected(self) -> bool:
		return self._ws is not None and self.status.connected

	@property
	def closed_by_client(self) -> bool:
		"""True from a call to :meth:`disconnect` until the next :meth:`connect`."""
		return self._closing

	@property
	def client_id(self) -> Optional[str]:
		return self.status.client_id

	# ---------------------------------------------------------------------
	# Lifecycle
	# ---------------------------------------------------------------------
	async def connect(self) -> bool:
		"""Open the connection; a no-op while connected or connecting."""
		self._closing = False
		connected = await self._open()
		if not connected:
			self._schedule_reconnect()
		return connected

	async def disconnect(self) -> None:
		"""Close on purpose. This never triggers a reconnect."""
		self._closing = True
		task = self._reconnect_task
		self._reconnect_task = None
		if task and not task.done() and task is not asyncio.current_task():
			task.cancel()
			with contextlib.suppress(asyncio.CancelledError):
				await task
		ws, reader = self._ws, self._reader
		if ws is None:
			return
		with contextlib.suppress(Exception):
			await ws.close()
		if reader is not None:
			try:
				await asyncio.wait_for(reader, timeout=5.0)
			except asyncio.TimeoutError:
				logger.warning("Reader for %s did not stop after close", self.url)
		# The reader normally reports the close itself; cover the case where it could not.
		if self._ws is ws:
			self._closed(ws, protocol.CLIENT_DISCONNECT)

	async def __aenter__(self) -> "RelaySession":
		await self.connect()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
		await self.disconnect()

	async def _open(self) -> bool:
		async with self._lock:
			if self.connected:
				return True
			if not self._initialized:
				self._initialized = True
				logger.info("Connecting to server: %s", self.url)
			try:
				ws = await asyncio.wait_for(
					self._connector(self.url, open_timeout=self.open_timeout),
					timeout=self.open_timeout,
				)
			except asyncio.CancelledError:
				raise
			except Exception as exc:
				message = f"Connection error: {exc}"
				self.status.connection_status = message
				self.status.last_error = message
				logger.warning("Connection to %s failed: %s", self.url, exc)
				self._dispatch(protocol.CONNECT_ERROR, str(exc))
				return False

			self._ws = ws
			self.status.connected = True
			self.status.connection_status = "Connected"
			self.status.last_error = None
			self._reader = asyncio.create_task(self._read_loop(ws))
		logger.info("Socket connected to %s", self.url)
		self._dispatch(protocol.CONNECT)
		return True

	def _schedule_reconnect(self) -> None:
		if not self.reconnection or self._closing:
			return
		if self._reconnect_task and not self._reconnect_task.done():
			return
		self._reconnect_task = asyncio.create_task(self._reconnect_loop())

	def backoff(self, attempt: int) -> float:
		"""Delay before reconnect ``attempt`` (1-based)."""
		return min(self.reconnection_delay * (2 ** max(0, attempt - 1)), self.reconnection_delay_max)

	async def _reconnect_loop(self) -> None:
		attempt = 0
		while not self._closing and not self.connected:
			attempt += 1
			await asyncio.sleep(self.backoff(attempt))
			if self._closing or self.connected:
				break
			self.status.connection_status = f"Reconnecting... (Attempt {attempt})"
			logger.info("Reconnection attempt %d to %s", attempt, self.url)
			self._dispatch(protocol.RECONNECT_ATTEMPT, attempt)
			await self._open()

	# ---------------------------------------------------------------------
	# Receiving
	# ---------------------------------------------------------------------
	async def _read_loop(self, ws: Any) -> None:
		reason = protocol.TRANSPORT_CLOSE
		try:
			while True:
				raw = await ws.recv()
				self._handle_frame(raw)
		except ConnectionClosed as exc:
			reason = self._close_reason(exc)
		except asyncio.CancelledError:
			reason = protocol.CLIENT_DISCONNECT
			raise
		except Exception as exc:
			logger.warning("Transport error on %s: %s", self.url, exc)
			self.status.last_error = str(exc)
			reason = protocol.TRANSPORT_ERROR
		finally:
			self._closed(ws, reason)

	def _close_reason(self, exc: ConnectionClosed) -> str:
		if self._closing:
			return protocol.CLIENT_DISCONNECT
		if exc.rcvd is not None:
			return protocol.SERVER_DISCONNECT
		return protocol.TRANSPORT_CLOSE

	def _closed(self, ws: Any, reason: str) -> None:
		if self._ws is not ws:
			return
		self._ws = None
		self._reader = None
		self.status.connected = False
		self.status.connection_status = f"Disconnected: {reason}"
		for future in self._pending.values():
			if not future.done():
				future.set_exception(RuntimeError(f"RelaySession disconnected: {reason}"))
		self._pending.clear()
		logger.info("Socket disconnected: %s", reason)
		self._dispatch(protocol.DISCONNECT, reason)
		if reason != protocol.CLIENT_DISCONNECT:
			self._schedule_reconnect()

	def _handle_frame(self, raw: Any) -> None:
		try:
			envelope = protocol.decode(raw)
		except protocol.ProtocolError as exc:
			logger.warning("Ignoring frame from %s: %s", self.url, exc)
			return
		if envelope.event == protocol.CONNECTION_ACK and isinstance(envelope.data, Mapping):
			self.status.client_id = envelope.data.get("id")
			self.status.server_info = dict(envelope.data.get("serverInfo") or {})
			logger.info("Connection acknowledged by server: %s", self.status.client_id)
		future = self._pending.pop(envelope.event, None)
		if future is not None and not future.done():
			future.set_result(envelope.data)
		self._dispatch(envelope.event, envelope.data)

	# ---------------------------------------------------------------------
	# Sending
	# ---------------------------------------------------------------------
	async def emit(self, event: str, data: Any = None) -> None:
		ws = self._ws
		if ws is None or not self.status.connected:
			raise RuntimeError("RelaySession is not connected")
		await ws.send(protocol.encode(event, data))

	async def request(
		self,
		event: str,
		data: Any = None,
		*,
		response_event: str,
		timeout: float = 5.0,
	) -> Any:
		"""Emit ``event`` and wait for the next ``response_event`` frame.

		Only one request per response event may be in flight.
		"""
		current = self._pending.get(response_event)
		if current is not None and not current.done():
			raise RuntimeError(f"a {response_event!r} request is already in flight")
		future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
		self._pending[response_event] = future
		try:
			await self.emit(event, data)
			return await asyncio.wait_for(future, timeout=timeout)
		finally:
			if self._pending.get(response_event) is future:
				del self._pending[response_event]

	# ---------------------------------------------------------------------
	# Subscriptions
	# ---------------------------------------------------------------------
	def on(self, event: str, callback: Callback) -> Subscription:
		token = next(self._tokens)
		self._listeners.setdefault(event, {})[token] = callback
		return Subscription(event, token)

	def off(self, subscription: Subscription) -> None:
		listeners = self._listeners.get(subscription.event)
		if listeners is not None:
			listeners.pop(subscription.token, None)

	@contextlib.contextmanager
	def subscriptions(self, handlers: Mapping[str, Callback]) -> Iterator[List[Subscription]]:
		"""Subscribe every handler; all of them are released on exit."""
		acquired: List[Subscription] = []
		try:
			for event, callback in handlers.items():
				acquired.append(self.on(event, callback))
			yield acquired
		finally:
			for subscription in acquired:
				self.off(subscription)

	def _dispatch(self, event: str, *args: Any) -> None:
		for callback in list(self._listeners.get(event, {}).values()):
			try:
				outcome = callback(*args)
				if asyncio.iscoroutine(outcome):
					task = asyncio.create_task(outcome)
					self._callback_tasks.add(task)
					task.add_done_callback(self._callback_tasks.discard)
			except Exception as exc:
				logger.exception("Listener for %s raised: %s", event, exc)


__all__ = [
	"RelaySession",
	"SessionStatus",
	"Subscription",
	"socket_url",
]

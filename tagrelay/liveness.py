"""Latency probing and reconnect policy on top of a client session."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from datetime import datetime
from time import monotonic
from typing import Any, Callable, Deque, Optional, Set

from tagrelay import protocol
from tagrelay.client import RelaySession
from tagrelay.metrics import MetricsLogger, record
from tagrelay.models import LatencySample

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL = 10.0
DEFAULT_RECONNECT_DELAY = 1.0

# Closes that deserve an explicit reconnect on top of the session's own policy.
RECONNECT_REASONS = frozenset({protocol.SERVER_DISCONNECT, protocol.TRANSPORT_CLOSE})


class LivenessMonitor:
    """Keep an eye on one :class:`RelaySession`.

    While connected a ``ping`` round trip is measured every ``interval``
    seconds and right after each (re)connect. A close by the server or by the
    transport schedules one extra reconnect after ``reconnect_delay``; a close
    requested by the client never does.
    """

    def __init__(
        self,
        session: RelaySession,
        *,
        interval: float = DEFAULT_PROBE_INTERVAL,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        probe_timeout: float = 5.0,
        history: int = 50,
        metrics: Optional[MetricsLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.session = session
        self.interval = max(0.01, interval)
        self.reconnect_delay = max(0.0, reconnect_delay)
        self.probe_timeout = probe_timeout
        self.metrics = metrics
        self.latency_ms: Optional[float] = None
        self.samples: Deque[LatencySample] = deque(maxlen=max(1, history))
        self.last_disconnect_reason: Optional[str] = None
        self.last_error: Optional[str] = None
        self._clock = clock or protocol.utc_now
        self._stack: Optional[contextlib.ExitStack] = None
        self._probe_loop: Optional[asyncio.Task[None]] = None
        self._reconnect_timer: Optional[asyncio.Task[None]] = None
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._probing = False

    @property
    def running(self) -> bool:
        return self._stack is not None

    async def start(self) -> None:
        if self._stack is not None:
            return
        stack = contextlib.ExitStack()
        stack.enter_context(
            self.session.subscriptions(
                {
                    protocol.CONNECT: self._on_connect,
                    protocol.DISCONNECT: self._on_disconnect,
                }
            )
        )
        self._stack = stack
        self._probe_loop = asyncio.create_task(self._run_probes())
        if self.session.connected:
            self._spawn(self.probe())

    async def stop(self) -> None:
        """Release every subscription and cancel all pending work."""
        stack, self._stack = self._stack, None
        if stack is not None:
            stack.close()
        pending = [task for task in (self._probe_loop, self._reconnect_timer, *self._tasks) if task]
        self._probe_loop = None
        self._reconnect_timer = None
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks.clear()

    async def __aenter__(self) -> "LivenessMonitor":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.stop()

    async def probe(self) -> Optional[LatencySample]:
        """Measure one ``ping`` round trip; ``None`` if it could not be done."""
        if not self.session.connected or self._probing:
            return None
        self._probing = True
        requested_at = self._clock()
        start = monotonic()
        try:
            await self.session.request(protocol.PING, response_event=protocol.PONG, timeout=self.probe_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.last_error = str(exc) or type(exc).__name__
            logger.warning("Latency probe failed: %s", self.last_error)
            record(self.metrics, "latency_sample", connection=self.session.client_id,
                   status="error", message=self.last_error)
            return None
        finally:
            self._probing = False

        sample = LatencySample(requested_at=requested_at, round_trip_ms=(monotonic() - start) * 1000.0)
        self.samples.append(sample)
        self.latency_ms = sample.round_trip_ms
        logger.debug("Current latency: %.1f ms", sample.round_trip_ms)
        record(self.metrics, "latency_sample", connection=self.session.client_id,
               status="ok", value=sample.round_trip_ms)
        return sample

    async def resume(self) -> Optional[LatencySample]:
        """Call when the application comes back to the foreground."""
        if not self.session.connected:
            logger.info("Resumed without a connection, reconnecting")
            await self.session.connect()
        return await self.probe()

    def _on_connect(self) -> None:
        self.last_disconnect_reason = None
        self._spawn(self.probe())

    def _on_disconnect(self, reason: str) -> None:
        self.last_disconnect_reason = reason
        self.latency_ms = None
        if reason not in RECONNECT_REASONS:
            return
        if self._reconnect_timer and not self._reconnect_timer.done():
            return
        record(self.metrics, "reconnect_scheduled", status="pending",
               value=self.reconnect_delay, message=reason)
        self._reconnect_timer = asyncio.create_task(self._delayed_reconnect())

    async def _delayed_reconnect(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        if self.session.connected or self.session.closed_by_client:
            return
        logger.info("Attempting to reconnect...")
        await self.session.connect()

    async def _run_probes(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.probe()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


__all__ = ["LivenessMonitor", "RECONNECT_REASONS"]

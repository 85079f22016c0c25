"""CSV audit log for relay and liveness events."""
from __future__ import annotations

import csv
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "connection",
    "status",
    "value",
    "message",
    "extra",
)


def _encode_extra(extra: Mapping[str, Any]) -> str:
    if not extra:
        return ""
    try:
        return json.dumps(extra, separators=(",", ":"), ensure_ascii=True, sort_keys=True)
    except (TypeError, ValueError):
        return repr(extra)


class MetricsLogger:
    """Append-only CSV log of connects, disconnects, relays and probes.

    Rows are flushed one at a time so the file can be tailed while the server
    runs. ``node`` values (platform, version) are stamped into every row's
    ``extra`` column.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        node: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.node: Dict[str, Any] = dict(node or {})
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists() or self.path.stat().st_size == 0:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                csv.DictWriter(handle, fieldnames=FIELDS).writeheader()

    def log(
        self,
        event: str,
        *,
        connection: Optional[str] = None,
        status: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        row = {
            "timestamp": self._timestamp(),
            "event": event,
            "connection": connection or "",
            "status": status or "",
            "value": value if value is not None else "",
            "message": message or "",
            "extra": _encode_extra({**self.node, **(extra or {})}),
        }
        with self._lock:
            with self.path.open("a", newline="", encoding="utf-8") as handle:
                csv.DictWriter(handle, fieldnames=FIELDS).writerow(row)

    def _timestamp(self) -> str:
        dt = self._clock()
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def record(metrics: Optional[MetricsLogger], event: str, **kwargs: Any) -> None:
    """Write to ``metrics`` if present; a failing log never reaches the caller."""
    if metrics is None:
        return
    try:
        metrics.log(event, **kwargs)
    except Exception:  # pragma: no cover - I/O failure safeguard
        logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = ["MetricsLogger", "FIELDS", "record"]

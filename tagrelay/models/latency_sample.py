from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class LatencySample:
    """Round trip measured by the probing client."""
    requested_at: datetime
    round_trip_ms: float

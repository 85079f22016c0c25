"""Value types shared by the relay server and its clients.

These are plain dataclasses with no transport knowledge; the relay core and
the client session build and consume them.
"""
from .connection import Connection, Transport
from .tagged_event import TaggedEvent
from .latency_sample import LatencySample

__all__ = [
    "Connection",
    "Transport",
    "TaggedEvent",
    "LatencySample",
]

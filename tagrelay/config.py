"""Environment driven settings for the relay server."""
from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

__version__ = "1.0.0"

DEFAULT_PORT = 3000
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PING_INTERVAL = 25.0
DEFAULT_PING_TIMEOUT = 60.0


class BroadcastMode(str, Enum):
    """Which registered connections receive a relayed event."""

    ALL = "all"
    OTHERS = "others"

    @classmethod
    def parse(cls, value: "str | BroadcastMode") -> "BroadcastMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(mode.value for mode in cls)
            raise ValueError(f"invalid broadcast mode {value!r}; expected one of: {choices}") from None


@dataclass(slots=True)
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cors_origins: Tuple[str, ...] = ("*",)
    ping_interval: float = DEFAULT_PING_INTERVAL
    ping_timeout: float = DEFAULT_PING_TIMEOUT
    broadcast_mode: BroadcastMode = BroadcastMode.ALL
    project_domain: Optional[str] = None
    version: str = __version__
    metrics_log: Optional[str] = None

    @property
    def platform(self) -> str:
        return "Glitch" if self.project_domain else "Local"

    @property
    def project(self) -> str:
        return self.project_domain or "local"

    def server_info(self) -> Dict[str, str]:
        return {"platform": self.platform, "project": self.project, "version": self.version}

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        env = os.environ if environ is None else environ
        origins = tuple(
            origin.strip() for origin in env.get("TAGRELAY_CORS_ORIGINS", "*").split(",") if origin.strip()
        )
        return cls(
            host=env.get("TAGRELAY_HOST", DEFAULT_HOST),
            port=_parse_number(env, "PORT", DEFAULT_PORT, int),
            cors_origins=origins or ("*",),
            ping_interval=_parse_number(env, "TAGRELAY_PING_INTERVAL", DEFAULT_PING_INTERVAL, float),
            ping_timeout=_parse_number(env, "TAGRELAY_PING_TIMEOUT", DEFAULT_PING_TIMEOUT, float),
            broadcast_mode=BroadcastMode.parse(env.get("TAGRELAY_BROADCAST_MODE", BroadcastMode.ALL.value)),
            project_domain=env.get("PROJECT_DOMAIN") or None,
            version=env.get("TAGRELAY_VERSION") or __version__,
            metrics_log=env.get("TAGRELAY_METRICS_LOG") or None,
        )


def _parse_number(env: Mapping[str, str], name: str, default, kind):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = kind(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


__all__ = ["BroadcastMode", "ServerConfig", "__version__"]

from __future__ import annotations
import logging
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse

from tagrelay import protocol
from tagrelay.config import ServerConfig
from tagrelay.metrics import MetricsLogger
from tagrelay.models import Connection
from tagrelay.relay import RelayCore

logger = logging.getLogger("tagrelay.api")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
}

# Close codes a client sends when it hangs up on purpose.
_CLIENT_CLOSE_CODES = {1000, 1001}

router = APIRouter()


class WebSocketTransport:
    """Adapts a FastAPI WebSocket to the relay's ``send(event, data)``."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send(self, event: str, data: Any) -> None:
        await self.websocket.send_text(protocol.encode(event, data))


def _status_page(config: ServerConfig) -> str:
    environment = "Glitch" if config.project_domain else "Local"
    return f"""
        <html>
            <head>
                <title>NFC Reader Server</title>
                <style>
                    body {{ font-family: Arial, sans-serif; margin: 40px; }}
                    .status {{ padding: 20px; background: #e8f5e9; border-radius: 8px; }}
                    .info {{ margin-top: 20px; color: #666; }}
                </style>
            </head>
            <body>
                <h1>NFC Reader Server</h1>
                <div class="status">Server is running!</div>
                <div class="info">
                    <p>Environment: {environment}</p>
                    <p>Server Time: {protocol.iso_timestamp()}</p>
                </div>
            </body>
        </html>
    """


@router.get("/", response_class=HTMLResponse)
async def index(request: Request):
    return HTMLResponse(_status_page(request.app.state.config))


@router.get("/health")
async def health(request: Request):
    config: ServerConfig = request.app.state.config
    relay: RelayCore = request.app.state.relay
    return {
        "status": "healthy",
        "timestamp": protocol.iso_timestamp(),
        "platform": config.platform,
        "project": config.project,
        "connections": len(relay.registry),
    }


@router.websocket("/socket")
async def socket_endpoint(ws: WebSocket):
    relay: RelayCore = ws.app.state.relay
    await ws.accept()
    client = ws.client
    connection = Connection(
        id=protocol.new_connection_id(),
        transport=WebSocketTransport(ws),
        remote_address=f"{client.host}:{client.port}" if client else None,
    )
    reason = protocol.TRANSPORT_CLOSE
    await relay.connect(connection)
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                if message.get("code", 1000) in _CLIENT_CLOSE_CODES:
                    reason = protocol.CLIENT_DISCONNECT
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await _dispatch(relay, connection, raw)
    except Exception as exc:
        logger.error("Socket error for client %s: %s", connection.id, exc)
        reason = protocol.TRANSPORT_ERROR
    finally:
        relay.disconnect(connection.id, reason)


async def _dispatch(relay: RelayCore, connection: Connection, raw: str | bytes) -> None:
    try:
        envelope = protocol.decode(raw)
    except protocol.ProtocolError as exc:
        logger.warning("Ignoring frame from %s: %s", connection.id, exc)
        return
    if envelope.event == protocol.NFC_DATA:
        await relay.submit(connection.id, envelope.data)
    elif envelope.event == protocol.PING:
        await relay.deliver(connection, protocol.PONG, relay.ping(connection.id))
    else:
        logger.debug("Ignoring unknown event %r from %s", envelope.event, connection.id)


def create_app(config: Optional[ServerConfig] = None, *, relay: Optional[RelayCore] = None) -> FastAPI:
    """Build the relay application; ``config`` defaults to the environment."""
    config = config or ServerConfig.from_env()
    if relay is None:
        metrics = MetricsLogger(config.metrics_log, node=config.server_info()) if config.metrics_log else None
        relay = RelayCore(
            broadcast_mode=config.broadcast_mode,
            server_info=config.server_info(),
            metrics=metrics,
        )

    application = FastAPI(title="Tag Relay", version=config.version)
    application.state.config = config
    application.state.relay = relay
    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_methods=["GET", "POST"],
        allow_credentials=True,
    )

    @application.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    application.include_router(router)
    return application


app = create_app()

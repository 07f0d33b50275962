"""
WebSocket transport listener.

Accepts browser connections and gives each one its own ConnectionHandler and
MessageRouter. Nothing is shared between connections, and a failure while
serving one client never reaches another.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from typing import Dict, Optional

import yaml
from prometheus_client import Gauge, start_http_server
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosedError

from gemini_relay.config import RelaySettings, load_settings, validate_settings
from gemini_relay.core.connection import ConnectionHandler
from gemini_relay.core.router import MessageRouter
from gemini_relay.logging_config import configure_logging, get_logger, set_correlation_id
from gemini_relay.providers.base import SessionFactory

logger = get_logger(__name__)

_ACTIVE_CONNECTIONS = Gauge(
    "gemini_relay_active_client_connections",
    "Number of connected relay clients",
)


class RelayServer:
    """Serves the relay protocol on ``settings.host:settings.port``."""

    def __init__(
        self,
        settings: RelaySettings,
        *,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.settings = settings
        self.host = settings.host
        self.port = settings.port
        self._session_factory = session_factory
        self._server: Optional[Server] = None
        self._handlers: Dict[str, ConnectionHandler] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._server:
            logger.warning("Relay server already running")
            return

        self._server = await serve(
            self._handle_client,
            self.host,
            self.port,
            ping_interval=self.settings.ping_interval_sec,
            ping_timeout=self.settings.ping_timeout_sec,
            max_size=self.settings.max_message_bytes,
        )

        sockets = list(self._server.sockets or [])
        if sockets:
            # update port in case the OS picked an ephemeral port (port=0)
            self.port = sockets[0].getsockname()[1]

        logger.info("Relay server listening", url=f"ws://{self.host}:{self.port}")

    async def stop(self) -> None:
        if not self._server:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Relay server stopped")

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    def get_connection_count(self) -> int:
        return len(self._handlers)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    async def _handle_client(self, websocket: ServerConnection) -> None:
        conn_id = set_correlation_id(uuid.uuid4().hex)
        handler = ConnectionHandler(
            websocket,
            self.settings,
            session_factory=self._session_factory,
            conn_id=conn_id,
        )
        router = MessageRouter(handler)
        self._handlers[conn_id] = handler
        _ACTIVE_CONNECTIONS.inc()
        logger.info("Client connected", peer=websocket.remote_address)

        try:
            async for raw in websocket:
                await router.dispatch(raw)
        except ConnectionClosedError as e:
            logger.warning("WebSocket error", code=e.rcvd.code if e.rcvd else None, error=str(e))
        except Exception as e:
            logger.error("Client connection error", error=str(e), exc_info=True)
        finally:
            logger.info("Client disconnected")
            try:
                await handler.shutdown()
            finally:
                self._handlers.pop(conn_id, None)
                _ACTIVE_CONNECTIONS.dec()


async def main(config_path: Optional[str] = None) -> None:
    configure_logging()
    try:
        settings = load_settings(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        # ValueError covers pydantic validation and malformed WS_PORT/METRICS_PORT
        logger.error("Configuration error", detail=str(e))
        raise SystemExit(1) from e

    errors, warnings = validate_settings(settings)
    for warning in warnings:
        logger.warning("Configuration warning", detail=warning)
    for error in errors:
        # Sessions fail to open without a key; clients stay connected regardless
        logger.error("Configuration error", detail=error)

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info("Metrics endpoint listening", port=settings.metrics_port)

    server = RelayServer(settings)
    await server.serve_forever()


def run() -> None:
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())

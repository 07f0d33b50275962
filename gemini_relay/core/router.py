"""
Inbound client message routing.

Client frames are JSON objects ``{"type": ..., "payload": ...}``. Anything that
can't be parsed, or has an unknown type, is logged and dropped; the client
never receives an error back.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from prometheus_client import Counter
from pydantic import ValidationError

from gemini_relay.core.connection import ConnectionHandler
from gemini_relay.logging_config import get_logger

logger = get_logger(__name__)

_CLIENT_MESSAGES_IN = Counter(
    "gemini_relay_client_messages_received_total",
    "Client messages received, by type",
    labelnames=("type",),
)
_CLIENT_MESSAGES_DROPPED = Counter(
    "gemini_relay_client_messages_dropped_total",
    "Client messages ignored by the router",
    labelnames=("reason",),
)

_PREVIEW_CHARS = 100


class MalformedMessageError(ValueError):
    """A client frame that is not a JSON object with a string ``type``."""


@dataclass(frozen=True)
class ClientMessage:
    type: str
    payload: Any = None


def parse_client_message(raw: Union[str, bytes]) -> ClientMessage:
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise MalformedMessageError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessageError("message is not a JSON object")
    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedMessageError("message has no 'type'")
    return ClientMessage(type=msg_type, payload=data.get("payload"))


class MessageRouter:
    """Dispatches one connection's client messages to its handler."""

    def __init__(self, handler: ConnectionHandler):
        self.handler = handler
        self.state = handler.state
        self._routes: Dict[str, Callable[[Any], Awaitable[None]]] = {
            "configure": self._on_configure,
            "start": self._on_start,
            "stop": self._on_stop,
            "interrupt": self._on_interrupt,
            "request_greeting": self._on_request_greeting,
            "audio_blob": self._on_audio_blob,
        }

    async def dispatch(self, raw: Union[str, bytes]) -> None:
        """Handle one client frame. Failures are logged, never raised."""
        try:
            message = parse_client_message(raw)
        except MalformedMessageError as e:
            _CLIENT_MESSAGES_DROPPED.labels(reason="malformed").inc()
            logger.warning("Ignoring malformed client message", error=str(e))
            return

        route = self._routes.get(message.type)
        if route is None:
            _CLIENT_MESSAGES_DROPPED.labels(reason="unknown_type").inc()
            logger.warning("Ignoring unknown client message type", type=message.type)
            return

        _CLIENT_MESSAGES_IN.labels(type=message.type).inc()
        try:
            await route(message.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Message error", type=message.type, error=str(e), exc_info=True)

    async def _on_configure(self, payload: Any) -> None:
        if not payload:
            return
        try:
            self.state.config = self.state.config.merge(payload)
        except ValidationError as e:
            _CLIENT_MESSAGES_DROPPED.labels(reason="invalid_configuration").inc()
            logger.warning("Ignoring invalid client configuration", errors=e.error_count())
            return

        logger.info("Client configuration updated", **self.state.config.summary())
        instruction = self.state.config.system_instruction
        if instruction:
            logger.debug("System instruction preview", preview=instruction[:_PREVIEW_CHARS])

    async def _on_start(self, payload: Any) -> None:
        self.state.recording = True
        await self.handler.open_session()

    async def _on_stop(self, payload: Any) -> None:
        self.state.recording = False
        await self.handler.close_session()

    async def _on_interrupt(self, payload: Any) -> None:
        await self.handler.close_session()
        self.state.recording = False
        logger.info("AI interrupted by user")

    async def _on_request_greeting(self, payload: Any) -> None:
        session = await self.handler.open_session()
        if session is None:
            return
        greeting = self.state.config.greeting or self.handler.settings.default_greeting
        try:
            await session.send_realtime_input(text=greeting)
        except Exception as e:
            logger.error("Failed to send greeting", error=str(e))

    async def _on_audio_blob(self, payload: Any) -> None:
        session = self.state.session
        if session is None or not self.state.recording or not isinstance(payload, dict):
            _CLIENT_MESSAGES_DROPPED.labels(reason="inactive").inc()
            return

        audio: Dict[str, Optional[str]] = {
            "data": payload.get("data"),
            "mimeType": payload.get("mimeType"),
        }
        self.state.cancel_silence_timer()
        try:
            await session.send_realtime_input(audio=audio)
        except Exception as e:
            logger.error("Error sending audio to Gemini", error=str(e))
            return

        self.handler.schedule_silence_response(self.state.config.response_timeout)

"""
Connection handler: owns the state of one client connection and its remote
Gemini session.

Lifecycle:
1. created when the client WebSocket is accepted (default configuration,
   no session, not recording)
2. open_session() / close_session() driven by client messages
3. schedule_silence_response() after every forwarded audio chunk
4. shutdown() when the client disconnects: timer cancelled, session closed,
   usage summary logged
"""

import asyncio
import json
import uuid
from typing import Any, Dict, Optional

from websockets.exceptions import ConnectionClosed

from gemini_relay.config import RelaySettings
from gemini_relay.core.forwarder import ResponseForwarder
from gemini_relay.core.models import ConnectionState
from gemini_relay.logging_config import get_logger
from gemini_relay.providers.base import (
    RealtimeSession,
    SessionCallbacks,
    SessionFactory,
    SessionOptions,
)
from gemini_relay.providers.google_live import GeminiLiveSession

logger = get_logger(__name__)


class ConnectionHandler:
    """Mediates between one client WebSocket and its Gemini Live session."""

    def __init__(
        self,
        websocket,
        settings: RelaySettings,
        *,
        session_factory: Optional[SessionFactory] = None,
        conn_id: Optional[str] = None,
    ):
        self.websocket = websocket
        self.settings = settings
        self.state = ConnectionState(conn_id=conn_id or uuid.uuid4().hex)
        self.forwarder = ResponseForwarder(self.state, self.send_to_client)
        self._session_factory = session_factory or self._connect_gemini

    async def _connect_gemini(
        self,
        model: str,
        options: SessionOptions,
        callbacks: SessionCallbacks,
    ) -> RealtimeSession:
        return await GeminiLiveSession.connect(
            api_key=self.settings.api_key,
            model=model,
            options=options,
            callbacks=callbacks,
            endpoint=self.settings.endpoint,
            setup_timeout=self.settings.setup_timeout_sec,
            max_size=self.settings.max_message_bytes,
            conn_id=self.state.conn_id,
        )

    def session_options(self) -> SessionOptions:
        config = self.state.config
        return SessionOptions(
            voice_name=config.voice_name,
            system_instruction=config.system_instruction or None,
            input_transcription=True,
            output_transcription=True,
        )

    async def open_session(self) -> Optional[RealtimeSession]:
        """
        Replace the current session with a new one.

        Candidate models are tried one after another; the first that opens
        wins. If none does, the failure is logged and no session is left.
        Never raises.
        """
        await self.close_session()

        options = self.session_options()
        models = self.settings.candidate_models()
        logger.info("Initializing Gemini session", models=models, voice_name=options.voice_name)

        last_error: Optional[Exception] = None
        for model in models:
            try:
                session = await self._session_factory(model, options, self.forwarder.callbacks())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.warning("Gemini model unavailable, trying next", model=model, error=str(e))
                continue

            self.state.session = session
            logger.info("Gemini session established", model=model)
            return session

        logger.error(
            "Failed to initialize Gemini session",
            error=str(last_error) if last_error else "No models available",
            models=models,
        )
        return None

    async def close_session(self) -> None:
        """Close and forget the current session, if any."""
        self.state.cancel_silence_timer()
        session = self.state.session
        self.state.session = None
        if session is None:
            return
        try:
            await session.close()
        except Exception as e:
            logger.warning("Error closing Gemini session", model=session.model, error=str(e))

    def schedule_silence_response(self, timeout_ms: int) -> None:
        """(Re)start the silence timer; any previously scheduled one is cancelled."""
        self.state.cancel_silence_timer()
        self.state.silence_task = asyncio.create_task(
            self._silence_response(self.state.session, timeout_ms / 1000.0),
            name=f"silence-timer-{self.state.conn_id}",
        )

    async def _silence_response(self, session: Optional[RealtimeSession], delay: float) -> None:
        await asyncio.sleep(delay)
        if self.state.silence_task is asyncio.current_task():
            self.state.silence_task = None

        # The session may have been replaced or closed since the timer was armed
        if session is None or session is not self.state.session or session.closed:
            logger.debug("Silence timer fired without a live session")
            return

        try:
            await session.send_realtime_input(text=self.settings.silence_prompt)
            logger.debug("Requested response after silence", delay_ms=int(delay * 1000))
        except Exception as e:
            logger.error("Error requesting response", error=str(e))

    async def send_to_client(self, message: Dict[str, Any]) -> bool:
        try:
            await self.websocket.send(json.dumps(message))
            return True
        except ConnectionClosed:
            logger.debug("Client socket closed; dropping outbound message", type=message.get("type"))
            return False

    async def shutdown(self) -> None:
        """Tear down after the client disconnected and log the session summary."""
        self.state.cancel_silence_timer()
        await self.close_session()
        self.state.recording = False

        tokens = self.state.usage.session_tokens
        duration = self.state.duration_seconds()
        summary: Dict[str, Any] = {
            "total_tokens": tokens,
            "turns": self.state.usage.turns,
            "duration_seconds": duration,
            "voice_name": self.state.config.voice_name,
            "locale": self.state.config.locale,
        }
        if tokens > 0 and duration > 0:
            summary["avg_tokens_per_second"] = round(tokens / duration, 2)
        logger.info("Session summary", **summary)

"""
Google Gemini Live API session over the BidiGenerateContent WebSocket.

Lifecycle:
1. connect() -> opens the WebSocket, starts the receive loop, sends ``setup``
2. the session is ready once ``setupComplete`` arrives; a close before that
   means the model (or key) was rejected and raises SessionSetupError
3. send_realtime_input() -> streams base64 audio chunks or text turns
4. every other server message is handed to ``callbacks.on_message``
5. close() -> cancels the receive loop and closes the socket
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any, Dict, Optional

from prometheus_client import Counter, Gauge
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from gemini_relay.config import GEMINI_LIVE_ENDPOINT
from gemini_relay.logging_config import get_logger
from gemini_relay.providers.base import (
    RealtimeSession,
    SessionCallbacks,
    SessionClosedError,
    SessionOptions,
    SessionSetupError,
)

logger = get_logger(__name__)

_MAX_MESSAGE_BYTES = 10 * 1024 * 1024

_CLOSE_CODE_MEANINGS = {
    1000: "Normal closure",
    1001: "Going away",
    1006: "Abnormal closure (no close frame)",
    1007: "Invalid frame payload data",
    1008: "Policy violation (bad API key or unsupported model)",
    1011: "Internal server error",
}

# Metrics
_LIVE_SESSIONS = Gauge(
    "gemini_relay_live_active_sessions",
    "Number of open Gemini Live sessions",
)
_LIVE_SETUP_FAILURES = Counter(
    "gemini_relay_live_setup_failures_total",
    "Gemini Live sessions rejected before setupComplete",
    labelnames=("model",),
)
_LIVE_AUDIO_SENT = Counter(
    "gemini_relay_live_audio_payload_bytes_sent_total",
    "Base64 audio payload bytes sent to Gemini Live",
)


def build_setup_message(model: str, options: SessionOptions) -> Dict[str, Any]:
    """Build the ``setup`` frame that opens a Live session."""
    setup: Dict[str, Any] = {
        "model": model if model.startswith("models/") else f"models/{model}",
        "generationConfig": {
            "responseModalities": list(options.response_modalities),
            "speechConfig": {
                "voiceConfig": {
                    "prebuiltVoiceConfig": {"voiceName": options.voice_name},
                },
            },
        },
    }
    if options.system_instruction:
        setup["systemInstruction"] = {"parts": [{"text": options.system_instruction}]}
    # Empty objects enable transcription with server defaults
    if options.input_transcription:
        setup["inputAudioTranscription"] = {}
    if options.output_transcription:
        setup["outputAudioTranscription"] = {}
    return {"setup": setup}


def build_realtime_input(
    audio: Optional[Dict[str, str]] = None,
    text: Optional[str] = None,
) -> Dict[str, Any]:
    if (audio is None) == (text is None):
        raise ValueError("Exactly one of audio or text is required")
    if audio is not None:
        return {"realtimeInput": {"audio": {"data": audio["data"], "mimeType": audio["mimeType"]}}}
    return {"realtimeInput": {"text": text}}


class GeminiLiveSession(RealtimeSession):
    """A live Gemini session bound to one model."""

    def __init__(
        self,
        websocket: ClientConnection,
        model: str,
        callbacks: SessionCallbacks,
        conn_id: Optional[str] = None,
    ):
        self.websocket = websocket
        self.model = model
        self._callbacks = callbacks
        self._conn_id = conn_id
        self._send_lock = asyncio.Lock()
        self._receive_task: Optional[asyncio.Task] = None
        self._ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._closed = False
        self._closing = False
        self._counted = False

    @classmethod
    async def connect(
        cls,
        *,
        api_key: Optional[str],
        model: str,
        options: SessionOptions,
        callbacks: SessionCallbacks,
        endpoint: str = GEMINI_LIVE_ENDPOINT,
        setup_timeout: Optional[float] = None,
        max_size: Optional[int] = _MAX_MESSAGE_BYTES,
        conn_id: Optional[str] = None,
    ) -> "GeminiLiveSession":
        """
        Open a session and wait until Gemini acknowledges the setup.

        Raises:
            SessionSetupError: If the socket can't be opened or the server
                closes it (or ``setup_timeout`` elapses) before setupComplete
        """
        if not api_key:
            _LIVE_SETUP_FAILURES.labels(model=model).inc()
            raise SessionSetupError(model, "GEMINI_API_KEY is required")

        logger.debug("Connecting to Gemini Live", model=model, endpoint=endpoint)
        try:
            websocket = await connect(
                endpoint,
                additional_headers={"x-goog-api-key": api_key},
                max_size=max_size,
            )
        except (OSError, asyncio.TimeoutError) as e:
            _LIVE_SETUP_FAILURES.labels(model=model).inc()
            raise SessionSetupError(model, f"connection failed: {e}") from e
        except (InvalidHandshake, InvalidURI) as e:
            _LIVE_SETUP_FAILURES.labels(model=model).inc()
            raise SessionSetupError(model, f"handshake failed: {e}") from e

        session = cls(websocket, model, callbacks, conn_id=conn_id)
        try:
            await session._start(options, setup_timeout)
        except BaseException:
            _LIVE_SETUP_FAILURES.labels(model=model).inc()
            await session.close()
            raise

        logger.info("Gemini Live session ready", model=model)
        await session._invoke("on_open")
        return session

    @property
    def closed(self) -> bool:
        return self._closed

    async def _start(self, options: SessionOptions, setup_timeout: Optional[float]) -> None:
        # Start receiving first so setupComplete can't be missed
        self._receive_task = asyncio.create_task(
            self._receive_loop(),
            name=f"gemini-live-receive-{self._conn_id or self.model}",
        )
        setup_msg = build_setup_message(self.model, options)
        logger.debug(
            "Sending Gemini Live setup",
            model=self.model,
            voice_name=options.voice_name,
            has_system_instruction=bool(options.system_instruction),
        )
        try:
            await self._send_json(setup_msg)
        except SessionClosedError as e:
            raise SessionSetupError(self.model, "closed while sending setup") from e

        try:
            if setup_timeout is None:
                await self._ready
            else:
                await asyncio.wait_for(asyncio.shield(self._ready), timeout=setup_timeout)
        except asyncio.TimeoutError as e:
            raise SessionSetupError(self.model, f"no setupComplete within {setup_timeout}s") from e

        self._counted = True
        _LIVE_SESSIONS.inc()

    async def send_realtime_input(
        self,
        *,
        audio: Optional[Dict[str, str]] = None,
        text: Optional[str] = None,
    ) -> None:
        message = build_realtime_input(audio=audio, text=text)
        await self._send_json(message)
        if audio is not None:
            _LIVE_AUDIO_SENT.inc(len(audio["data"] or ""))

    async def _send_json(self, message: Dict[str, Any]) -> None:
        if self._closed:
            raise SessionClosedError(f"Gemini Live session for {self.model} is closed")
        async with self._send_lock:
            try:
                await self.websocket.send(json.dumps(message))
            except ConnectionClosed as e:
                self._closed = True
                raise SessionClosedError(f"Gemini Live session for {self.model} is closed") from e

    async def _receive_loop(self) -> None:
        try:
            async for raw in self.websocket:
                try:
                    data = json.loads(raw)
                except ValueError as e:
                    logger.error("Failed to decode Gemini Live message", model=self.model, error=str(e))
                    await self._invoke("on_error", e)
                    continue
                if not isinstance(data, dict):
                    logger.debug("Ignoring non-object Gemini Live message", model=self.model)
                    continue
                await self._handle_server_message(data)
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Gemini Live receive loop error", model=self.model, error=str(e), exc_info=True)
            await self._invoke("on_error", e)
        finally:
            self._closed = True
            self._release_gauge()

        code = self.websocket.close_code
        reason = self.websocket.close_reason or ""
        if not self._ready.done():
            meaning = _CLOSE_CODE_MEANINGS.get(code, "Unknown")
            self._ready.set_exception(
                SessionSetupError(self.model, f"closed before setupComplete ({meaning}): {reason}", code=code)
            )
            return
        if not self._closing:
            await self._invoke("on_close", code, reason)

    async def _handle_server_message(self, data: Dict[str, Any]) -> None:
        if "setupComplete" in data:
            if not self._ready.done():
                self._ready.set_result(True)
            return
        if "goAway" in data:
            logger.warning("Gemini Live server sent goAway", model=self.model, time_left=data["goAway"].get("timeLeft"))
        await self._invoke("on_message", data)

    async def _invoke(self, name: str, *args: Any) -> None:
        callback = getattr(self._callbacks, name)
        try:
            await callback(*args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Gemini Live callback failed", callback=name, model=self.model, error=str(e), exc_info=True)

    def _release_gauge(self) -> None:
        if self._counted:
            self._counted = False
            _LIVE_SESSIONS.dec()

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._closed = True

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receive_task

        with contextlib.suppress(Exception):
            await self.websocket.close()

        self._release_gauge()
        if not self._ready.done():
            self._ready.cancel()
        logger.debug("Gemini Live session closed", model=self.model)

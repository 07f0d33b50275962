"""Translate Gemini Live server messages into client-facing WebSocket messages."""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from prometheus_client import Counter

from gemini_relay.core.models import ConnectionState
from gemini_relay.logging_config import get_logger
from gemini_relay.providers.base import SessionCallbacks

logger = get_logger(__name__)

_TOKENS_CONSUMED = Counter(
    "gemini_relay_tokens_consumed_total",
    "Total tokens reported by Gemini Live usageMetadata",
)
_CLIENT_MESSAGES_OUT = Counter(
    "gemini_relay_client_messages_sent_total",
    "Messages relayed to clients",
    labelnames=("type",),
)

SendToClient = Callable[[Dict[str, Any]], Awaitable[bool]]


def audio_response(data: Any) -> Dict[str, Any]:
    return {"type": "audio_response", "payload": {"data": data}}


def transcript(sender: str, text: str) -> Dict[str, Any]:
    return {"type": "transcript", "payload": {"sender": sender, "text": text}}


def _model_turn_parts(message: Dict[str, Any]) -> List[Dict[str, Any]]:
    content = message.get("serverContent")
    if not isinstance(content, dict):
        return []
    model_turn = content.get("modelTurn")
    if not isinstance(model_turn, dict):
        return []
    return [part for part in model_turn.get("parts") or [] if isinstance(part, dict)]


def extract_audio_payloads(message: Dict[str, Any]) -> List[Any]:
    """
    Return the audio payloads carried by a server message.

    On the BidiGenerateContent stream audio arrives as
    ``serverContent.modelTurn.parts[].inlineData``. The SDK-style flattened
    shape, a top-level ``data`` field holding either the base64 string or the
    inlineData object, is still accepted as a secondary shape for sessions
    that deliver it; it is only consulted when no part carried audio.
    """
    payloads = []
    for part in _model_turn_parts(message):
        inline_data = part.get("inlineData")
        if isinstance(inline_data, dict) and inline_data.get("data"):
            payloads.append(inline_data["data"])

    if not payloads and message.get("data"):
        data = message["data"]
        payloads.append(data.get("data") if isinstance(data, dict) else data)
    return payloads


def extract_model_text(message: Dict[str, Any]) -> List[str]:
    """
    Return the model's text parts, in order.

    Text arrives as ``serverContent.modelTurn.parts[].text``; parts flagged
    ``thought: true`` are the model's reasoning and are not relayed. The
    SDK-style ``serverContent.text`` shorthand is accepted as a secondary
    shape when no part carried text.
    """
    texts = [
        part["text"]
        for part in _model_turn_parts(message)
        if isinstance(part.get("text"), str) and part["text"] and not part.get("thought")
    ]
    if not texts:
        content = message.get("serverContent")
        text = content.get("text") if isinstance(content, dict) else None
        if isinstance(text, str) and text:
            texts.append(text)
    return texts


def _transcription_text(content: Dict[str, Any], key: str) -> Optional[str]:
    block = content.get(key)
    if isinstance(block, dict):
        return block.get("text") or None
    return None


class ResponseForwarder:
    """Relays one connection's remote session events to its client."""

    def __init__(self, state: ConnectionState, send: SendToClient):
        self.state = state
        self._send = send

    def callbacks(self) -> SessionCallbacks:
        return SessionCallbacks(
            on_message=self.on_message,
            on_open=self.on_open,
            on_error=self.on_error,
            on_close=self.on_close,
        )

    async def on_open(self) -> None:
        # Session state is not shown to the client
        logger.info("Gemini session opened")

    async def on_message(self, message: Dict[str, Any]) -> None:
        usage = message.get("usageMetadata")
        if isinstance(usage, dict):
            self._record_usage(usage)

        for data in extract_audio_payloads(message):
            await self._emit(audio_response(data))

        for text in extract_model_text(message):
            await self._emit(transcript("ai", text))

        content = message.get("serverContent")
        if not isinstance(content, dict):
            return

        user_text = _transcription_text(content, "inputTranscription")
        if user_text:
            await self._emit(transcript("user", user_text))

        ai_text = _transcription_text(content, "outputTranscription")
        if ai_text:
            await self._emit(transcript("ai", ai_text))

    def _record_usage(self, usage: Dict[str, Any]) -> None:
        turn_tokens = int(usage.get("totalTokenCount") or 0)
        session_tokens = self.state.usage.add(turn_tokens)
        _TOKENS_CONSUMED.inc(turn_tokens)

        details = {}
        if usage.get("candidatesTokenCount"):
            details["candidate_tokens"] = usage["candidatesTokenCount"]
        if usage.get("promptTokenCount"):
            details["prompt_tokens"] = usage["promptTokenCount"]
        if usage.get("responseTokensDetails"):
            details["response_breakdown"] = usage["responseTokensDetails"]

        logger.info(
            "Token usage",
            turn_tokens=turn_tokens,
            session_tokens=session_tokens,
            turns=self.state.usage.turns,
            **details,
        )

    async def _emit(self, payload: Dict[str, Any]) -> None:
        if await self._send(payload):
            _CLIENT_MESSAGES_OUT.labels(type=payload["type"]).inc()

    async def on_error(self, error: Exception) -> None:
        # Technical errors stay in the operator log
        logger.error("Gemini session error", error=str(error))

    async def on_close(self, code: Optional[int], reason: str) -> None:
        # The handle is left in place; the next start/stop/interrupt cleans it up
        logger.info("Gemini session closed", code=code, reason=reason)

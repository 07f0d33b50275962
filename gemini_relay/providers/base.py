"""Contract for live remote AI sessions used by the relay."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional


class SessionError(Exception):
    """Base class for remote session failures."""


class SessionSetupError(SessionError):
    """The remote side rejected or dropped the session before it was ready."""

    def __init__(self, model: str, message: str, code: Optional[int] = None):
        super().__init__(f"{model}: {message}")
        self.model = model
        self.code = code


class SessionClosedError(SessionError):
    """Input was sent to a session handle that is already closed."""


@dataclass
class SessionOptions:
    """Creation-time options of a remote session."""
    voice_name: str
    system_instruction: Optional[str] = None
    input_transcription: bool = True
    output_transcription: bool = True
    response_modalities: List[str] = field(default_factory=lambda: ["AUDIO"])


async def _noop(*args: Any) -> None:
    return None


@dataclass
class SessionCallbacks:
    """Coroutines invoked for events of a remote session."""
    on_message: Callable[[Dict[str, Any]], Awaitable[None]]
    on_open: Callable[[], Awaitable[None]] = _noop
    on_error: Callable[[Exception], Awaitable[None]] = _noop
    on_close: Callable[[Optional[int], str], Awaitable[None]] = _noop


class RealtimeSession(ABC):
    """
    One live duplex stream to the AI provider.

    A handle is usable from construction until :meth:`close` is called or the
    remote side ends the stream; after that :attr:`closed` is true and sends
    raise :class:`SessionClosedError`.
    """

    model: str

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @abstractmethod
    async def send_realtime_input(
        self,
        *,
        audio: Optional[Dict[str, str]] = None,
        text: Optional[str] = None,
    ) -> None:
        """Send one audio chunk (``{"data", "mimeType"}``) or one text input."""

    @abstractmethod
    async def close(self) -> None:
        """Close the stream. Closing twice is a no-op."""


# Signature of a session factory: (model, options, callbacks) -> live session
SessionFactory = Callable[[str, SessionOptions, SessionCallbacks], Awaitable[RealtimeSession]]

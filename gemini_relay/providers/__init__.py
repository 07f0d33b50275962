from gemini_relay.providers.base import (
    RealtimeSession,
    SessionCallbacks,
    SessionClosedError,
    SessionError,
    SessionFactory,
    SessionOptions,
    SessionSetupError,
)

__all__ = [
    "RealtimeSession",
    "SessionCallbacks",
    "SessionClosedError",
    "SessionError",
    "SessionFactory",
    "SessionOptions",
    "SessionSetupError",
]

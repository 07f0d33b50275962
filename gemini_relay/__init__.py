"""WebSocket relay between browser voice clients and the Gemini Live API."""

__version__ = "1.0.0"

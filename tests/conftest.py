import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosedOK

from gemini_relay.config import RelaySettings
from gemini_relay.core.connection import ConnectionHandler
from gemini_relay.core.router import MessageRouter
from gemini_relay.providers.base import RealtimeSession, SessionClosedError, SessionSetupError


class FakeSession(RealtimeSession):
    """In-memory remote session that records everything sent into it."""

    def __init__(self, model, options, callbacks):
        self.model = model
        self.options = options
        self.callbacks = callbacks
        self.sent = []
        self.close_calls = 0
        self.fail_sends = False
        self._closed = False

    @property
    def closed(self):
        return self._closed

    @property
    def texts(self):
        return [item["text"] for item in self.sent if "text" in item]

    @property
    def audio(self):
        return [item["audio"] for item in self.sent if "audio" in item]

    async def send_realtime_input(self, *, audio=None, text=None):
        if self._closed:
            raise SessionClosedError("closed")
        if self.fail_sends:
            raise RuntimeError("transient send failure")
        self.sent.append({"audio": audio} if audio is not None else {"text": text})

    async def close(self):
        self.close_calls += 1
        self._closed = True


class FakeSessionFactory:
    """Session factory that rejects the models it was told to reject."""

    def __init__(self, failing_models=()):
        self.failing_models = set(failing_models)
        self.attempts = []
        self.sessions = []

    async def __call__(self, model, options, callbacks):
        self.attempts.append(model)
        if model in self.failing_models:
            raise SessionSetupError(model, "model not found", code=1008)
        session = FakeSession(model, options, callbacks)
        self.sessions.append(session)
        return session


class FakeClientSocket:
    """Stands in for the browser WebSocket; decodes what the relay sends."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(data))


@pytest.fixture
def settings():
    return RelaySettings(api_key="test-key")


@pytest.fixture
def session_factory():
    return FakeSessionFactory()


@pytest.fixture
def make_factory():
    return FakeSessionFactory


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def client_socket():
    return FakeClientSocket()


@pytest.fixture
def handler(client_socket, settings, session_factory):
    return ConnectionHandler(client_socket, settings, session_factory=session_factory, conn_id="conn-test")


@pytest.fixture
def router(handler):
    return MessageRouter(handler)


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout=2.0, interval=0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return _wait_until


def message(msg_type, payload=None):
    """Encode a client frame."""
    data = {"type": msg_type}
    if payload is not None:
        data["payload"] = payload
    return json.dumps(data)


@pytest.fixture
def frame():
    return message

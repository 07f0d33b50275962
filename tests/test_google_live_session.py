"""
Tests for the Gemini Live session client.

A local websockets server plays the part of the BidiGenerateContent
endpoint: it rejects configured models with close code 1008 the way the real
service does, acknowledges the rest with setupComplete, and echoes text turns
back as output transcriptions.
"""

import asyncio
import contextlib
import json

import pytest
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from gemini_relay.config import RelaySettings
from gemini_relay.core.connection import ConnectionHandler
from gemini_relay.providers.base import (
    SessionCallbacks,
    SessionClosedError,
    SessionOptions,
    SessionSetupError,
)
from gemini_relay.providers.google_live import (
    GeminiLiveSession,
    build_realtime_input,
    build_setup_message,
)

API_KEY = "test-key"


class FakeGemini:

    def __init__(self, rejected_models=(), acknowledge=True, close_after_ready=None):
        self.rejected_models = {f"models/{m}" for m in rejected_models}
        self.acknowledge = acknowledge
        self.close_after_ready = close_after_ready
        self.setups = []
        self.inputs = []

    async def handler(self, websocket):
        try:
            if websocket.request.headers.get("x-goog-api-key") != API_KEY:
                await websocket.close(1008, "API key not valid")
                return
            setup = json.loads(await websocket.recv())["setup"]
            self.setups.append(setup)
            if setup["model"] in self.rejected_models:
                await websocket.close(1008, f"{setup['model']} is not found")
                return
            if not self.acknowledge:
                await websocket.wait_closed()
                return
            await websocket.send(json.dumps({"setupComplete": {}}))
            if self.close_after_ready:
                await websocket.close(*self.close_after_ready)
                return
            async for raw in websocket:
                message = json.loads(raw)
                self.inputs.append(message)
                text = message.get("realtimeInput", {}).get("text")
                if text:
                    await websocket.send(json.dumps({"serverContent": {"outputTranscription": {"text": f"echo: {text}"}}}))
                    await websocket.send(json.dumps({"usageMetadata": {"totalTokenCount": 7}}))
        except ConnectionClosed:
            pass


@contextlib.asynccontextmanager
async def running(fake):
    async with serve(fake.handler, "127.0.0.1", 0) as server:
        port = list(server.sockets)[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


class Recorder:

    def __init__(self):
        self.opened = 0
        self.messages = []
        self.errors = []
        self.closes = []

    async def on_open(self):
        self.opened += 1

    async def on_message(self, message):
        self.messages.append(message)

    async def on_error(self, error):
        self.errors.append(error)

    async def on_close(self, code, reason):
        self.closes.append((code, reason))

    def callbacks(self):
        return SessionCallbacks(
            on_message=self.on_message,
            on_open=self.on_open,
            on_error=self.on_error,
            on_close=self.on_close,
        )


OPTIONS = SessionOptions(voice_name="Orus", system_instruction="Be brief.")


class TestMessageBuilders:

    def test_setup_message(self):
        msg = build_setup_message("gemini-live-2.5-flash-preview", OPTIONS)["setup"]

        assert msg["model"] == "models/gemini-live-2.5-flash-preview"
        assert msg["generationConfig"]["responseModalities"] == ["AUDIO"]
        voice = msg["generationConfig"]["speechConfig"]["voiceConfig"]["prebuiltVoiceConfig"]
        assert voice == {"voiceName": "Orus"}
        assert msg["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert msg["inputAudioTranscription"] == {}
        assert msg["outputAudioTranscription"] == {}

    def test_setup_without_instruction(self):
        msg = build_setup_message("models/x", SessionOptions(voice_name="Kore"))["setup"]

        assert msg["model"] == "models/x"
        assert "systemInstruction" not in msg

    def test_realtime_input(self):
        assert build_realtime_input(text="hi") == {"realtimeInput": {"text": "hi"}}
        assert build_realtime_input(audio={"data": "AA==", "mimeType": "audio/webm"}) == {
            "realtimeInput": {"audio": {"data": "AA==", "mimeType": "audio/webm"}}
        }
        with pytest.raises(ValueError):
            build_realtime_input()
        with pytest.raises(ValueError):
            build_realtime_input(audio={"data": "", "mimeType": ""}, text="both")


@pytest.mark.asyncio
async def test_session_round_trip(wait_until):
    fake = FakeGemini()
    recorder = Recorder()
    async with running(fake) as endpoint:
        session = await GeminiLiveSession.connect(
            api_key=API_KEY, model="gemini-live-2.5-flash-preview", options=OPTIONS,
            callbacks=recorder.callbacks(), endpoint=endpoint,
        )
        assert recorder.opened == 1
        assert fake.setups[0]["model"] == "models/gemini-live-2.5-flash-preview"

        await session.send_realtime_input(audio={"data": "AAAA", "mimeType": "audio/pcm;rate=16000"})
        await session.send_realtime_input(text="hello")
        await wait_until(lambda: len(recorder.messages) == 2)

        assert fake.inputs[0] == {"realtimeInput": {"audio": {"data": "AAAA", "mimeType": "audio/pcm;rate=16000"}}}
        assert recorder.messages[0] == {"serverContent": {"outputTranscription": {"text": "echo: hello"}}}

        await session.close()
        await session.close()
        assert session.closed
        assert recorder.closes == []
        with pytest.raises(SessionClosedError):
            await session.send_realtime_input(text="too late")


@pytest.mark.asyncio
async def test_rejected_model_raises_setup_error():
    fake = FakeGemini(rejected_models=["gemini-retired"])
    async with running(fake) as endpoint:
        with pytest.raises(SessionSetupError) as exc_info:
            await GeminiLiveSession.connect(
                api_key=API_KEY, model="gemini-retired", options=OPTIONS,
                callbacks=Recorder().callbacks(), endpoint=endpoint,
            )

    assert exc_info.value.code == 1008
    assert exc_info.value.model == "gemini-retired"


@pytest.mark.asyncio
async def test_missing_api_key_fails_without_connecting():
    fake = FakeGemini()
    async with running(fake) as endpoint:
        with pytest.raises(SessionSetupError):
            await GeminiLiveSession.connect(
                api_key=None, model="gemini-live-2.5-flash-preview", options=OPTIONS,
                callbacks=Recorder().callbacks(), endpoint=endpoint,
            )

    assert fake.setups == []


@pytest.mark.asyncio
async def test_unreachable_endpoint_raises_setup_error():
    async with running(FakeGemini()) as endpoint:
        pass

    with pytest.raises(SessionSetupError):
        await GeminiLiveSession.connect(
            api_key=API_KEY, model="gemini-live-2.5-flash-preview", options=OPTIONS,
            callbacks=Recorder().callbacks(), endpoint=endpoint,
        )


@pytest.mark.asyncio
async def test_setup_timeout():
    fake = FakeGemini(acknowledge=False)
    async with running(fake) as endpoint:
        with pytest.raises(SessionSetupError):
            await GeminiLiveSession.connect(
                api_key=API_KEY, model="gemini-live-2.5-flash-preview", options=OPTIONS,
                callbacks=Recorder().callbacks(), endpoint=endpoint, setup_timeout=0.1,
            )


@pytest.mark.asyncio
async def test_remote_close_is_reported(wait_until):
    fake = FakeGemini(close_after_ready=(1011, "internal error"))
    recorder = Recorder()
    async with running(fake) as endpoint:
        session = await GeminiLiveSession.connect(
            api_key=API_KEY, model="gemini-live-2.5-flash-preview", options=OPTIONS,
            callbacks=recorder.callbacks(), endpoint=endpoint,
        )
        await wait_until(lambda: recorder.closes)

        assert recorder.closes == [(1011, "internal error")]
        assert session.closed
        with pytest.raises(SessionClosedError):
            await session.send_realtime_input(text="hello?")
        await session.close()


@pytest.mark.asyncio
async def test_handler_falls_back_across_real_sessions(client_socket, wait_until):
    fake = FakeGemini(rejected_models=["gemini-a", "gemini-b"])
    async with running(fake) as endpoint:
        settings = RelaySettings(
            api_key=API_KEY,
            endpoint=endpoint,
            fallback_models=["gemini-a", "gemini-b", "gemini-c"],
        )
        handler = ConnectionHandler(client_socket, settings)

        session = await handler.open_session()

        assert session.model == "gemini-c"
        assert [s["model"] for s in fake.setups] == ["models/gemini-a", "models/gemini-b", "models/gemini-c"]

        await session.send_realtime_input(text="hi")
        await wait_until(lambda: len(client_socket.sent) == 1)
        assert client_socket.sent == [{"type": "transcript", "payload": {"sender": "ai", "text": "echo: hi"}}]
        await wait_until(lambda: handler.state.usage.session_tokens == 7)

        await handler.shutdown()
        await asyncio.sleep(0)
        assert session.closed

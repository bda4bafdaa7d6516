import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import numpy as np
import pytest

from domain.providers import ProviderConfig
from ports.transcriber import SessionCallbacks, TranscriptEvent


SAMPLE_RATE = 16000
CHUNK_DURATION_MS = 200


def generate_silence(duration_ms: int = CHUNK_DURATION_MS, sample_rate: int = SAMPLE_RATE) -> bytes:
    num_samples = int(sample_rate * duration_ms / 1000)
    return np.zeros(num_samples, dtype=np.int16).tobytes()


def generate_sine_wave(
    frequency: float = 440.0,
    duration_ms: int = CHUNK_DURATION_MS,
    amplitude: float = 0.8,
    sample_rate: int = SAMPLE_RATE,
) -> bytes:
    num_samples = int(sample_rate * duration_ms / 1000)
    t = np.arange(num_samples) / sample_rate
    signal = np.sin(2 * np.pi * frequency * t) * amplitude
    return (signal * 32767).astype(np.int16).tobytes()


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


_CLOSE = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, on_send: Callable[["FakeWebSocket", Any], None] | None = None) -> None:
        self.sent: list[Any] = []
        self.closed = False
        self.close_calls = 0
        self.on_send = on_send
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def sent_json(self) -> list[dict]:
        return [json.loads(m) for m in self.sent if isinstance(m, str) and m.startswith("{")]

    @property
    def sent_audio(self) -> list[bytes]:
        return [m for m in self.sent if isinstance(m, bytes)]

    def push(self, message: Any) -> None:
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def fail(self, error: Exception) -> None:
        self._incoming.put_nowait(error)

    def finish(self) -> None:
        self._incoming.put_nowait(_CLOSE)

    async def send(self, message: Any) -> None:
        if self.closed:
            raise ConnectionError("socket is closed")
        self.sent.append(message)
        if self.on_send is not None:
            self.on_send(self, message)

    async def close(self) -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self.finish()

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is _CLOSE:
            self._incoming.put_nowait(_CLOSE)
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    def __init__(self, ws: FakeWebSocket | None = None, error: Exception | None = None) -> None:
        self.ws = ws or FakeWebSocket()
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    @property
    def url(self) -> str:
        return self.calls[-1][0]

    @property
    def headers(self) -> dict:
        return self.calls[-1][1].get("additional_headers") or {}

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.ws


class CallbackRecorder:
    def __init__(self) -> None:
        self.statuses: list[str] = []
        self.transcripts: list[TranscriptEvent] = []
        self.errors: list[Exception] = []

    @property
    def callbacks(self) -> SessionCallbacks:
        return SessionCallbacks(
            on_status=lambda status: self.statuses.append(str(getattr(status, "value", status))),
            on_transcript=self.transcripts.append,
            on_error=self.errors.append,
        )


class RecordingDisplay:
    def __init__(self) -> None:
        self.statuses: list[str] = []
        self.transcripts: list[TranscriptEvent] = []
        self.final_transcripts: list[str] = []

    def show_status(self, status: str) -> None:
        self.statuses.append(status)

    def show_transcript(self, event: TranscriptEvent) -> None:
        self.transcripts.append(event)

    def show_final_transcript(self, text: str) -> None:
        self.final_transcripts.append(text)


class FakeTranscriptionSession:
    def __init__(
        self,
        callbacks: SessionCallbacks,
        start_error: Exception | None = None,
        connect_on_start: bool = True,
    ) -> None:
        self.callbacks = callbacks
        self.start_error = start_error
        self.connect_on_start = connect_on_start
        self.audio: list[bytes] = []
        self.start_calls = 0
        self.stop_calls = 0
        self.release_start = asyncio.Event()
        self.release_start.set()

    async def start(self) -> None:
        self.start_calls += 1
        self.callbacks.on_status("connecting")
        await self.release_start.wait()
        if self.start_error is not None:
            raise self.start_error
        if self.connect_on_start:
            self.callbacks.on_status("connected")

    def send_audio(self, chunk: bytes) -> None:
        self.audio.append(chunk)

    async def stop(self) -> None:
        self.stop_calls += 1
        if self.stop_calls == 1:
            self.callbacks.on_status("closed")

    def emit(self, text: str, is_final: bool) -> None:
        self.callbacks.on_transcript(TranscriptEvent(text=text, is_final=is_final))


class FakeSessionFactory:
    def __init__(self, **session_kwargs: Any) -> None:
        self.session_kwargs = session_kwargs
        self.sessions: list[FakeTranscriptionSession] = []
        self.options: list[Any] = []

    @property
    def last(self) -> FakeTranscriptionSession:
        return self.sessions[-1]

    def __call__(self, options: Any, callbacks: SessionCallbacks) -> FakeTranscriptionSession:
        self.options.append(options)
        session = FakeTranscriptionSession(callbacks, **self.session_kwargs)
        self.sessions.append(session)
        return session


class FakeCapture:
    def __init__(self, frames: list[bytes] | None = None, error: Exception | None = None) -> None:
        self._frames = list(frames or [])
        self._error = error
        self._stopped = asyncio.Event()
        self.started = False
        self.stop_calls = 0

    @property
    def sample_rate(self) -> int:
        return SAMPLE_RATE

    @property
    def chunk_duration_ms(self) -> int:
        return CHUNK_DURATION_MS

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stop_calls += 1
        self._stopped.set()

    async def read_frames(self) -> AsyncIterator[bytes]:
        for frame in self._frames:
            yield frame
            await asyncio.sleep(0)
        if self._error is not None:
            raise self._error
        await self._stopped.wait()


class FakeRecorder:
    def __init__(self, window_id: str = "window-1", start_error: Exception | None = None) -> None:
        self.window_id = window_id
        self.start_error = start_error
        self.handler: Callable[[str, dict], None] | None = None
        self.calls: list[tuple] = []

    def set_event_handler(self, handler: Callable[[str, dict], None]) -> None:
        self.handler = handler

    async def prepare_desktop_audio_recording(self) -> str:
        self.calls.append(("prepare",))
        return self.window_id

    async def start_recording(self, window_id: str, upload_token: str) -> None:
        self.calls.append(("start", window_id, upload_token))
        if self.start_error is not None:
            raise self.start_error

    async def stop_recording(self, window_id: str) -> None:
        self.calls.append(("stop", window_id))

    async def close(self) -> None:
        self.calls.append(("close",))

    def emit(self, event: str, payload: dict | None = None) -> None:
        assert self.handler is not None
        self.handler(event, payload or {})


class HangingRecorder(FakeRecorder):
    """Recording helper that never acknowledges a stop request."""

    async def stop_recording(self, window_id: str) -> None:
        self.calls.append(("stop", window_id))
        await asyncio.Event().wait()


def mock_http_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_provider_config(provider: str, **overrides: Any) -> ProviderConfig:
    values: dict[str, Any] = {
        "provider": provider,
        "api_key": "test-key",
        "sample_rate": SAMPLE_RATE,
        "channels": 1,
        "encoding": "linear16",
        "settings": {},
    }
    values.update(overrides)
    return ProviderConfig(**values)


@pytest.fixture
def recorder() -> CallbackRecorder:
    return CallbackRecorder()


@pytest.fixture
def display() -> RecordingDisplay:
    return RecordingDisplay()


@pytest.fixture
def fake_ws() -> FakeWebSocket:
    return FakeWebSocket()


@pytest.fixture
def connector(fake_ws: FakeWebSocket) -> FakeConnector:
    return FakeConnector(fake_ws)

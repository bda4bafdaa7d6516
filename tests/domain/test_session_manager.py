import asyncio

import pytest

from domain.errors import ProviderConnectionError
from domain.providers import ASSEMBLY, DEEPGRAM, CaptureMode
from domain.session import StartOptions
from domain.session_manager import SessionManager
from domain.state import SessionState
from ports.transcriber import TranscriptEvent
from tests.conftest import (
    FakeCapture,
    FakeSessionFactory,
    RecordingDisplay,
    generate_silence,
    generate_sine_wave,
    settle,
)


class BlockingSessionFactory(FakeSessionFactory):
    def __call__(self, options, callbacks):
        session = super().__call__(options, callbacks)
        session.release_start.clear()
        return session


class FakeWav:
    def __init__(self, opens: bool = True) -> None:
        self.opens = opens
        self.chunks: list[bytes] = []
        self.closed = False

    def open(self) -> bool:
        return self.opens

    def write(self, chunk: bytes) -> None:
        self.chunks.append(chunk)

    def close(self):
        self.closed = True


def build_manager(factory=None, capture=None, wav=None, display=None):
    factory = factory or FakeSessionFactory()
    display = display or RecordingDisplay()
    captures: list[int] = []

    def capture_factory(sample_rate: int):
        captures.append(sample_rate)
        return capture or FakeCapture()

    manager = SessionManager(
        factory,
        display,
        capture_factory=capture_factory,
        recorder_factory=(lambda options: wav) if wav is not None else None,
    )
    return manager, factory, display, captures


class TestStart:
    @pytest.mark.asyncio
    async def test_start_connects_and_forwards_audio(self):
        frames = [generate_sine_wave() for _ in range(3)]
        manager, factory, display, captures = build_manager(capture=FakeCapture(frames))

        assert await manager.start(StartOptions())
        await settle(20)

        assert manager.state is SessionState.CONNECTED
        assert display.statuses == ["connecting", "connected"]
        assert factory.last.audio == frames
        assert captures == [16000]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_interim_then_final(self):
        manager, factory, display, _ = build_manager(
            capture=FakeCapture([generate_sine_wave() for _ in range(3)])
        )
        await manager.start(StartOptions(transcription_type=ASSEMBLY))
        await settle(20)

        factory.last.emit("te", is_final=False)
        factory.last.emit("test", is_final=True)

        assert [(t.text, t.is_final) for t in display.transcripts] == [("te", False), ("test", True)]
        assert all(t.provider == ASSEMBLY for t in display.transcripts)
        assert manager.session.rolling_final_transcript == "test"

        assert display.final_transcripts == ["test"]

        await manager.stop()
        assert display.final_transcripts == ["test", "test"]
        assert display.statuses == ["connecting", "connected", "stopped"]

    @pytest.mark.asyncio
    async def test_requested_sample_rate_is_resolved(self):
        factory = FakeSessionFactory()
        manager = SessionManager(factory, RecordingDisplay(), resolve_sample_rate=lambda rate: 48000)
        await manager.start(StartOptions(sample_rate=44100))
        assert factory.options[0].sample_rate == 48000
        await manager.stop()

    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self):
        manager, factory, display, _ = build_manager()
        assert await manager.start(StartOptions())
        adapter = factory.last

        assert not await manager.start(StartOptions(transcription_type=ASSEMBLY))

        assert len(factory.sessions) == 1
        assert manager.session.adapter is adapter
        assert display.statuses.count("connecting") == 1
        await manager.stop()

    @pytest.mark.asyncio
    async def test_concurrent_starts_create_one_session(self):
        manager, factory, _, _ = build_manager()
        results = await asyncio.gather(manager.start(StartOptions()), manager.start(StartOptions()))
        assert sorted(results) == [False, True]
        assert len(factory.sessions) == 1
        await manager.stop()

    @pytest.mark.asyncio
    async def test_failed_start(self):
        factory = FakeSessionFactory(start_error=ProviderConnectionError("refused", provider=DEEPGRAM))
        manager, _, display, captures = build_manager(factory=factory)

        assert not await manager.start(StartOptions())

        assert display.statuses == ["connecting", "error"]
        assert display.transcripts[-1].text == ""
        assert not display.transcripts[-1].is_final
        assert manager.state is SessionState.IDLE
        assert not manager.active
        assert captures == []
        assert factory.last.stop_calls == 1

    @pytest.mark.asyncio
    async def test_restart_after_failure(self):
        factory = FakeSessionFactory(start_error=ProviderConnectionError("refused"))
        manager, _, _, _ = build_manager(factory=factory)
        await manager.start(StartOptions())
        factory.session_kwargs = {}
        assert await manager.start(StartOptions())
        assert manager.state is SessionState.CONNECTED
        await manager.stop()


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_without_session(self):
        manager, _, display, _ = build_manager()
        assert not await manager.stop()
        assert display.statuses == []

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        capture = FakeCapture()
        manager, factory, display, _ = build_manager(capture=capture)
        await manager.start(StartOptions())
        factory.last.emit("done", is_final=True)

        assert await manager.stop()
        assert not await manager.stop()

        assert factory.last.stop_calls == 1
        assert capture.stop_calls == 1
        assert display.statuses.count("stopped") == 1
        assert display.final_transcripts == ["done", "done"]
        assert manager.query_status() == {"active": False, "state": "idle", "provider": None}

    @pytest.mark.asyncio
    async def test_concurrent_stops(self):
        manager, factory, display, _ = build_manager()
        await manager.start(StartOptions())
        results = await asyncio.gather(manager.stop(), manager.stop())
        assert results == [True, False]
        assert factory.last.stop_calls == 1
        assert display.statuses.count("stopped") == 1

    @pytest.mark.asyncio
    async def test_adapter_close_during_stop_is_not_reported(self):
        manager, _, display, _ = build_manager()
        await manager.start(StartOptions())
        await manager.stop()
        assert "closed" not in display.statuses

    @pytest.mark.asyncio
    async def test_no_final_transcript_when_nothing_recognized(self):
        manager, _, display, _ = build_manager()
        await manager.start(StartOptions())
        await manager.stop()
        assert display.final_transcripts == []

    @pytest.mark.asyncio
    async def test_stop_while_connecting(self):
        manager, factory, display, captures = build_manager(factory=BlockingSessionFactory())
        start_task = asyncio.create_task(manager.start(StartOptions()))
        await settle()
        assert manager.state is SessionState.CONNECTING

        assert await manager.stop()

        assert await start_task is False
        assert display.statuses == ["connecting", "stopped"]
        assert captures == []
        assert factory.last.stop_calls == 1
        assert not manager.active


class TestAdapterEvents:
    @pytest.mark.asyncio
    async def test_error_status_ends_session(self):
        capture = FakeCapture()
        manager, factory, display, _ = build_manager(capture=capture)
        await manager.start(StartOptions())

        factory.last.callbacks.on_status("error")
        await settle(30)

        assert display.statuses == ["connecting", "connected", "error"]
        assert manager.state is SessionState.IDLE
        assert capture.stop_calls == 1
        assert factory.last.stop_calls == 1

    @pytest.mark.asyncio
    async def test_remote_close_stops_session(self):
        manager, factory, display, _ = build_manager()
        await manager.start(StartOptions(transcription_type=DEEPGRAM))
        factory.last.emit("hello", is_final=True)
        factory.last.emit("hello world", is_final=True)

        factory.last.callbacks.on_status("closed")
        await settle(30)

        assert display.statuses == ["connecting", "connected", "closed", "stopped"]
        assert display.final_transcripts == ["hello", "hello world", "hello world"]
        assert not manager.active

    @pytest.mark.asyncio
    async def test_each_final_updates_the_rolling_transcript(self):
        manager, factory, display, _ = build_manager()
        await manager.start(StartOptions(transcription_type=ASSEMBLY))

        factory.last.emit("one", is_final=True)
        factory.last.emit("tw", is_final=False)
        factory.last.emit("two", is_final=True)

        assert display.final_transcripts == ["one", "one two"]
        assert len(display.transcripts) == 3
        await manager.stop()
        assert display.final_transcripts == ["one", "one two", "one two"]

    @pytest.mark.asyncio
    async def test_empty_transcripts_are_dropped(self):
        manager, factory, display, _ = build_manager()
        await manager.start(StartOptions())
        factory.last.emit("   ", is_final=True)
        assert display.transcripts == []
        await manager.stop()

    @pytest.mark.asyncio
    async def test_events_after_stop_are_ignored(self):
        manager, factory, display, _ = build_manager()
        await manager.start(StartOptions())
        adapter = factory.last
        await manager.stop()

        adapter.emit("late", is_final=True)
        adapter.callbacks.on_status("connected")

        assert display.transcripts == []
        assert display.statuses[-1] == "stopped"

    @pytest.mark.asyncio
    async def test_transcript_entry_point(self):
        manager, _, display, _ = build_manager()
        await manager.start(StartOptions(transcription_type=ASSEMBLY))
        manager.transcript(TranscriptEvent(text="one", is_final=True))
        manager.transcript(TranscriptEvent(text="two", is_final=True))
        assert manager.session.rolling_final_transcript == "one two"
        await manager.stop()


class TestCapture:
    @pytest.mark.asyncio
    async def test_silence_warning_and_recovery(self):
        frames = [generate_silence() for _ in range(25)] + [generate_sine_wave()]
        manager, _, display, _ = build_manager(capture=FakeCapture(frames))
        await manager.start(StartOptions())
        await settle(200)

        assert display.statuses == ["connecting", "connected", "no-audio", "connected"]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_short_silence_is_not_reported(self):
        frames = [generate_silence() for _ in range(10)]
        manager, _, display, _ = build_manager(capture=FakeCapture(frames))
        await manager.start(StartOptions())
        await settle(100)
        assert "no-audio" not in display.statuses
        await manager.stop()

    @pytest.mark.asyncio
    async def test_capture_error_ends_session(self):
        capture = FakeCapture([generate_sine_wave()], error=RuntimeError("device unplugged"))
        manager, factory, display, _ = build_manager(capture=capture)
        await manager.start(StartOptions())
        await settle(50)

        assert display.statuses == ["connecting", "connected", "error"]
        assert not manager.active
        assert capture.stop_calls == 1
        assert factory.last.stop_calls == 1

    @pytest.mark.asyncio
    async def test_external_mode_does_not_capture(self):
        manager, factory, _, captures = build_manager()
        await manager.start(StartOptions(capture_mode=CaptureMode.EXTERNAL))

        manager.audio_chunk(generate_sine_wave())

        assert captures == []
        assert factory.last.audio == []
        await manager.stop()

    @pytest.mark.asyncio
    async def test_wav_recording(self):
        frames = [generate_sine_wave() for _ in range(2)]
        wav = FakeWav()
        manager, _, _, _ = build_manager(capture=FakeCapture(frames), wav=wav)
        await manager.start(StartOptions())
        await settle(20)
        await manager.stop()

        assert wav.chunks == frames
        assert wav.closed

    @pytest.mark.asyncio
    async def test_wav_open_failure_keeps_session(self):
        wav = FakeWav(opens=False)
        manager, _, _, _ = build_manager(capture=FakeCapture([generate_sine_wave()]), wav=wav)
        assert await manager.start(StartOptions())
        await settle(20)
        await manager.stop()
        assert wav.chunks == []
        assert not wav.closed

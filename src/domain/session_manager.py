"""Owns the single active transcription session.

Every exit path (user stop, adapter error, remote close, capture failure,
failed start) funnels into ``_end``, which runs the teardown exactly once and
returns the manager to idle.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from functools import partial
from typing import Any

from domain.audio_levels import SilenceMonitor, ThrottledChunkLog, pcm16_peak
from domain.providers import DEFAULT_SAMPLE_RATE, Status
from domain.session import Session, StartOptions
from domain.state import SessionState
from ports.audio import AudioCapturePort
from ports.display import DisplayPort
from ports.transcriber import SessionCallbacks, TranscriptEvent, TranscriptionSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[StartOptions, SessionCallbacks], TranscriptionSession]
CaptureFactory = Callable[[int], AudioCapturePort]
RecorderFactory = Callable[[StartOptions], Any]


def _default_sample_rate(requested: int | None) -> int:
    return requested or DEFAULT_SAMPLE_RATE


class SessionManager:
    def __init__(
        self,
        session_factory: SessionFactory,
        display: DisplayPort,
        capture_factory: CaptureFactory | None = None,
        recorder_factory: RecorderFactory | None = None,
        resolve_sample_rate: Callable[[int | None], int] = _default_sample_rate,
    ) -> None:
        self._session_factory = session_factory
        self._display = display
        self._capture_factory = capture_factory
        self._recorder_factory = recorder_factory
        self._resolve_sample_rate = resolve_sample_rate
        self._session: Session | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session else SessionState.IDLE

    @property
    def active(self) -> bool:
        return self._session is not None

    def query_status(self) -> dict[str, Any]:
        session = self._session
        return {
            "active": session is not None,
            "state": self.state.value,
            "provider": session.provider if session else None,
        }

    async def start(self, options: StartOptions) -> bool:
        if self._session is not None:
            logger.warning(
                "Transcription already in progress (%s, %s); ignoring start",
                self._session.provider, self._session.state.value,
            )
            return False

        options = dataclasses.replace(
            options, sample_rate=self._resolve_sample_rate(options.sample_rate)
        )
        session = Session(provider=options.transcription_type, capture_mode=options.capture_mode)
        self._session = session
        session.transition(SessionState.CONNECTING)
        self._publish(session, Status.CONNECTING)
        logger.info(
            "Starting %s session (rate=%s, channels=%s, mode=%s)",
            session.provider, options.sample_rate, options.channels, session.capture_mode.value,
        )

        callbacks = SessionCallbacks(
            on_status=partial(self._on_adapter_status, session),
            on_transcript=partial(self._on_adapter_transcript, session),
            on_error=partial(self._on_adapter_error, session),
        )
        try:
            session.adapter = self._session_factory(options, callbacks)
            session.start_task = asyncio.ensure_future(session.adapter.start())
            await session.start_task
        except asyncio.CancelledError:
            if session.ending:
                return False
            raise
        except Exception as exc:
            logger.error("Failed to start %s session: %s", session.provider, exc)
            await self._fail_start(session)
            return False

        if session.ending:
            return False

        if session.forwards_audio:
            try:
                await self._start_capture(session, options)
            except Exception as exc:
                logger.error("Failed to start audio capture: %s", exc)
                await self._fail_start(session)
                return False
        return True

    async def stop(self) -> bool:
        session = self._session
        if session is None:
            return False
        if session.ending:
            await session.finished.wait()
            return False
        await self._end(session, SessionState.STOPPED)
        return True

    def audio_chunk(self, chunk: bytes) -> None:
        session = self._session
        if session is None or not session.active or not session.forwards_audio:
            return
        if not chunk or session.adapter is None:
            return
        session.adapter.send_audio(chunk)
        if session.wav_recorder is not None:
            session.wav_recorder.write(chunk)

    def transcript(self, event: TranscriptEvent) -> None:
        session = self._session
        if session is None or not session.active:
            return
        self._on_adapter_transcript(session, event)

    async def _start_capture(self, session: Session, options: StartOptions) -> None:
        if self._recorder_factory is not None:
            recorder = self._recorder_factory(options)
            if recorder is not None and recorder.open():
                session.wav_recorder = recorder
        if self._capture_factory is None:
            return
        capture = self._capture_factory(options.sample_rate)
        session.capture = capture
        await capture.start()
        session.pump_task = asyncio.create_task(self._pump_audio(session, capture))

    async def _pump_audio(self, session: Session, capture: AudioCapturePort) -> None:
        monitor = SilenceMonitor(capture.chunk_duration_ms)
        chunk_log = ThrottledChunkLog()
        try:
            async for chunk in capture.read_frames():
                if session is not self._session or not session.active:
                    break
                self.audio_chunk(chunk)
                peak = pcm16_peak(chunk)
                if chunk_log.should_log():
                    logger.debug(
                        "Audio chunk: %d bytes @ %dHz, peak=%d",
                        len(chunk), capture.sample_rate, peak,
                    )
                signal = monitor.observe(peak)
                if signal == "no-audio":
                    logger.warning(
                        "Capture delivered %d consecutive silent chunks; "
                        "system audio recording permission may be missing",
                        monitor.threshold,
                    )
                    self._publish(session, Status.NO_AUDIO)
                elif signal == "recovered" and session.active:
                    self._publish(session, Status.CONNECTED)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Audio capture error: %s", exc)
            if session is self._session and not session.ending:
                await self._end(session, SessionState.ERROR)

    def _on_adapter_status(self, session: Session, status: str) -> None:
        if session is not self._session or session.ending:
            return
        status = Status(status)
        if status is Status.CONNECTED:
            if session.state is SessionState.CONNECTING:
                session.transition(SessionState.CONNECTED)
            self._publish(session, status)
        elif status is Status.ERROR:
            self._spawn(self._end(session, SessionState.ERROR))
        elif status is Status.CLOSED:
            self._publish(session, status)
            if session.state is SessionState.CONNECTED:
                logger.info("%s closed the session remotely", session.provider)
                self._spawn(self._end(session, SessionState.STOPPED))
        else:
            self._publish(session, status)

    def _on_adapter_transcript(self, session: Session, event: TranscriptEvent) -> None:
        if session is not self._session or not event.text.strip():
            return
        event = dataclasses.replace(event, provider=session.provider)
        updated = session.accumulate(event)
        self._display.show_transcript(event)
        if updated:
            logger.info("Transcript: %s", event.text)
            self._display.show_final_transcript(session.rolling_final_transcript)

    def _on_adapter_error(self, session: Session, error: Exception) -> None:
        logger.error("%s transcription error: %s", session.provider, error)

    async def _fail_start(self, session: Session) -> None:
        if session.ending:
            await session.finished.wait()
        else:
            await self._end(session, SessionState.ERROR)
        self._display.show_transcript(TranscriptEvent(text="", is_final=False, provider=session.provider))

    async def _end(self, session: Session, outcome: SessionState) -> None:
        if session.ending:
            return
        session.ending = True
        session.transition(outcome)
        if outcome is SessionState.ERROR:
            self._publish(session, Status.ERROR, force=True)
        try:
            await self._release(session)
        finally:
            session.transition(SessionState.IDLE)
            if self._session is session:
                self._session = None
            session.finished.set()

        if outcome is SessionState.STOPPED:
            self._publish(session, Status.STOPPED, force=True)
            if session.rolling_final_transcript:
                self._display.show_final_transcript(session.rolling_final_transcript)

    async def _release(self, session: Session) -> None:
        current = asyncio.current_task()
        if session.pump_task is not None and session.pump_task is not current:
            session.pump_task.cancel()
            await asyncio.gather(session.pump_task, return_exceptions=True)
        if session.capture is not None:
            try:
                await session.capture.stop()
            except Exception:
                logger.exception("Failed to stop audio capture")
        if session.start_task is not None and not session.start_task.done():
            session.start_task.cancel()
            await asyncio.gather(session.start_task, return_exceptions=True)
        if session.adapter is not None:
            try:
                await session.adapter.stop()
            except Exception:
                logger.exception("Failed to stop %s session", session.provider)
        if session.wav_recorder is not None:
            session.wav_recorder.close()

    def _publish(self, session: Session, status: Status, force: bool = False) -> None:
        value = status.value
        if session.last_status == value and not force:
            return
        session.last_status = value
        self._display.show_status(value)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

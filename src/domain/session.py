import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from domain.providers import (
    DEEPGRAM,
    CaptureMode,
    is_replacing_provider,
    validate_provider,
)
from domain.state import SessionState, validate_transition
from ports.transcriber import TranscriptEvent

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("1", "true", "yes", "on")


def _positive_int(value: Any) -> int | None:
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        return None
    return numeric if numeric > 0 else None


@dataclass(frozen=True)
class StartOptions:
    transcription_type: str = DEEPGRAM
    sample_rate: int | None = None
    channels: int | None = None
    encoding: str | None = None
    capture_mode: CaptureMode = CaptureMode.DIRECT

    @classmethod
    def from_payload(cls, payload: dict | None, default_provider: str = DEEPGRAM) -> "StartOptions":
        """Builds options from a control request, ignoring malformed numbers."""
        payload = payload or {}
        provider = payload.get("transcriptionType") or payload.get("provider") or default_provider
        external = payload.get("external")
        if isinstance(external, str):
            external = external.strip().lower() in _TRUE_VALUES
        mode = payload.get("captureMode")
        if mode == CaptureMode.EXTERNAL.value or external:
            capture_mode = CaptureMode.EXTERNAL
        else:
            capture_mode = CaptureMode.DIRECT
        encoding = payload.get("encoding")
        return cls(
            transcription_type=validate_provider(str(provider)),
            sample_rate=_positive_int(payload.get("sampleRate")),
            channels=_positive_int(payload.get("channels")),
            encoding=encoding if isinstance(encoding, str) and encoding else None,
            capture_mode=capture_mode,
        )


@dataclass(eq=False)
class Session:
    """One capture-and-transcribe run. Mutated only by the session manager."""

    provider: str
    capture_mode: CaptureMode = CaptureMode.DIRECT
    state: SessionState = SessionState.IDLE
    rolling_final_transcript: str = ""
    adapter: Any = field(default=None, repr=False)
    start_task: asyncio.Task | None = field(default=None, repr=False)
    pump_task: asyncio.Task | None = field(default=None, repr=False)
    wav_recorder: Any = field(default=None, repr=False)
    capture: Any = field(default=None, repr=False)
    last_status: str | None = None
    ending: bool = False
    finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def active(self) -> bool:
        return self.state in (SessionState.CONNECTING, SessionState.CONNECTED)

    @property
    def forwards_audio(self) -> bool:
        return self.capture_mode is CaptureMode.DIRECT

    def transition(self, target: SessionState) -> None:
        validate_transition(self.state, target)
        logger.info("State: %s -> %s", self.state.name, target.name)
        self.state = target

    def accumulate(self, event: TranscriptEvent) -> bool:
        if not event.is_final or not event.text:
            return False
        if is_replacing_provider(self.provider):
            self.rolling_final_transcript = event.text
        else:
            self.rolling_final_transcript = f"{self.rolling_final_transcript} {event.text}".strip()
        return True

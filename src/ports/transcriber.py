from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool
    provider: str = ""
    raw: Any = field(default=None, compare=False, repr=False)


StatusCallback = Callable[[str], None]
TranscriptCallback = Callable[[TranscriptEvent], None]
ErrorCallback = Callable[[Exception], None]


@dataclass(frozen=True)
class SessionCallbacks:
    on_status: StatusCallback
    on_transcript: TranscriptCallback
    on_error: ErrorCallback


class TranscriptionSession(Protocol):
    async def start(self) -> None: ...
    def send_audio(self, chunk: bytes) -> None: ...
    async def stop(self) -> None: ...

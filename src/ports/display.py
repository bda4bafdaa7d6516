from typing import Protocol

from ports.transcriber import TranscriptEvent


class DisplayPort(Protocol):
    def show_status(self, status: str) -> None: ...
    def show_transcript(self, event: TranscriptEvent) -> None: ...
    def show_final_transcript(self, text: str) -> None: ...

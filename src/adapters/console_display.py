import logging
import sys
from typing import TextIO

from ports.transcriber import TranscriptEvent

logger = logging.getLogger(__name__)


class ConsoleDisplay:
    """Renders partials on one rewritable line and finals on their own lines."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout
        self._partial_visible = False
        self.last_status: str | None = None

    def show_status(self, status: str) -> None:
        self.last_status = status
        logger.info("Status: %s", status)

    def show_transcript(self, event: TranscriptEvent) -> None:
        if event.is_final:
            self._clear_partial()
            self._stream.write(f"[{event.provider}] {event.text}\n")
            logger.debug("Transcript: %s", event.text)
        elif event.text:
            self._stream.write(f"\r\033[K... {event.text}")
            self._partial_visible = True
        else:
            self._clear_partial()
        self._stream.flush()

    def show_final_transcript(self, text: str) -> None:
        self._clear_partial()
        logger.info("Final transcript: %s", text)
        self._stream.write(f"\n{text}\n")
        self._stream.flush()

    def _clear_partial(self) -> None:
        if self._partial_visible:
            self._stream.write("\r\033[K")
            self._partial_visible = False

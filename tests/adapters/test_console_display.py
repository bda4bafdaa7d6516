import io
import logging

from adapters.console_display import ConsoleDisplay
from ports.transcriber import TranscriptEvent


class TestConsoleDisplay:
    def test_status_is_logged(self, caplog):
        display = ConsoleDisplay(io.StringIO())
        with caplog.at_level(logging.INFO):
            display.show_status("connected")
        assert display.last_status == "connected"
        assert "Status: connected" in caplog.text

    def test_partial_then_final(self):
        stream = io.StringIO()
        display = ConsoleDisplay(stream)
        display.show_transcript(TranscriptEvent(text="hel", is_final=False, provider="deepgram"))
        display.show_transcript(TranscriptEvent(text="hello", is_final=True, provider="deepgram"))

        output = stream.getvalue()
        assert "... hel" in output
        assert output.endswith("\r\033[K[deepgram] hello\n")

    def test_empty_event_clears_partial(self):
        stream = io.StringIO()
        display = ConsoleDisplay(stream)
        display.show_transcript(TranscriptEvent(text="hel", is_final=False))
        display.show_transcript(TranscriptEvent(text="", is_final=False))
        assert stream.getvalue().endswith("\r\033[K")

    def test_final_transcript(self, caplog):
        stream = io.StringIO()
        display = ConsoleDisplay(stream)
        with caplog.at_level(logging.INFO):
            display.show_final_transcript("all done")
        assert stream.getvalue() == "\nall done\n"
        assert "Final transcript: all done" in caplog.text

import time

import numpy as np

PCM16_BYTES_PER_SAMPLE = 2
SILENT_CHUNK_WINDOW_MS = 5000
AUDIO_DEBUG_INTERVAL_SECONDS = 2.0


def pcm16_peak(chunk: bytes) -> int:
    usable = len(chunk) - len(chunk) % PCM16_BYTES_PER_SAMPLE
    if usable < PCM16_BYTES_PER_SAMPLE:
        return 0
    samples = np.frombuffer(chunk[:usable], dtype="<i2").astype(np.int32)
    return int(np.abs(samples).max())


class SilenceMonitor:
    """Counts consecutive all-zero chunks to spot a capture without permission."""

    def __init__(self, chunk_duration_ms: int, window_ms: int = SILENT_CHUNK_WINDOW_MS) -> None:
        self._threshold = max(1, round(window_ms / chunk_duration_ms))
        self._consecutive_silent = 0
        self._warning_emitted = False

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def warning_emitted(self) -> bool:
        return self._warning_emitted

    def observe(self, peak: int) -> str | None:
        """Returns "no-audio" when silence starts, "recovered" when it ends."""
        if peak > 0:
            self._consecutive_silent = 0
            if self._warning_emitted:
                self._warning_emitted = False
                return "recovered"
            return None

        self._consecutive_silent += 1
        if not self._warning_emitted and self._consecutive_silent >= self._threshold:
            self._warning_emitted = True
            return "no-audio"
        return None

    def reset(self) -> None:
        self._consecutive_silent = 0
        self._warning_emitted = False


class ThrottledChunkLog:
    def __init__(self, interval_seconds: float = AUDIO_DEBUG_INTERVAL_SECONDS) -> None:
        self._interval = interval_seconds
        self._last = float("-inf")

    def should_log(self) -> bool:
        now = time.monotonic()
        if now - self._last < self._interval:
            return False
        self._last = now
        return True

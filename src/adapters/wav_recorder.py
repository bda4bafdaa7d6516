import logging
import wave
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

SAMPLE_WIDTH_BYTES = 2


def build_wav_path(output_dir: str | Path, now: datetime | None = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y-%m-%dT%H-%M-%S")
    return Path(output_dir).expanduser() / f"loopback-{stamp}.wav"


class WavRecorder:
    """Archives forwarded PCM16 chunks. I/O failures are logged and disable the recorder."""

    def __init__(self, path: str | Path, sample_rate: int = 16000, channels: int = 1) -> None:
        self._path = Path(path)
        self._sample_rate = sample_rate
        self._channels = channels
        self._file: wave.Wave_write | None = None
        self._bytes_written = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._file is not None

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    def open(self) -> bool:
        if self._file is not None:
            return True
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            wav = wave.open(str(self._path), "wb")
            wav.setnchannels(self._channels)
            wav.setsampwidth(SAMPLE_WIDTH_BYTES)
            wav.setframerate(self._sample_rate)
        except (OSError, wave.Error):
            logger.exception("Failed to open WAV file %s", self._path)
            return False
        self._file = wav
        self._bytes_written = 0
        logger.info("Saving loopback audio to %s", self._path)
        return True

    def write(self, chunk: bytes) -> None:
        if self._file is None or not chunk:
            return
        try:
            self._file.writeframes(chunk)
        except (OSError, wave.Error):
            logger.exception("Failed to write WAV data to %s", self._path)
            self._abandon()
            return
        self._bytes_written += len(chunk)

    def close(self) -> Path | None:
        if self._file is None:
            return None
        wav, self._file = self._file, None
        try:
            wav.close()
        except (OSError, wave.Error):
            logger.exception("Failed to finalize WAV file %s", self._path)
            return None
        logger.info("Saved %d bytes of loopback audio to %s", self._bytes_written, self._path)
        return self._path

    def _abandon(self) -> None:
        wav, self._file = self._file, None
        try:
            wav.close()
        except (OSError, wave.Error):
            logger.debug("Error closing abandoned WAV file", exc_info=True)

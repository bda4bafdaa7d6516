import asyncio
import logging
import os
from collections.abc import AsyncIterator

import janus
import numpy as np
import sounddevice as sd

logger = logging.getLogger(__name__)

QUEUE_MAX_CHUNKS = 100
READ_POLL_SECONDS = 1.0


class CaptureError(RuntimeError):
    pass


class SounddeviceCapture:
    """Loopback tee: mono PCM16 little-endian chunks of ``chunk_duration_ms``."""

    def __init__(
        self,
        device: str | int | None = None,
        sample_rate: int = 16000,
        chunk_duration_ms: int = 200,
        mute: bool = False,
    ) -> None:
        self._device = device
        self._sample_rate = sample_rate
        self._chunk_duration_ms = chunk_duration_ms
        self._frame_size = int(sample_rate * chunk_duration_ms / 1000)
        self._mute = mute
        self._stream: sd.InputStream | None = None
        self._queue: janus.Queue[bytes] | None = None
        self._error: Exception | None = None
        self._dropped = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def chunk_duration_ms(self) -> int:
        return self._chunk_duration_ms

    @property
    def mute(self) -> bool:
        return self._mute

    async def start(self) -> None:
        if self._stream is not None:
            return
        self._queue = janus.Queue(maxsize=QUEUE_MAX_CHUNKS)
        self._error = None
        queue = self._queue

        def audio_callback(indata: np.ndarray, frames: int, time_info, status) -> None:
            if status:
                logger.warning("Audio capture status: %s", status)
            pcm_bytes = (np.clip(indata[:, 0], -1.0, 1.0) * 32767).astype("<i2").tobytes()
            try:
                queue.sync_q.put_nowait(pcm_bytes)
            except janus.SyncQueueFull:
                self._dropped += 1
            except janus.SyncQueueShutDown:
                pass

        def finished_callback() -> None:
            if self._stream is None:
                return
            self._error = CaptureError("Capture stream ended unexpectedly")
            try:
                # empty chunk wakes the reader
                queue.sync_q.put_nowait(b"")
            except (janus.SyncQueueFull, janus.SyncQueueShutDown):
                pass

        device = self._resolve_device()
        try:
            self._stream = sd.InputStream(
                device=device,
                samplerate=self._sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self._frame_size,
                callback=audio_callback,
                finished_callback=finished_callback,
            )
            self._stream.start()
        except sd.PortAudioError as exc:
            self._stream = None
            await self._close_queue()
            raise CaptureError(f"Failed to open capture device {device!r}: {exc}") from exc
        logger.info(
            "Audio capture started (device=%s, rate=%d, chunk=%dms, mute=%s)",
            device, self._sample_rate, self._chunk_duration_ms, self._mute,
        )

    async def stop(self) -> None:
        if self._stream:
            stream, self._stream = self._stream, None
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError:
                logger.warning("Error while closing capture stream", exc_info=True)
        await self._close_queue()
        if self._dropped:
            logger.debug("Capture dropped %d chunks while the consumer lagged", self._dropped)
            self._dropped = 0

    async def read_frames(self) -> AsyncIterator[bytes]:
        queue = self._queue
        if queue is None:
            return
        while True:
            try:
                chunk = await asyncio.wait_for(queue.async_q.get(), timeout=READ_POLL_SECONDS)
            except asyncio.TimeoutError:
                chunk = b""
            except janus.AsyncQueueShutDown:
                break
            if chunk:
                yield chunk
            elif self._error is not None:
                raise self._error

    async def _close_queue(self) -> None:
        if self._queue is not None:
            queue, self._queue = self._queue, None
            queue.close()
            await queue.wait_closed()

    def _resolve_device(self) -> str | int | None:
        if self._device is None:
            return None
        if isinstance(self._device, int):
            return self._device
        try:
            return int(self._device)
        except ValueError:
            pass
        for i, dev in enumerate(sd.query_devices()):
            if self._device.lower() in dev["name"].lower() and dev["max_input_channels"] > 0:
                logger.info("Resolved device '%s' -> %d (%s)", self._device, i, dev["name"])
                return i
        os.environ["PIPEWIRE_NODE"] = self._device
        logger.info("Device '%s' not in PortAudio, set PIPEWIRE_NODE for PipeWire routing", self._device)
        return None

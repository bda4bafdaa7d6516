from typing import AsyncIterator, Protocol


class AudioCapturePort(Protocol):
    @property
    def sample_rate(self) -> int: ...

    @property
    def chunk_duration_ms(self) -> int: ...

    async def start(self) -> None: ...
    async def stop(self) -> None: ...
    def read_frames(self) -> AsyncIterator[bytes]: ...

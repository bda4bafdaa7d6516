from typing import Any, Callable, Protocol

RecorderEventHandler = Callable[[str, dict[str, Any]], None]


class RecorderPort(Protocol):
    """Out-of-process managed recording helper."""

    def set_event_handler(self, handler: RecorderEventHandler) -> None: ...
    async def prepare_desktop_audio_recording(self) -> str: ...
    async def start_recording(self, window_id: str, upload_token: str) -> None: ...
    async def stop_recording(self, window_id: str) -> None: ...
    async def close(self) -> None: ...

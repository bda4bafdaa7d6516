"""WebSocket bridge to the out-of-process Recall recording helper.

Requests are ``{"id", "method", "params"}`` and are answered by
``{"id", "result"}`` or ``{"id", "error"}``. Frames carrying ``"event"`` are
helper events (``realtime-event``, ``recording-started``, ``recording-ended``,
``error``) and go to the registered handler.
"""

import asyncio
import itertools
import json
import logging
from typing import Any

import websockets

from adapters.streaming_session import Connector
from domain.errors import SideChannelError
from ports.recorder import RecorderEventHandler

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE_URL = "ws://127.0.0.1:8765"
REQUEST_TIMEOUT_SECONDS = 20.0


class RecallBridgeRecorder:
    def __init__(
        self,
        url: str = DEFAULT_BRIDGE_URL,
        connect: Connector | None = None,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._url = url
        self._connect = connect or websockets.connect
        self._request_timeout = request_timeout
        self._ws: Any = None
        self._reader_task: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._handler: RecorderEventHandler | None = None

    def set_event_handler(self, handler: RecorderEventHandler) -> None:
        self._handler = handler

    async def prepare_desktop_audio_recording(self) -> str:
        window_id = await self._request("prepareDesktopAudioRecording")
        if not window_id:
            raise SideChannelError("Recording helper returned no window id", provider="recall")
        return str(window_id)

    async def start_recording(self, window_id: str, upload_token: str) -> None:
        await self._request("startRecording", {"windowId": window_id, "uploadToken": upload_token})

    async def stop_recording(self, window_id: str) -> None:
        await self._request("stopRecording", {"windowId": window_id})

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()
        self._reject_pending(SideChannelError("Recording helper connection closed", provider="recall"))

    async def _ensure_connected(self) -> None:
        if self._ws is not None:
            return
        try:
            self._ws = await self._connect(self._url, open_timeout=self._request_timeout)
        except Exception as exc:
            raise SideChannelError(
                f"Unable to reach recording helper at {self._url}: {exc}", provider="recall"
            ) from exc
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info("Connected to recording helper at %s", self._url)

    async def _request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        await self._ensure_connected()
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps({"id": request_id, "method": method, "params": params or {}}))
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise SideChannelError(f"Recording helper timed out on {method}", provider="recall") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Recording helper connection lost: %s", exc)
            self._emit("error", {"message": f"Recording helper connection lost: {exc}"})
        self._ws = None
        self._reject_pending(SideChannelError("Recording helper connection closed", provider="recall"))

    def _dispatch(self, message: str | bytes) -> None:
        try:
            frame = json.loads(message)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed frame from recording helper")
            return
        if not isinstance(frame, dict):
            return
        if "event" in frame:
            payload = frame.get("payload")
            self._emit(str(frame["event"]), payload if isinstance(payload, dict) else {})
            return
        future = self._pending.get(frame.get("id"))
        if future is None or future.done():
            return
        if frame.get("error"):
            error = frame["error"]
            message_text = error.get("message") if isinstance(error, dict) else str(error)
            future.set_exception(SideChannelError(message_text or "Recording helper error", provider="recall"))
        else:
            future.set_result(frame.get("result"))

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        if self._handler is None:
            return
        try:
            self._handler(event, payload)
        except Exception:
            logger.exception("Recording helper event handler failed for %s", event)

    def _reject_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

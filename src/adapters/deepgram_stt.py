import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from deepgram import AsyncDeepgramClient
from deepgram.listen.v1.socket_client import EventType

from adapters.streaming_session import SessionBase
from domain import providers
from domain.errors import ProviderConnectionError
from domain.normalizer import RULES, normalize_transcript
from domain.providers import ProviderConfig, Status
from ports.transcriber import SessionCallbacks

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "nova-2"
DEFAULT_LANGUAGE = "zh"

ClientFactory = Callable[..., Any]


def message_payload(message: Any) -> dict[str, Any] | None:
    if isinstance(message, dict):
        return message
    if hasattr(message, "model_dump"):
        return message.model_dump()
    if isinstance(message, (str, bytes)):
        try:
            payload = json.loads(message)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        return payload if isinstance(payload, dict) else None
    return None


class DeepgramStreamingSession(SessionBase):
    """Live listen socket opened through the Deepgram SDK client."""

    provider = providers.DEEPGRAM

    def __init__(
        self,
        config: ProviderConfig,
        callbacks: SessionCallbacks,
        client_factory: ClientFactory | None = None,
    ) -> None:
        super().__init__(config, callbacks)
        self._client_factory = client_factory or AsyncDeepgramClient
        self._context_manager: Any = None
        self._socket: Any = None
        self._outbox: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._listener_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None

    def connect_options(self) -> dict[str, str]:
        return {
            "model": self._config.setting("model", DEFAULT_MODEL),
            "language": self._config.setting("language", DEFAULT_LANGUAGE),
            "encoding": self._config.encoding,
            "sample_rate": str(self._config.sample_rate),
            "channels": str(self._config.channels),
            "interim_results": "true",
            "smart_format": "true",
        }

    async def start(self) -> None:
        self._emit_status(Status.CONNECTING)
        try:
            client = self._client_factory(api_key=self._config.api_key)
            self._context_manager = client.listen.v1.connect(**self.connect_options())
            self._socket = await self._context_manager.__aenter__()
        except Exception as exc:
            self._closed = True
            self._teardown()
            raise ProviderConnectionError(
                f"Failed to start deepgram session: {exc}", provider=self.provider
            ) from exc

        self._socket.on(EventType.MESSAGE, self._on_message)
        self._socket.on(EventType.ERROR, self._on_error)
        self._listener_task = asyncio.create_task(self._listen())
        self._writer_task = asyncio.create_task(self._write_loop())
        self._emit_status(Status.CONNECTED)
        logger.info("Deepgram session started")

    def send_audio(self, chunk: bytes) -> None:
        if not chunk or self._closed:
            return
        self._outbox.put_nowait(bytes(chunk))

    async def _on_message(self, message: Any) -> None:
        payload = message_payload(message)
        if payload is None:
            return
        message_type = payload.get("type")
        if message_type == "Results":
            self._emit_transcript(normalize_transcript(payload, RULES[self.provider]))
        elif message_type == "Error":
            self._fail(f"Deepgram error: {payload.get('description') or payload.get('message')}")
        else:
            logger.debug("Deepgram message: %s", message_type)

    async def _on_error(self, error: Any) -> None:
        self._fail(ProviderConnectionError(f"Deepgram error: {error}", provider=self.provider))

    async def _listen(self) -> None:
        try:
            await self._socket.start_listening()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(ProviderConnectionError(
                f"deepgram connection lost: {exc}", provider=self.provider
            ))
            return
        if not self._torn_down:
            self._closed = True
            self._teardown()
            self._emit_status(Status.CLOSED)

    async def _write_loop(self) -> None:
        while True:
            chunk = await self._outbox.get()
            if chunk is None:
                return
            try:
                await self._socket._send(chunk)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._fail(ProviderConnectionError(
                    f"Failed to send audio to deepgram: {exc}", provider=self.provider
                ))
                return

    async def _graceful_stop(self) -> None:
        socket = self._socket
        if socket is None or self._torn_down or self._terminal_reported:
            return
        if self._writer_task is not None:
            self._outbox.put_nowait(None)
            await asyncio.gather(self._writer_task, return_exceptions=True)
        if self._terminal_reported:
            return
        await socket._send(json.dumps({"type": "Finalize"}))
        await socket._send(json.dumps({"type": "CloseStream"}))
        if self._listener_task is not None:
            await asyncio.gather(self._listener_task, return_exceptions=True)

    def _teardown(self) -> None:
        if self._torn_down:
            return
        super()._teardown()
        current = asyncio.current_task()
        for task in (self._writer_task, self._listener_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        while not self._outbox.empty():
            self._outbox.get_nowait()
        if self._context_manager is not None:
            context_manager, self._context_manager = self._context_manager, None
            self._spawn(self._exit_quietly(context_manager))
        self._socket = None

    async def _exit_quietly(self, context_manager: Any) -> None:
        try:
            await context_manager.__aexit__(None, None, None)
        except Exception:
            logger.debug("deepgram: error while closing socket", exc_info=True)

"""Shared lifecycle for provider sessions.

``SessionBase`` owns the callback contract: "connected" is reported once per
handshake, exactly one terminal status ("error" or "closed") is reported per
session, and ``stop()`` is a race between the provider's acknowledgement and a
fixed timeout, followed by a single teardown.

``WebSocketSession`` adds the transport most providers share: an ordered
outbound queue drained by a writer task, which holds audio sent before the
handshake until the socket is ready, and a reader task that decodes JSON
frames and hands them to ``_handle_message``.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import websockets

from domain.errors import MissingConfigurationError, ProviderConnectionError, normalize_error
from domain.providers import (
    CREDENTIAL_SETTINGS,
    STOP_TIMEOUT_SECONDS,
    TERMINAL_STATUSES,
    ProviderConfig,
    Status,
)
from ports.transcriber import SessionCallbacks, TranscriptEvent

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT_SECONDS = 15.0
OPEN_TIMEOUT_SECONDS = 20.0
HTTP_TIMEOUT_SECONDS = 20.0

Connector = Callable[..., Awaitable[Any]]
Outgoing = bytes | str


class SessionBase:
    provider: str = ""
    stop_timeout: float = STOP_TIMEOUT_SECONDS

    def __init__(
        self,
        config: ProviderConfig,
        callbacks: SessionCallbacks,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not config.api_key:
            raise MissingConfigurationError(
                CREDENTIAL_SETTINGS.get(self.provider, "API key"), provider=self.provider
            )
        self._config = config
        self._callbacks = callbacks
        self._closed = False
        self._stopping = False
        self._torn_down = False
        self._connected_reported = False
        self._terminal_reported = False
        self._background: set[asyncio.Task] = set()
        self._http_client = http_client
        self._owns_http_client = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connected(self) -> bool:
        return self._connected_reported

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        if self._torn_down:
            return
        try:
            await asyncio.wait_for(self._graceful_stop(), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "%s did not acknowledge stop within %.1fs, forcing cleanup",
                self.provider, self.stop_timeout,
            )
        except Exception:
            logger.warning("%s stop failed, forcing cleanup", self.provider, exc_info=True)
        finally:
            self._closed = True
            self._teardown()
            self._emit_status(Status.CLOSED)

    async def _graceful_stop(self) -> None:
        pass

    def _teardown(self) -> None:
        self._torn_down = True
        if self._owns_http_client and self._http_client is not None:
            self._spawn(self._http_client.aclose())
            self._http_client = None
            self._owns_http_client = False

    def _emit_status(self, status: Status) -> None:
        if status == Status.CONNECTED:
            if self._connected_reported or self._terminal_reported:
                return
            self._connected_reported = True
        elif status in TERMINAL_STATUSES:
            if self._terminal_reported:
                return
            self._terminal_reported = True
        self._callbacks.on_status(status)

    def _emit_transcript(self, event: TranscriptEvent | None) -> None:
        if event is None or self._torn_down:
            return
        if not event.text.strip():
            return
        self._callbacks.on_transcript(event)

    def _fail(self, error: object) -> None:
        if self._terminal_reported and self._torn_down:
            logger.debug("%s: ignoring error after teardown: %s", self.provider, error)
            return
        normalized = normalize_error(error, f"Unknown {self.provider} error")
        self._closed = True
        self._teardown()
        self._callbacks.on_error(normalized)
        self._emit_status(Status.ERROR)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(HTTP_TIMEOUT_SECONDS))
            self._owns_http_client = True
        return self._http_client


class WebSocketSession(SessionBase):
    awaits_handshake = False
    handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS
    open_timeout: float = OPEN_TIMEOUT_SECONDS

    def __init__(
        self,
        config: ProviderConfig,
        callbacks: SessionCallbacks,
        connect: Connector | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config, callbacks, http_client)
        self._connect = connect or websockets.connect
        self._ws: Any = None
        self._outbox: asyncio.Queue[Outgoing | None] = asyncio.Queue()
        self._writer_task: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None
        self._ready: asyncio.Future | None = None
        self._audio_frames_sent = 0

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._emit_status(Status.CONNECTING)

        try:
            url, headers = await self._prepare()
            self._ws = await self._connect(
                url,
                additional_headers=headers,
                open_timeout=self.open_timeout,
                max_size=None,
            )
        except Exception as exc:
            self._closed = True
            self._teardown()
            raise ProviderConnectionError(
                f"Failed to start {self.provider} session: {exc}", provider=self.provider
            ) from exc

        self._reader_task = asyncio.create_task(self._read_loop())
        try:
            for message in self._opening_messages():
                await self._ws.send(message)
        except Exception as exc:
            self._closed = True
            self._teardown()
            raise ProviderConnectionError(
                f"Failed to start {self.provider} session: {exc}", provider=self.provider
            ) from exc

        if self.awaits_handshake:
            try:
                await asyncio.wait_for(asyncio.shield(self._ready), timeout=self.handshake_timeout)
            except Exception as exc:
                self._closed = True
                self._teardown()
                raise ProviderConnectionError(
                    f"{self.provider} handshake failed: {exc}", provider=self.provider
                ) from exc
        else:
            self._mark_ready()

        self._writer_task = asyncio.create_task(self._write_loop())
        logger.info("%s session started", self.provider)

    def send_audio(self, chunk: bytes) -> None:
        if not chunk or self._closed:
            return
        self._outbox.put_nowait(self._encode_audio(bytes(chunk)))

    async def _prepare(self) -> tuple[str, dict[str, str]]:
        raise NotImplementedError

    def _opening_messages(self) -> list[Outgoing]:
        return []

    def _closing_messages(self) -> list[Outgoing]:
        return []

    def _encode_audio(self, chunk: bytes) -> Outgoing:
        return chunk

    def _handle_message(self, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    def _mark_ready(self) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)
        self._emit_status(Status.CONNECTED)

    def _reject_ready(self, error: Exception) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
            # mark retrieved
            self._ready.exception()

    def _fail(self, error: object) -> None:
        self._reject_ready(normalize_error(error, f"Unknown {self.provider} error"))
        super()._fail(error)

    def _finish(self) -> None:
        self._reject_ready(ProviderConnectionError(
            f"{self.provider} session closed before setup completed", provider=self.provider
        ))
        self._closed = True
        self._teardown()
        self._emit_status(Status.CLOSED)

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                self._dispatch(message)
                if self._torn_down:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(ProviderConnectionError(
                f"{self.provider} connection lost: {exc}", provider=self.provider
            ))
            return
        self._finish()

    def _dispatch(self, message: str | bytes) -> None:
        try:
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            payload = json.loads(message)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            self._fail(ProviderConnectionError(
                f"Failed to parse {self.provider} message: {exc}", provider=self.provider
            ))
            return
        if isinstance(payload, dict):
            self._handle_message(payload)

    async def _write_loop(self) -> None:
        while True:
            item = await self._outbox.get()
            if item is None:
                return
            try:
                await self._ws.send(item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._fail(ProviderConnectionError(
                    f"Failed to send audio to {self.provider}: {exc}", provider=self.provider
                ))
                return
            if isinstance(item, bytes):
                self._audio_frames_sent += 1

    async def _graceful_stop(self) -> None:
        if self._ws is None or self._torn_down or self._terminal_reported:
            return
        if self._writer_task is not None:
            self._outbox.put_nowait(None)
            await asyncio.gather(self._writer_task, return_exceptions=True)
        if self._terminal_reported:
            return
        for message in self._closing_messages():
            await self._ws.send(message)
        if self._reader_task is not None:
            await self._reader_task
        await self._ws.close()

    def _teardown(self) -> None:
        if self._torn_down:
            return
        super()._teardown()
        current = asyncio.current_task()
        for task in (self._writer_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        while not self._outbox.empty():
            self._outbox.get_nowait()
        if self._ws is not None:
            self._spawn(self._close_quietly(self._ws))

    async def _close_quietly(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception:
            logger.debug("%s: error while closing socket", self.provider, exc_info=True)


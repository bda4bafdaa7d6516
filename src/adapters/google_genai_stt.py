"""Google GenAI transcription in two modes.

Batch mode buffers PCM and posts one ``generateContent`` request per flush,
treating each response as a final segment. Only one request is in flight at a
time; audio that arrives meanwhile waits for a follow-up flush. Live mode
streams audio over the ``BidiGenerateContent`` socket.
"""

import asyncio
import base64
import json
import logging
import re
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import httpx

from adapters.streaming_session import Outgoing, SessionBase, WebSocketSession
from domain import providers
from domain.errors import ProviderConnectionError
from domain.normalizer import RULES, collect_text_from_parts, extract_text
from domain.providers import ProviderConfig, Status
from ports.transcriber import SessionCallbacks, TranscriptEvent

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "models/gemini-2.5-flash"
DEFAULT_LANGUAGE = "zh-CN"
DEFAULT_PROMPT = (
    "You are a high-accuracy realtime speech recognizer. Transcribe the input audio "
    "verbatim in its spoken language. Return only the transcription, with no "
    "explanations or extra content."
)
DEFAULT_FLUSH_INTERVAL_MS = 3500
MIN_FLUSH_INTERVAL_MS = 750
MAX_FLUSH_INTERVAL_MS = 8000
MIN_BYTES_PER_FLUSH = 4096
BYTES_PER_SAMPLE = 2
DEFAULT_API_BASE_URLS = (
    "https://generativelanguage.googleapis.com/v1beta",
    "https://generativelanguage.googleapis.com/v1",
    "https://generativelanguage.googleapis.com/v1alpha",
)
DEFAULT_LIVE_WS_BASE_URL = "wss://generativelanguage.googleapis.com"
DEFAULT_LIVE_API_VERSION = "v1alpha"
MODEL_LIST_TTL_SECONDS = 300.0
LIVE_CLOSE_WAIT_SECONDS = 0.25
GENERATION_CONFIG = {"temperature": 0, "topK": 32, "topP": 0.9}

_TRUE_FLAGS = ("1", "true", "yes")
_FALSE_FLAGS = ("0", "false", "no")
_LIVE_MODEL_MARKERS = ("live", "native-audio", "realtime")


def clamp_flush_interval(value: Any) -> int:
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return DEFAULT_FLUSH_INTERVAL_MS
    if numeric <= 0:
        return DEFAULT_FLUSH_INTERVAL_MS
    return max(MIN_FLUSH_INTERVAL_MS, min(MAX_FLUSH_INTERVAL_MS, numeric))


def should_use_live(model: str | None, flag: Any = None) -> bool:
    if isinstance(flag, bool):
        return flag
    normalized_flag = str(flag or "").strip().lower()
    if normalized_flag in _TRUE_FLAGS:
        return True
    if normalized_flag in _FALSE_FLAGS:
        return False
    normalized = (model or "").lower()
    return any(marker in normalized for marker in _LIVE_MODEL_MARKERS)


def to_mime_type(encoding: str | None = "linear16", sample_rate: int = 16000) -> str:
    normalized = (encoding or "linear16").lower()
    if normalized in ("linear16", "pcm16", "pcm_s16le"):
        return f"audio/raw;encoding=pcm16;rate={sample_rate}"
    if normalized == "flac":
        return "audio/flac"
    if normalized in ("mulaw", "ulaw"):
        return f"audio/ulaw;rate={sample_rate}"
    return f"audio/raw;rate={sample_rate}"


def to_model_path(model: str | None) -> str:
    if not model:
        return DEFAULT_MODEL
    return model if model.startswith("models/") else f"models/{model}"


def resolve_base_urls(model: str | None, override: str | None = None) -> tuple[str, ...]:
    urls = (override.strip(),) if override and override.strip() else DEFAULT_API_BASE_URLS
    if model and re.search("preview", model, re.IGNORECASE):
        preferred = tuple(url for url in urls if re.search(r"/v1(beta|alpha)", url))
        if preferred:
            return preferred
    return urls


def build_live_websocket_url(
    api_key: str,
    base_url: str = DEFAULT_LIVE_WS_BASE_URL,
    api_version: str = DEFAULT_LIVE_API_VERSION,
) -> str:
    ephemeral = api_key.startswith("auth_tokens/")
    method = "BidiGenerateContentConstrained" if ephemeral else "BidiGenerateContent"
    key_name = "access_token" if ephemeral else "key"
    return (
        f"{base_url.rstrip('/')}/ws/google.ai.generativelanguage.{api_version}."
        f"GenerativeService.{method}?{key_name}={quote(api_key, safe='')}"
    )


def build_instruction(prompt: str, language: str | None) -> str:
    return f"{prompt}\nLanguage: {language}".strip() if language else prompt


def _should_retry_not_found(base_url: str, urls: tuple[str, ...]) -> bool:
    has_alpha = any("/v1alpha" in url for url in urls)
    has_plain_v1 = any(url.rstrip("/").endswith("/v1") for url in urls)
    if "/v1beta" in base_url:
        return has_plain_v1 or has_alpha
    if "/v1alpha" in base_url:
        return has_plain_v1
    return False


class ModelCatalog:
    """Caches ``GET <base>/models`` listings per base URL."""

    def __init__(
        self,
        ttl: float = MODEL_LIST_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, list[str]]] = {}
        self._logged: set[str] = set()

    async def list_models(self, client: httpx.AsyncClient, api_key: str, base_url: str) -> list[str]:
        cached = self._entries.get(base_url)
        if cached and self._clock() - cached[0] < self._ttl:
            return cached[1]

        response = await client.get(f"{base_url.rstrip('/')}/models", params={"key": api_key})
        if response.status_code != 200:
            raise ProviderConnectionError(
                f"Listing models failed with status {response.status_code} ({response.text})",
                provider=providers.GOOGLE_GENAI,
            )
        models = response.json().get("models")
        names = [
            model.get("name") or model.get("displayName") or model.get("id") or model.get("model")
            for model in (models if isinstance(models, list) else [])
            if isinstance(model, dict)
        ]
        names = [name for name in names if name]
        self._entries[base_url] = (self._clock(), names)
        if names and base_url not in self._logged:
            self._logged.add(base_url)
            logger.info("Google GenAI models visible via %s: %s", base_url, ", ".join(names))
        return names

    async def ensure_available(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        model: str,
        base_urls: tuple[str, ...],
    ) -> None:
        wanted = to_model_path(model)
        visible: list[str] = []
        for base_url in base_urls:
            try:
                names = await self.list_models(client, api_key, base_url)
            except (httpx.HTTPError, ProviderConnectionError, ValueError) as exc:
                logger.warning("Unable to list Google GenAI models from %s: %s", base_url, exc)
                continue
            if wanted in names:
                return
            visible.extend(name for name in names if name not in visible)
        if visible:
            raise ProviderConnectionError(
                f'Model "{wanted}" is not available for the current API key. '
                f"Visible models: {', '.join(visible)}",
                provider=providers.GOOGLE_GENAI,
            )


default_catalog = ModelCatalog()


class GoogleGenaiBatchSession(SessionBase):
    provider = providers.GOOGLE_GENAI

    def __init__(
        self,
        config: ProviderConfig,
        callbacks: SessionCallbacks,
        http_client: httpx.AsyncClient | None = None,
        catalog: ModelCatalog | None = None,
    ) -> None:
        super().__init__(config, callbacks, http_client)
        self._catalog = catalog or default_catalog
        self._model = to_model_path(config.setting("model", DEFAULT_MODEL))
        self._prompt = config.setting("prompt", DEFAULT_PROMPT)
        self._language = config.setting("language", DEFAULT_LANGUAGE)
        self._base_urls = resolve_base_urls(self._model, config.setting("api_base_url"))
        self._mime_type = to_mime_type(config.encoding, config.sample_rate)
        self.flush_interval_ms = clamp_flush_interval(
            config.setting("flush_interval_ms", DEFAULT_FLUSH_INTERVAL_MS)
        )
        bytes_per_second = config.sample_rate * max(1, config.channels) * BYTES_PER_SAMPLE
        self.min_bytes_per_flush = max(
            round(self.flush_interval_ms / 1000 * bytes_per_second), MIN_BYTES_PER_FLUSH
        )
        self._buffer = bytearray()
        self._flush_timer: asyncio.TimerHandle | None = None
        self._pending: asyncio.Task | None = None
        self._flush_requested_while_busy = False
        self._last_transcript = ""

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    @property
    def request_in_flight(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def start(self) -> None:
        self._emit_status(Status.CONNECTING)
        try:
            client = await self._http()
            await self._catalog.ensure_available(
                client, self._config.api_key, self._model, self._base_urls
            )
        except Exception as exc:
            self._closed = True
            self._teardown()
            raise ProviderConnectionError(
                f"Failed to initialize Google GenAI client: {exc}", provider=self.provider
            ) from exc
        logger.info(
            "Google GenAI batch session started (model=%s, flush every %dms)",
            self._model, self.flush_interval_ms,
        )

    def send_audio(self, chunk: bytes) -> None:
        if not chunk or self._closed or self._stopping:
            return
        self._buffer.extend(chunk)
        if len(self._buffer) >= self.min_bytes_per_flush:
            self._request_flush()
        else:
            self._schedule_flush()

    def build_request(self, audio: bytes) -> dict[str, Any]:
        return {
            "contents": [{
                "role": "user",
                "parts": [
                    {"text": build_instruction(self._prompt, self._language)},
                    {"inlineData": {
                        "mimeType": self._mime_type,
                        "data": base64.b64encode(audio).decode("ascii"),
                    }},
                ],
            }],
            "generationConfig": dict(GENERATION_CONFIG),
        }

    async def generate_content(self, request: dict[str, Any]) -> dict[str, Any]:
        client = await self._http()
        last_error: Exception | None = None
        for base_url in self._base_urls:
            endpoint = f"{base_url.rstrip('/')}/{self._model}:generateContent"
            try:
                response = await client.post(
                    endpoint, params={"key": self._config.api_key}, json=request
                )
            except httpx.HTTPError as exc:
                last_error = ProviderConnectionError(
                    f"Failed to reach Google GenAI: {exc}", provider=self.provider
                )
                continue

            if response.status_code != 200:
                message = f"Google GenAI request failed with status {response.status_code}"
                try:
                    detail = response.json().get("error", {}).get("message")
                except ValueError:
                    detail = None
                error = ProviderConnectionError(
                    f"{message}: {detail}" if isinstance(detail, str) else message,
                    provider=self.provider,
                )
                if response.status_code == 404 and _should_retry_not_found(base_url, self._base_urls):
                    last_error = error
                    continue
                raise error

            try:
                return response.json()
            except ValueError:
                last_error = ProviderConnectionError(
                    "Failed to parse Google GenAI response payload.", provider=self.provider
                )
        raise last_error or ProviderConnectionError(
            "Google GenAI request failed.", provider=self.provider
        )

    def _schedule_flush(self) -> None:
        if self._closed or self._stopping or self._flush_timer is not None or not self._buffer:
            return
        loop = asyncio.get_running_loop()
        self._flush_timer = loop.call_later(self.flush_interval_ms / 1000, self._on_flush_timer)

    def _on_flush_timer(self) -> None:
        self._flush_timer = None
        self._request_flush()

    def _request_flush(self, force: bool = False) -> None:
        if self.request_in_flight:
            self._flush_requested_while_busy = (
                self._flush_requested_while_busy
                or force
                or len(self._buffer) >= self.min_bytes_per_flush
            )
            return
        if not self._buffer:
            return
        if not force and len(self._buffer) < self.min_bytes_per_flush:
            self._schedule_flush()
            return
        self._cancel_flush_timer()
        audio = bytes(self._buffer)
        self._buffer.clear()
        self._pending = self._spawn(self._run_request(audio))

    async def _run_request(self, audio: bytes) -> None:
        try:
            result = await self.generate_content(self.build_request(audio))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(exc)
            return
        self._emit_status(Status.CONNECTED)
        text = extract_text(result, RULES[self.provider])
        if text and text != self._last_transcript:
            self._last_transcript = text
            self._emit_transcript(TranscriptEvent(text=text, is_final=True, raw=result))
        self._spawn(self._after_request())

    async def _after_request(self) -> None:
        # Runs once the finished request task has been marked done.
        if self._closed or self._stopping:
            return
        if self._flush_requested_while_busy or len(self._buffer) >= self.min_bytes_per_flush:
            self._flush_requested_while_busy = False
            self._request_flush(force=True)
        else:
            self._schedule_flush()

    async def _graceful_stop(self) -> None:
        self._cancel_flush_timer()
        if self.request_in_flight:
            await asyncio.gather(self._pending, return_exceptions=True)
        if self._terminal_reported or not self._buffer:
            return
        audio = bytes(self._buffer)
        self._buffer.clear()
        self._pending = self._spawn(self._run_request(audio))
        await asyncio.gather(self._pending, return_exceptions=True)

    def _cancel_flush_timer(self) -> None:
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None

    def _teardown(self) -> None:
        if self._torn_down:
            return
        self._cancel_flush_timer()
        current = asyncio.current_task()
        if self._pending is not None and self._pending is not current and not self._pending.done():
            self._pending.cancel()
        self._buffer.clear()
        super()._teardown()


class GoogleGenaiLiveSession(WebSocketSession):
    provider = providers.GOOGLE_GENAI
    awaits_handshake = True

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._model = to_model_path(self._config.setting("model", DEFAULT_MODEL))
        self._mime_type = to_mime_type(self._config.encoding, self._config.sample_rate)
        self._last_input_transcript = ""
        self._last_model_transcript = ""

    def build_setup_message(self) -> dict[str, Any]:
        setup: dict[str, Any] = {
            "model": self._model,
            "generationConfig": {"responseModalities": ["TEXT"], **GENERATION_CONFIG},
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
        prompt = (self._config.setting("prompt", DEFAULT_PROMPT) or "").strip()
        if prompt:
            instruction = build_instruction(prompt, self._config.setting("language", DEFAULT_LANGUAGE))
            setup["systemInstruction"] = {"role": "system", "parts": [{"text": instruction}]}
        return {"setup": setup}

    async def _prepare(self) -> tuple[str, dict[str, str]]:
        url = build_live_websocket_url(
            self._config.api_key,
            self._config.setting("live_ws_base_url", DEFAULT_LIVE_WS_BASE_URL),
            self._config.setting("live_api_version", DEFAULT_LIVE_API_VERSION),
        )
        return url, {}

    def _opening_messages(self) -> list[Outgoing]:
        return [json.dumps(self.build_setup_message())]

    def _encode_audio(self, chunk: bytes) -> Outgoing:
        return json.dumps({
            "realtimeInput": {
                "mediaChunks": [{
                    "data": base64.b64encode(chunk).decode("ascii"),
                    "mimeType": self._mime_type,
                }],
            },
        })

    def _handle_message(self, payload: dict[str, Any]) -> None:
        if payload.get("setupComplete") is not None:
            self._mark_ready()
        content = payload.get("serverContent")
        if isinstance(content, dict):
            self._handle_server_content(content)
        if payload.get("usageMetadata"):
            self._last_model_transcript = ""

    def _handle_server_content(self, content: dict[str, Any]) -> None:
        transcription = content.get("inputTranscription") or {}
        text = str(transcription.get("text") or "").strip()
        if text and text != self._last_input_transcript:
            self._last_input_transcript = text
            self._emit_transcript(TranscriptEvent(
                text=text, is_final=bool(transcription.get("finished")), raw=content,
            ))
            return

        model_turn = content.get("modelTurn") or {}
        text = collect_text_from_parts(model_turn.get("parts") or [])
        if text and text != self._last_model_transcript:
            self._last_model_transcript = text
            final = next(
                (content[key] for key in ("generationComplete", "turnComplete", "waitingForInput")
                 if content.get(key) is not None),
                False,
            )
            self._emit_transcript(TranscriptEvent(text=text, is_final=bool(final), raw=content))

    async def _graceful_stop(self) -> None:
        if self._ws is None or self._torn_down or self._terminal_reported:
            return
        if self._writer_task is not None:
            self._outbox.put_nowait(None)
            await asyncio.gather(self._writer_task, return_exceptions=True)
        if self._terminal_reported:
            return
        await self._ws.send(json.dumps({"realtimeInput": {"audioStreamEnd": True}}))
        try:
            await asyncio.wait_for(self._ws.close(), timeout=LIVE_CLOSE_WAIT_SECONDS)
        except asyncio.TimeoutError:
            logger.debug("Google GenAI live socket did not close within %.2fs", LIVE_CLOSE_WAIT_SECONDS)


def create_google_genai_session(
    config: ProviderConfig,
    callbacks: SessionCallbacks,
    **kwargs: Any,
) -> SessionBase:
    if should_use_live(config.setting("model", DEFAULT_MODEL), config.setting("use_live")):
        kwargs.pop("catalog", None)
        return GoogleGenaiLiveSession(config, callbacks, **kwargs)
    kwargs.pop("connect", None)
    return GoogleGenaiBatchSession(config, callbacks, **kwargs)

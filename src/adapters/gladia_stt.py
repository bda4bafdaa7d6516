import json
import logging
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from adapters.streaming_session import Outgoing, WebSocketSession
from domain import providers
from domain.errors import ProviderConnectionError
from domain.normalizer import RULES, normalize_transcript
from domain.providers import Status

logger = logging.getLogger(__name__)

GLADIA_LIVE_URL = "https://api.gladia.io/v2/live"
SUPPORTED_SAMPLE_RATES = (8000, 16000, 32000, 44100, 48000)
DEFAULT_SAMPLE_RATE = 44100
DEFAULT_LANGUAGE = "zh"
GLADIA_PCM_ENCODING = "wav/pcm"
PCM_BIT_DEPTH = 16
COMPRESSED_BIT_DEPTH = 8
DEFAULT_HTTP_TIMEOUT_MS = 20000
DEFAULT_WS_TIMEOUT_MS = 20000
MAX_HTTP_ATTEMPTS = 3
SUPPORTED_REGIONS = ("eu-west", "us-west")


def normalize_sample_rate(requested: int | None) -> int:
    if not requested or requested <= 0:
        return DEFAULT_SAMPLE_RATE
    if requested in SUPPORTED_SAMPLE_RATES:
        return requested
    return min(SUPPORTED_SAMPLE_RATES, key=lambda option: abs(option - requested))


def normalize_encoding(encoding: str | None) -> str:
    if not isinstance(encoding, str):
        return GLADIA_PCM_ENCODING
    lowered = encoding.lower()
    if "alaw" in lowered:
        return "wav/alaw"
    if "ulaw" in lowered or "mulaw" in lowered:
        return "wav/ulaw"
    return GLADIA_PCM_ENCODING


def resolve_bit_depth(encoding: str) -> int:
    return PCM_BIT_DEPTH if encoding == GLADIA_PCM_ENCODING else COMPRESSED_BIT_DEPTH


def parse_region(value: str | None) -> str | None:
    normalized = (value or "").strip().lower()
    return normalized if normalized in SUPPORTED_REGIONS else None


class GladiaServerError(ProviderConnectionError):
    pass


class GladiaStreamingSession(WebSocketSession):
    provider = providers.GLADIA
    retry_wait = wait_exponential(multiplier=0.5, max=4)

    def build_session_request(self) -> dict[str, Any]:
        encoding = normalize_encoding(self._config.encoding)
        return {
            "encoding": encoding,
            "bit_depth": resolve_bit_depth(encoding),
            "sample_rate": normalize_sample_rate(self._config.sample_rate),
            "channels": max(1, self._config.channels or 1),
            "language_config": {
                "languages": [self._config.setting("language", DEFAULT_LANGUAGE)],
            },
            "messages_config": {
                "receive_partial_transcripts": True,
                "receive_final_transcripts": True,
                "receive_errors": True,
                "receive_lifecycle_events": True,
            },
        }

    async def _prepare(self) -> tuple[str, dict[str, str]]:
        client = await self._http()
        params = {}
        region = parse_region(self._config.setting("region"))
        if region:
            params["region"] = region
        timeout = float(self._config.setting("http_timeout_ms", DEFAULT_HTTP_TIMEOUT_MS)) / 1000
        self.open_timeout = float(self._config.setting("ws_timeout_ms", DEFAULT_WS_TIMEOUT_MS)) / 1000

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(MAX_HTTP_ATTEMPTS),
                wait=self.retry_wait,
                retry=retry_if_exception_type((httpx.TransportError, GladiaServerError)),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    response = await client.post(
                        GLADIA_LIVE_URL,
                        params=params,
                        headers={"X-Gladia-Key": self._config.api_key},
                        json=self.build_session_request(),
                        timeout=timeout,
                    )
                    if response.status_code >= 500:
                        raise GladiaServerError(
                            f"Gladia returned {response.status_code}", provider=self.provider
                        )
        except (httpx.TransportError, GladiaServerError) as exc:
            raise ProviderConnectionError(
                f"Failed to start Gladia live session: {exc}", provider=self.provider
            ) from exc

        if response.status_code not in (200, 201):
            raise ProviderConnectionError(
                f"Gladia session request failed with status {response.status_code}: {response.text}",
                provider=self.provider,
            )
        body = response.json()
        url = body.get("url")
        if not url:
            raise ProviderConnectionError("Gladia response missing url", provider=self.provider)
        logger.info("Gladia live session %s created", body.get("id"))
        return url, {}

    def _closing_messages(self) -> list[Outgoing]:
        return [json.dumps({"type": "stop_recording"})]

    def _handle_message(self, payload: dict[str, Any]) -> None:
        message_type = payload.get("type")
        if message_type == "transcript":
            self._emit_transcript(normalize_transcript(payload, RULES[self.provider]))
        elif message_type == "end_recording":
            self._emit_status(Status.STOPPED)
        elif message_type == "error":
            self._fail(f"Gladia error: {payload.get('error') or payload.get('data')}")

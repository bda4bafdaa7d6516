import json
import logging
from typing import Any

import httpx

from adapters.streaming_session import Outgoing, WebSocketSession
from domain import providers
from domain.errors import ProviderConnectionError
from domain.normalizer import RULES, normalize_transcript, with_finality
from domain.providers import Status

logger = logging.getLogger(__name__)

MIN_SAMPLE_RATE = 8000
MAX_SAMPLE_RATE = 48000
DEFAULT_SAMPLE_RATE = 16000
DEFAULT_LANGUAGE = "en"
DEFAULT_OPERATING_POINT = "enhanced"
DEFAULT_JWT_TTL = 60
DEFAULT_REGION = "eu2"
RAW_ENCODING = "pcm_s16le"
TEMPORARY_KEY_URL = "https://mp.speechmatics.com/v1/api_keys"


def clamp_sample_rate(value: int | None) -> int:
    numeric = value if value else DEFAULT_SAMPLE_RATE
    return max(MIN_SAMPLE_RATE, min(MAX_SAMPLE_RATE, numeric))


def resolve_realtime_url(region: str | None, override: str | None) -> str:
    if override:
        return override.strip()
    host = (region or DEFAULT_REGION).strip().lower() or DEFAULT_REGION
    return f"wss://{host}.rt.speechmatics.com/v2"


class SpeechmaticsStreamingSession(WebSocketSession):
    provider = providers.SPEECHMATICS
    awaits_handshake = True

    def build_start_recognition(self) -> dict[str, Any]:
        channels = max(1, self._config.channels or 1)
        transcription_config: dict[str, Any] = {
            "language": self._config.setting("language", DEFAULT_LANGUAGE),
            "operating_point": self._config.setting("operating_point", DEFAULT_OPERATING_POINT),
            "max_delay": 1.0,
            "enable_partials": True,
            "transcript_filtering_config": {"remove_disfluencies": True},
        }
        if channels > 1:
            transcription_config["conversation_config"] = {
                "end_of_utterance_silence_trigger": 0.3,
            }
        return {
            "message": "StartRecognition",
            "audio_format": {
                "type": "raw",
                "encoding": RAW_ENCODING,
                "sample_rate": clamp_sample_rate(self._config.sample_rate),
            },
            "transcription_config": transcription_config,
        }

    async def _request_temporary_key(self) -> str:
        client = await self._http()
        ttl = int(self._config.setting("jwt_ttl", DEFAULT_JWT_TTL))
        try:
            response = await client.post(
                TEMPORARY_KEY_URL,
                params={"type": "rt"},
                headers={"Authorization": f"Bearer {self._config.api_key}"},
                json={"ttl": ttl},
            )
        except httpx.HTTPError as exc:
            raise ProviderConnectionError(
                f"Speechmatics key request failed: {exc}", provider=self.provider
            ) from exc
        if response.status_code not in (200, 201):
            raise ProviderConnectionError(
                f"Speechmatics key request failed with status {response.status_code}: {response.text}",
                provider=self.provider,
            )
        key = response.json().get("key_value")
        if not key:
            raise ProviderConnectionError(
                "Speechmatics key response missing key_value", provider=self.provider
            )
        return key

    async def _prepare(self) -> tuple[str, dict[str, str]]:
        jwt = await self._request_temporary_key()
        url = resolve_realtime_url(
            self._config.setting("region"), self._config.setting("realtime_url")
        )
        return url, {"Authorization": f"Bearer {jwt}"}

    def _opening_messages(self) -> list[Outgoing]:
        return [json.dumps(self.build_start_recognition())]

    def _closing_messages(self) -> list[Outgoing]:
        return [json.dumps({"message": "EndOfStream", "last_seq_no": self._audio_frames_sent})]

    def _handle_message(self, payload: dict[str, Any]) -> None:
        message = payload.get("message")
        if message == "RecognitionStarted":
            logger.info("Speechmatics recognition %s started", payload.get("id"))
            self._mark_ready()
        elif message in ("AddPartialTranscript", "AddTranscript"):
            event = normalize_transcript(payload, RULES[self.provider])
            if message == "AddPartialTranscript":
                event = with_finality(event, False)
            self._emit_transcript(event)
        elif message == "EndOfTranscript":
            self._closed = True
            self._teardown()
            self._emit_status(Status.CLOSED)
        elif message == "Error":
            reason = payload.get("reason")
            self._fail(f"Speechmatics error: {reason}" if reason else "Speechmatics error")
        elif message == "Warning":
            logger.warning("Speechmatics warning: %s", payload.get("reason"))

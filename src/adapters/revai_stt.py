import logging
from typing import Any
from urllib.parse import urlencode

from adapters.streaming_session import Outgoing, WebSocketSession
from domain import providers
from domain.normalizer import RULES, normalize_transcript

logger = logging.getLogger(__name__)

MIN_SAMPLE_RATE = 8000
MAX_SAMPLE_RATE = 48000
DEFAULT_SAMPLE_RATE = 16000
MAX_CHANNELS = 10
DEFAULT_LANGUAGE = "en"
DEFAULT_LAYOUT = "interleaved"
DEFAULT_FORMAT = "S16LE"
REVAI_FINAL_TYPE = "final"
REVAI_PARTIAL_TYPE = "partial"

DEPLOYMENT_HOSTS = {
    "us": "api.rev.ai",
    "eu": "ec1.api.rev.ai",
}
DEPLOYMENT_ALIASES = {
    "us": "us", "us-west": "us", "us1": "us",
    "eu": "eu", "eu-west": "eu", "eu1": "eu",
}
STREAM_PATH = "/speechtotext/v1/stream"


def clamp_sample_rate(value: int | None) -> int:
    numeric = value if value else DEFAULT_SAMPLE_RATE
    return max(MIN_SAMPLE_RATE, min(MAX_SAMPLE_RATE, numeric))


def normalize_channels(channels: int | None) -> int:
    numeric = channels if channels else 1
    return max(1, min(MAX_CHANNELS, numeric))


def resolve_deployment_host(region: str | None) -> str:
    deployment = DEPLOYMENT_ALIASES.get((region or "").strip().lower(), "us")
    return DEPLOYMENT_HOSTS[deployment]


def build_content_type(sample_rate: int, channels: int) -> str:
    return (
        f"audio/x-raw;layout={DEFAULT_LAYOUT};rate={sample_rate};"
        f"format={DEFAULT_FORMAT};channels={channels}"
    )


class RevaiStreamingSession(WebSocketSession):
    provider = providers.REVAI
    awaits_handshake = True

    async def _prepare(self) -> tuple[str, dict[str, str]]:
        params = {
            "access_token": self._config.api_key,
            "content_type": build_content_type(
                clamp_sample_rate(self._config.sample_rate),
                normalize_channels(self._config.channels),
            ),
            "language": self._config.setting("language", DEFAULT_LANGUAGE),
            "detailed_partials": "true",
        }
        host = resolve_deployment_host(self._config.setting("region"))
        return f"wss://{host}{STREAM_PATH}?{urlencode(params)}", {}

    def _closing_messages(self) -> list[Outgoing]:
        return ["EOS"]

    def _handle_message(self, payload: dict[str, Any]) -> None:
        message_type = payload.get("type")
        if message_type == "connected":
            logger.info("Rev.ai stream %s connected", payload.get("id"))
            self._mark_ready()
        elif message_type in (REVAI_FINAL_TYPE, REVAI_PARTIAL_TYPE):
            self._emit_transcript(normalize_transcript(payload, RULES[self.provider]))

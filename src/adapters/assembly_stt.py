import json
import logging
from typing import Any
from urllib.parse import urlencode

from adapters.streaming_session import Outgoing, WebSocketSession
from domain import providers
from domain.normalizer import RULES, normalize_transcript

logger = logging.getLogger(__name__)

ASSEMBLY_STREAMING_URL = "wss://streaming.assemblyai.com/v3/ws"
DEFAULT_LANGUAGE = "zh"
DEFAULT_SPEECH_MODEL = "universal-streaming-multilingual"
PCM_ENCODING = "pcm_s16le"


def to_assembly_encoding(encoding: str | None) -> str:
    if not encoding or encoding.lower() == "linear16":
        return PCM_ENCODING
    return encoding


class AssemblyStreamingSession(WebSocketSession):
    provider = providers.ASSEMBLY
    awaits_handshake = True

    async def _prepare(self) -> tuple[str, dict[str, str]]:
        params = {
            "sample_rate": str(self._config.sample_rate),
            "encoding": to_assembly_encoding(self._config.encoding),
            "language_code": self._config.setting("language", DEFAULT_LANGUAGE),
            "speech_model": self._config.setting("speech_model", DEFAULT_SPEECH_MODEL),
            "format_turns": "false",
        }
        headers = {"Authorization": self._config.api_key}
        return f"{ASSEMBLY_STREAMING_URL}?{urlencode(params)}", headers

    def _closing_messages(self) -> list[Outgoing]:
        return [json.dumps({"type": "Terminate"})]

    def _handle_message(self, payload: dict[str, Any]) -> None:
        message_type = payload.get("type")
        if message_type == "Begin":
            logger.info("AssemblyAI session %s opened", payload.get("id"))
            self._mark_ready()
        elif message_type == "Turn":
            self._emit_transcript(normalize_transcript(payload, RULES[self.provider]))
        elif message_type == "Termination":
            logger.info(
                "AssemblyAI session terminated after %ss of audio",
                payload.get("audio_duration_seconds"),
            )
        elif message_type == "Error" or "error" in payload:
            self._fail(f"AssemblyAI error: {payload.get('error') or payload}")

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from domain.errors import UnknownProviderError

DEEPGRAM = "deepgram"
ASSEMBLY = "assembly"
GLADIA = "gladia"
REVAI = "revai"
SPEECHMATICS = "speechmatics"
GOOGLE_GENAI = "googleGenai"

PROVIDERS: tuple[str, ...] = (DEEPGRAM, ASSEMBLY, GLADIA, REVAI, SPEECHMATICS, GOOGLE_GENAI)

# Finals from these providers already carry the whole utterance so far.
REPLACING_FINAL_TRANSCRIPT_PROVIDERS: frozenset[str] = frozenset({GOOGLE_GENAI, DEEPGRAM})

CREDENTIAL_SETTINGS: dict[str, str] = {
    DEEPGRAM: "DEEPGRAM_API_KEY",
    ASSEMBLY: "ASSEMBLY_API_KEY",
    GLADIA: "GLADIA_API_KEY",
    REVAI: "REVAI_ACCESS_TOKEN",
    SPEECHMATICS: "SPEECHMATICS_API_KEY",
    GOOGLE_GENAI: "GOOGLE_GENAI_API_KEY",
}

DEFAULT_SAMPLE_RATE = 16000
DEFAULT_CHANNELS = 1
DEFAULT_ENCODING = "linear16"
STOP_TIMEOUT_SECONDS = 5.0


class Status(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    NO_AUDIO = "no-audio"
    ERROR = "error"
    STOPPED = "stopped"
    CLOSED = "closed"


TERMINAL_STATUSES = frozenset({Status.ERROR, Status.CLOSED})


class CaptureMode(Enum):
    DIRECT = "direct-audio-pipe"
    EXTERNAL = "externally-managed"


@dataclass(frozen=True)
class ProviderConfig:
    provider: str
    api_key: str
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = DEFAULT_CHANNELS
    encoding: str = DEFAULT_ENCODING
    settings: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "settings", MappingProxyType(dict(self.settings)))

    def setting(self, key: str, default: Any = None) -> Any:
        value = self.settings.get(key)
        if value is None or value == "":
            return default
        return value


def is_replacing_provider(provider: str | None) -> bool:
    return provider in REPLACING_FINAL_TRANSCRIPT_PROVIDERS


def validate_provider(provider: str) -> str:
    if provider not in PROVIDERS:
        supported = ", ".join(PROVIDERS)
        raise UnknownProviderError(
            f'Transcription provider "{provider}" is not implemented. Choose one of: {supported}',
            provider=provider,
        )
    return provider

from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from domain import providers


class TranscriberConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "zh"

    assembly_api_key: str = ""
    assembly_language: str = "zh"
    assembly_speech_model: str = "universal-streaming-multilingual"

    gladia_api_key: str = ""
    gladia_region: str = ""
    gladia_http_timeout_ms: int = Field(
        default=20000, validation_alias=AliasChoices("gladia_http_timeout", "gladia_http_timeout_ms")
    )
    gladia_ws_timeout_ms: int = Field(
        default=20000, validation_alias=AliasChoices("gladia_ws_timeout", "gladia_ws_timeout_ms")
    )

    revai_access_token: str = ""
    revai_region: str = Field(
        default="", validation_alias=AliasChoices("revai_region", "revai_deployment", "revai_location")
    )
    revai_language: str = "en"

    speechmatics_api_key: str = ""
    speechmatics_language: str = "en"
    speechmatics_operating_point: str = "enhanced"
    speechmatics_jwt_ttl: int = 60
    speechmatics_region: str = ""
    speechmatics_realtime_url: str = ""

    google_genai_api_key: str = ""
    google_genai_model: str = "models/gemini-2.5-flash"
    google_genai_language: str = "zh-CN"
    google_genai_prompt: str = ""
    google_genai_flush_interval_ms: int = Field(
        default=3500,
        validation_alias=AliasChoices(
            "google_genai_flush_interval_ms", "google_genai_chunk_interval_ms"
        ),
    )
    google_genai_use_live: str = ""
    google_genai_api_base_url: str = ""
    google_genai_live_ws_base_url: str = "wss://generativelanguage.googleapis.com"
    google_genai_live_api_version: str = "v1alpha"

    recall_api_key: str = ""
    recall_region: str = ""
    recall_client_token: str = ""
    recall_backend_url: str = ""
    recall_bridge_url: str = "ws://127.0.0.1:8765"

    loopback_sample_rate: int = providers.DEFAULT_SAMPLE_RATE
    audio_tee_sample_rate: int | None = None
    audio_tee_chunk_ms: int = 200
    audio_tee_mute: bool = False
    capture_device: str | None = None

    save_loopback_wav: bool = False
    wav_output_dir: str = "~/Desktop"

    socket_path: str = "/tmp/loopback-transcriber.sock"
    log_file: str = "log.txt"
    default_provider: str = providers.DEEPGRAM

    def api_key_for(self, provider: str) -> str:
        setting = providers.CREDENTIAL_SETTINGS[providers.validate_provider(provider)]
        return getattr(self, setting.lower())

    def provider_settings(self, provider: str) -> dict[str, Any]:
        provider = providers.validate_provider(provider)
        if provider == providers.DEEPGRAM:
            return {"model": self.deepgram_model, "language": self.deepgram_language}
        if provider == providers.ASSEMBLY:
            return {"language": self.assembly_language, "speech_model": self.assembly_speech_model}
        if provider == providers.GLADIA:
            return {
                "region": self.gladia_region,
                "http_timeout_ms": self.gladia_http_timeout_ms,
                "ws_timeout_ms": self.gladia_ws_timeout_ms,
            }
        if provider == providers.REVAI:
            return {"region": self.revai_region, "language": self.revai_language}
        if provider == providers.SPEECHMATICS:
            return {
                "language": self.speechmatics_language,
                "operating_point": self.speechmatics_operating_point,
                "jwt_ttl": self.speechmatics_jwt_ttl,
                "region": self.speechmatics_region,
                "realtime_url": self.speechmatics_realtime_url,
            }
        return {
            "model": self.google_genai_model,
            "language": self.google_genai_language,
            "prompt": self.google_genai_prompt,
            "flush_interval_ms": self.google_genai_flush_interval_ms,
            "use_live": self.google_genai_use_live,
            "api_base_url": self.google_genai_api_base_url,
            "live_ws_base_url": self.google_genai_live_ws_base_url,
            "live_api_version": self.google_genai_live_api_version,
        }

    def resolve_sample_rate(self, requested: int | None = None) -> int:
        if self.audio_tee_sample_rate and self.audio_tee_sample_rate > 0:
            return self.audio_tee_sample_rate
        if requested and requested > 0:
            return requested
        return self.loopback_sample_rate

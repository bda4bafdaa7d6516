import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from adapters.assembly_stt import AssemblyStreamingSession
from adapters.console_display import ConsoleDisplay
from adapters.deepgram_stt import DeepgramStreamingSession
from adapters.gladia_stt import GladiaStreamingSession
from adapters.google_genai_stt import create_google_genai_session
from adapters.recall_bridge import RecallBridgeRecorder
from adapters.recall_side_channel import RecallSideChannel, RecallTranscriptionSession
from adapters.revai_stt import RevaiStreamingSession
from adapters.speechmatics_stt import SpeechmaticsStreamingSession
from adapters.wav_recorder import WavRecorder, build_wav_path
from config import TranscriberConfig
from domain import providers
from domain.errors import MissingConfigurationError
from domain.providers import CaptureMode, ProviderConfig
from domain.session import StartOptions
from domain.session_manager import SessionManager
from ports.audio import AudioCapturePort
from ports.display import DisplayPort
from ports.transcriber import SessionCallbacks, TranscriptionSession

logger = logging.getLogger(__name__)

SessionBuilder = Callable[..., TranscriptionSession]

SESSION_BUILDERS: dict[str, SessionBuilder] = {
    providers.DEEPGRAM: DeepgramStreamingSession,
    providers.ASSEMBLY: AssemblyStreamingSession,
    providers.GLADIA: GladiaStreamingSession,
    providers.REVAI: RevaiStreamingSession,
    providers.SPEECHMATICS: SpeechmaticsStreamingSession,
    providers.GOOGLE_GENAI: create_google_genai_session,
}


def resolve_provider_config(
    config: TranscriberConfig,
    provider: str,
    sample_rate: int | None = None,
    channels: int | None = None,
    encoding: str | None = None,
) -> ProviderConfig:
    provider = providers.validate_provider(provider)
    api_key = config.api_key_for(provider).strip()
    if not api_key:
        raise MissingConfigurationError(providers.CREDENTIAL_SETTINGS[provider], provider=provider)
    return ProviderConfig(
        provider=provider,
        api_key=api_key,
        sample_rate=config.resolve_sample_rate(sample_rate),
        channels=channels if channels and channels > 0 else providers.DEFAULT_CHANNELS,
        encoding=encoding or providers.DEFAULT_ENCODING,
        settings=config.provider_settings(provider),
    )


def create_transcription_session(
    provider_config: ProviderConfig,
    callbacks: SessionCallbacks,
    **kwargs: Any,
) -> TranscriptionSession:
    builder = SESSION_BUILDERS[provider_config.provider]
    return builder(provider_config, callbacks, **kwargs)


def create_side_channel(config: TranscriberConfig) -> RecallSideChannel:
    return RecallSideChannel(
        recorder=RecallBridgeRecorder(url=config.recall_bridge_url),
        api_key=config.recall_api_key,
        region=config.recall_region,
        client_token=config.recall_client_token,
        backend_url=config.recall_backend_url,
    )


def create_capture(config: TranscriberConfig, sample_rate: int) -> AudioCapturePort:
    from adapters.sounddevice_capture import SounddeviceCapture

    return SounddeviceCapture(
        device=config.capture_device,
        sample_rate=sample_rate,
        chunk_duration_ms=config.audio_tee_chunk_ms,
        mute=config.audio_tee_mute,
    )


def create_wav_recorder(config: TranscriberConfig, options: StartOptions) -> WavRecorder | None:
    if not config.save_loopback_wav:
        return None
    return WavRecorder(
        build_wav_path(Path(config.wav_output_dir)),
        sample_rate=options.sample_rate or config.loopback_sample_rate,
        channels=options.channels or providers.DEFAULT_CHANNELS,
    )


def create_session_manager(
    config: TranscriberConfig,
    display: DisplayPort | None = None,
    side_channel: RecallSideChannel | None = None,
) -> SessionManager:
    def build_session(options: StartOptions, callbacks: SessionCallbacks) -> TranscriptionSession:
        if options.capture_mode is CaptureMode.EXTERNAL:
            if side_channel is None:
                raise MissingConfigurationError("RECALL_API_KEY", provider="recall")
            return RecallTranscriptionSession(side_channel, callbacks, options.transcription_type)
        provider_config = resolve_provider_config(
            config,
            options.transcription_type,
            sample_rate=options.sample_rate,
            channels=options.channels,
            encoding=options.encoding,
        )
        return create_transcription_session(provider_config, callbacks)

    return SessionManager(
        session_factory=build_session,
        display=display or ConsoleDisplay(),
        capture_factory=lambda sample_rate: create_capture(config, sample_rate),
        recorder_factory=lambda options: create_wav_recorder(config, options),
        resolve_sample_rate=config.resolve_sample_rate,
    )

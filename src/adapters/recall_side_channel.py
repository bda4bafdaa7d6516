import asyncio
import logging
from typing import Any

import httpx

from domain.errors import SideChannelError
from domain.normalizer import GENERIC_RULE, normalize_transcript
from domain.providers import ASSEMBLY, DEEPGRAM, STOP_TIMEOUT_SECONDS, Status
from ports.recorder import RecorderPort
from ports.transcriber import SessionCallbacks, TranscriptEvent

logger = logging.getLogger(__name__)

RECALL_REALTIME_EVENT = "transcript.data"
PROVIDER_MAP = {
    ASSEMBLY: "assembly_ai_v3_streaming",
    DEEPGRAM: "deepgram_streaming",
}
DEFAULT_BACKEND_PATH = "/api"


def provider_key(transcription_provider: str | None) -> str:
    return PROVIDER_MAP.get(transcription_provider or "", PROVIDER_MAP[DEEPGRAM])


def normalize_realtime_event(payload: Any) -> TranscriptEvent | None:
    if not isinstance(payload, dict) or payload.get("event") != RECALL_REALTIME_EVENT:
        return None
    data = payload.get("data")
    return normalize_transcript(data if data is not None else {}, GENERIC_RULE)


class RecallSideChannel:
    """Managed recording: capture and transcription run in the recording helper."""

    def __init__(
        self,
        recorder: RecorderPort,
        api_key: str = "",
        region: str = "",
        client_token: str = "",
        backend_url: str = "",
        http_client: httpx.AsyncClient | None = None,
        stop_timeout: float = STOP_TIMEOUT_SECONDS,
    ) -> None:
        self._recorder = recorder
        self._api_key = api_key
        self._region = region
        self._client_token = client_token
        self._backend_url = backend_url
        self._http_client = http_client
        self._stop_timeout = stop_timeout
        self._handlers: SessionCallbacks | None = None
        self._active = False
        self._window_id: str | None = None
        recorder.set_event_handler(self.handle_event)

    @property
    def active(self) -> bool:
        return self._active

    def set_handlers(self, handlers: SessionCallbacks | None) -> None:
        self._handlers = handlers

    def status(self) -> dict[str, Any]:
        return {"active": self._active, "window_id": self._window_id}

    async def start(
        self,
        transcription_provider: str = DEEPGRAM,
        provider_options: dict[str, Any] | None = None,
        recording_config_overrides: dict[str, Any] | None = None,
        client_token: str | None = None,
        backend_url: str | None = None,
    ) -> bool:
        if self._active:
            logger.warning("Recall recording already active in window %s", self._window_id)
            return False

        client_token = client_token or self._client_token
        backend_url = backend_url or self._backend_url
        try:
            if client_token or backend_url:
                upload_token = await self._request_token_from_backend(
                    client_token, backend_url, transcription_provider
                )
            else:
                upload_token = await self._request_token_from_api(
                    provider_key(transcription_provider),
                    provider_options or {},
                    recording_config_overrides or {},
                )
            self._window_id = await self._recorder.prepare_desktop_audio_recording()
            await self._recorder.start_recording(self._window_id, upload_token)
        except Exception:
            self._active = False
            self._window_id = None
            raise

        self._active = True
        logger.info(
            "Recall recording started in window %s (%s)",
            self._window_id, provider_key(transcription_provider),
        )
        return True

    async def stop(self) -> bool:
        if not self._active or not self._window_id:
            return False
        window_id = self._window_id
        try:
            await asyncio.wait_for(self._recorder.stop_recording(window_id), self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Recall recording in window %s did not stop within %.1fs", window_id, self._stop_timeout
            )
        finally:
            self._active = False
            self._window_id = None
        logger.info("Recall recording stopped in window %s", window_id)
        return True

    async def close(self) -> None:
        await self._recorder.close()

    def handle_event(self, event: str, payload: dict[str, Any]) -> None:
        if self._window_id is None or self._handlers is None:
            logger.debug("Dropping Recall %s event with no active recording", event)
            return
        if event == "realtime-event":
            transcript = normalize_realtime_event(payload)
            if transcript is not None:
                self._handlers.on_transcript(transcript)
        elif event == "recording-started":
            self._handlers.on_status(Status.CONNECTED)
        elif event == "recording-ended":
            self._handlers.on_status(Status.CLOSED)
        elif event == "error":
            message = payload.get("message") or "Recall SDK error"
            self._handlers.on_error(SideChannelError(message, provider="recall"))
            self._handlers.on_status(Status.ERROR)
        else:
            logger.debug("Ignoring Recall event %s", event)

    async def _request_token_from_api(
        self,
        key: str,
        provider_options: dict[str, Any],
        overrides: dict[str, Any],
    ) -> str:
        if not self._api_key or not self._region:
            raise SideChannelError(
                "Missing Recall API key or region. Set RECALL_API_KEY and RECALL_REGION.",
                provider="recall",
            )
        recording_config = {
            "transcript": {"provider": {key: provider_options}},
            "realtime_endpoints": [
                {"type": "desktop_sdk_callback", "events": [RECALL_REALTIME_EVENT]},
            ],
            **overrides,
        }
        response = await self._post(
            f"https://{self._region}.recall.ai/api/v1/sdk_upload/",
            headers={"accept": "application/json", "Authorization": self._api_key},
            json={"recording_config": recording_config},
        )
        if not response.is_success:
            raise SideChannelError(
                f"Failed to create Recall SDK upload. {response.status_code} {response.text}",
                provider="recall",
            )
        token = self._read_upload_token(response)
        if not token:
            raise SideChannelError("Recall SDK upload response missing upload_token.", provider="recall")
        return token

    async def _request_token_from_backend(
        self,
        client_token: str,
        backend_url: str,
        transcription_provider: str,
    ) -> str:
        if not client_token:
            raise SideChannelError(
                "Recall client token is required when using a custom backend.", provider="recall"
            )
        base = (backend_url or DEFAULT_BACKEND_PATH).rstrip("/")
        response = await self._post(
            f"{base}/create_sdk_recording",
            headers={"Authorization": f"Bearer {client_token}"},
            json={"transcriptionProvider": transcription_provider},
        )
        if not response.is_success:
            raise SideChannelError(
                f"Failed to create recording: {response.status_code} {response.reason_phrase}",
                provider="recall",
            )
        token = self._read_upload_token(response)
        if not token:
            raise SideChannelError("Backend response missing upload_token.", provider="recall")
        return token

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.post(url, **kwargs)
            async with httpx.AsyncClient(timeout=httpx.Timeout(20.0)) as client:
                return await client.post(url, **kwargs)
        except httpx.HTTPError as exc:
            raise SideChannelError(f"Recall token request failed: {exc}", provider="recall") from exc

    @staticmethod
    def _read_upload_token(response: httpx.Response) -> str | None:
        try:
            payload = response.json()
        except ValueError:
            return None
        return payload.get("upload_token") if isinstance(payload, dict) else None


class RecallTranscriptionSession:
    """Adapts the side channel to the transcription session contract."""

    def __init__(
        self,
        side_channel: RecallSideChannel,
        callbacks: SessionCallbacks,
        transcription_provider: str = DEEPGRAM,
    ) -> None:
        self._side_channel = side_channel
        self._callbacks = callbacks
        self._transcription_provider = transcription_provider

    async def start(self) -> None:
        self._side_channel.set_handlers(self._callbacks)
        self._callbacks.on_status(Status.CONNECTING)
        try:
            await self._side_channel.start(self._transcription_provider)
        except Exception:
            self._side_channel.set_handlers(None)
            raise

    def send_audio(self, chunk: bytes) -> None:
        pass

    async def stop(self) -> None:
        try:
            stopped = await self._side_channel.stop()
        finally:
            self._side_channel.set_handlers(None)
        if stopped:
            self._callbacks.on_status(Status.CLOSED)

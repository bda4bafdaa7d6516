import asyncio
import json

import pytest

from adapters.streaming_session import WebSocketSession
from domain.errors import MissingConfigurationError, ProviderConnectionError
from domain.normalizer import normalize_transcript
from tests.conftest import FakeConnector, FakeWebSocket, make_provider_config, settle

ECHO_URL = "wss://echo.invalid/stream"


class EchoSession(WebSocketSession):
    provider = "revai"

    async def _prepare(self):
        return ECHO_URL, {"Authorization": f"Bearer {self._config.api_key}"}

    def _closing_messages(self):
        return [json.dumps({"type": "Close"})]

    def _handle_message(self, payload):
        if payload.get("type") == "Error":
            self._fail(f"echo error: {payload.get('message')}")
        else:
            self._emit_transcript(normalize_transcript(payload))


def finish_on_close(ws, message):
    if isinstance(message, str) and json.loads(message).get("type") == "Close":
        ws.finish()


def make_session(recorder, connector, **overrides):
    return EchoSession(make_provider_config("revai", **overrides), recorder.callbacks, connect=connector)


class TestConnection:
    def test_missing_api_key(self, recorder, connector):
        with pytest.raises(MissingConfigurationError, match="REVAI_ACCESS_TOKEN"):
            make_session(recorder, connector, api_key="")

    @pytest.mark.asyncio
    async def test_url_and_headers(self, recorder, connector):
        session = make_session(recorder, connector)
        await session.start()
        assert connector.url == ECHO_URL
        assert connector.headers == {"Authorization": "Bearer test-key"}
        await session.stop()

    @pytest.mark.asyncio
    async def test_connected_reported_once(self, recorder, connector):
        session = make_session(recorder, connector)
        await session.start()
        assert recorder.statuses == ["connecting", "connected"]
        assert session.connected
        await session.stop()

    @pytest.mark.asyncio
    async def test_connect_failure(self, recorder):
        session = make_session(recorder, FakeConnector(error=OSError("connection refused")))
        with pytest.raises(ProviderConnectionError, match="connection refused"):
            await session.start()
        assert session.closed
        assert recorder.statuses == ["connecting"]


class TestStreaming:
    @pytest.mark.asyncio
    async def test_audio_is_sent_in_order(self, recorder, fake_ws, connector):
        session = make_session(recorder, connector)
        await session.start()
        for chunk in (b"\x01\x00", b"\x02\x00", b"", b"\x03\x00"):
            session.send_audio(chunk)
        await settle()
        assert fake_ws.sent_audio == [b"\x01\x00", b"\x02\x00", b"\x03\x00"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_transcripts(self, recorder, fake_ws, connector):
        session = make_session(recorder, connector)
        await session.start()
        fake_ws.push({"text": "hel"})
        fake_ws.push({"text": "hello", "is_final": True})
        fake_ws.push({"text": ""})
        await settle()

        assert [(t.text, t.is_final) for t in recorder.transcripts] == [("hel", False), ("hello", True)]
        await session.stop()

    @pytest.mark.asyncio
    async def test_provider_error_message(self, recorder, fake_ws, connector):
        session = make_session(recorder, connector)
        await session.start()
        fake_ws.push({"type": "Error", "message": "bad audio"})
        await settle()

        assert recorder.statuses == ["connecting", "connected", "error"]
        assert "bad audio" in str(recorder.errors[0])
        assert session.closed

    @pytest.mark.asyncio
    async def test_malformed_json(self, recorder, fake_ws, connector):
        session = make_session(recorder, connector)
        await session.start()
        fake_ws.push("{not json")
        await settle()

        assert recorder.statuses[-1] == "error"
        assert isinstance(recorder.errors[0], ProviderConnectionError)
        assert "Failed to parse" in str(recorder.errors[0])

    @pytest.mark.asyncio
    async def test_connection_lost(self, recorder, fake_ws, connector):
        session = make_session(recorder, connector)
        await session.start()
        fake_ws.fail(ConnectionResetError("reset by peer"))
        await settle()

        assert recorder.statuses == ["connecting", "connected", "error"]
        assert "connection lost" in str(recorder.errors[0])
        session.send_audio(b"\x01\x00")
        await settle()
        assert fake_ws.sent_audio == []

    @pytest.mark.asyncio
    async def test_remote_close(self, recorder, fake_ws, connector):
        session = make_session(recorder, connector)
        await session.start()
        fake_ws.finish()
        await settle()

        assert recorder.statuses == ["connecting", "connected", "closed"]
        assert recorder.errors == []

    @pytest.mark.asyncio
    async def test_no_transcripts_after_teardown(self, recorder, fake_ws, connector):
        session = make_session(recorder, connector)
        await session.start()
        fake_ws.push("garbage")
        fake_ws.push({"text": "late", "is_final": True})
        await settle()
        assert recorder.transcripts == []


class TestStop:
    @pytest.mark.asyncio
    async def test_graceful_stop(self, recorder):
        ws = FakeWebSocket(on_send=finish_on_close)
        session = make_session(recorder, FakeConnector(ws))
        await session.start()
        session.send_audio(b"\x01\x00")

        await session.stop()

        assert ws.sent_audio == [b"\x01\x00"]
        assert ws.sent_json[-1] == {"type": "Close"}
        assert recorder.statuses == ["connecting", "connected", "closed"]
        assert ws.closed

    @pytest.mark.asyncio
    async def test_messages_before_close_are_delivered(self, recorder):
        def on_send(ws, message):
            if isinstance(message, str):
                ws.push({"text": "last words", "is_final": True})
            finish_on_close(ws, message)

        ws = FakeWebSocket(on_send=on_send)
        session = make_session(recorder, FakeConnector(ws))
        await session.start()
        await session.stop()

        assert [t.text for t in recorder.transcripts] == ["last words"]

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, recorder):
        ws = FakeWebSocket(on_send=finish_on_close)
        session = make_session(recorder, FakeConnector(ws))
        await session.start()

        await session.stop()
        await session.stop()

        assert recorder.statuses.count("closed") == 1
        assert [m["type"] for m in ws.sent_json].count("Close") == 1

    @pytest.mark.asyncio
    async def test_stop_timeout_forces_cleanup(self, recorder, fake_ws, connector):
        session = make_session(recorder, connector)
        session.stop_timeout = 0.1
        await session.start()

        await asyncio.wait_for(session.stop(), timeout=2.0)
        await settle()

        assert recorder.statuses == ["connecting", "connected", "closed"]
        assert fake_ws.closed

    @pytest.mark.asyncio
    async def test_stop_after_error(self, recorder, fake_ws, connector):
        session = make_session(recorder, connector)
        await session.start()
        fake_ws.push({"type": "Error", "message": "quota"})
        await settle()

        await session.stop()

        assert recorder.statuses == ["connecting", "connected", "error"]
        assert not any(m.get("type") == "Close" for m in fake_ws.sent_json)

    @pytest.mark.asyncio
    async def test_audio_after_stop_is_ignored(self, recorder):
        ws = FakeWebSocket(on_send=finish_on_close)
        session = make_session(recorder, FakeConnector(ws))
        await session.start()
        await session.stop()

        session.send_audio(b"\x01\x00")
        await settle()
        assert ws.sent_audio == []

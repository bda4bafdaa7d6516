import asyncio
import json
import logging
import os
from pathlib import Path

from ports.control import CommandHandler, ControlCommand

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/loopback-transcriber.sock"
READ_TIMEOUT_SECONDS = 5.0
RESPONSE_TIMEOUT_SECONDS = 15.0


class UnixSocketControlServer:
    """JSON-lines control socket: one request and one response per connection."""

    def __init__(self, handler: CommandHandler, socket_path: str = DEFAULT_SOCKET_PATH) -> None:
        self._handler = handler
        self._socket_path = socket_path
        self._server: asyncio.Server | None = None

    async def start(self) -> None:
        socket_file = Path(self._socket_path)
        if socket_file.exists():
            socket_file.unlink()

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=self._socket_path,
        )
        os.chmod(self._socket_path, 0o600)
        logger.info("Control socket listening at %s", self._socket_path)

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        socket_file = Path(self._socket_path)
        if socket_file.exists():
            socket_file.unlink()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            raw = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT_SECONDS)
            if not raw:
                return

            request = json.loads(raw.decode().strip())
            if not isinstance(request, dict):
                raise json.JSONDecodeError("Expected an object", raw.decode(), 0)
            payload = request.get("payload")
            command = ControlCommand(
                action=str(request.get("action", "")),
                payload=payload if isinstance(payload, dict) else None,
            )
            response = await self._dispatch(command)
            writer.write((json.dumps(response) + "\n").encode())
            await writer.drain()
        except asyncio.TimeoutError:
            logger.warning("Client connection timed out")
        except json.JSONDecodeError:
            logger.warning("Invalid JSON from client")
            writer.write((json.dumps({"status": "error", "error": "invalid request"}) + "\n").encode())
            await writer.drain()
        except Exception:
            logger.exception("Error handling control client")
        finally:
            writer.close()
            await writer.wait_closed()

    async def _dispatch(self, command: ControlCommand) -> dict:
        try:
            result = await self._handler(command)
        except Exception as exc:
            logger.exception("Control action %r failed", command.action)
            return {"status": "error", "action": command.action, "error": str(exc)}
        return {"status": "ok", "action": command.action, **(result or {})}


class UnixSocketControlClient:
    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH) -> None:
        self._socket_path = socket_path

    async def send_command(self, action: str, payload: dict | None = None) -> dict:
        reader, writer = await asyncio.open_unix_connection(self._socket_path)
        try:
            request = {"action": action}
            if payload:
                request["payload"] = payload
            writer.write((json.dumps(request) + "\n").encode())
            await writer.drain()

            raw = await asyncio.wait_for(reader.readline(), timeout=RESPONSE_TIMEOUT_SECONDS)
            return json.loads(raw.decode().strip())
        finally:
            writer.close()
            await writer.wait_closed()

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from config import TranscriberConfig
from domain.errors import TranscriptionError
from domain.providers import PROVIDERS, CaptureMode
from domain.session import StartOptions
from domain.session_manager import SessionManager
from ports.control import CommandHandler, ControlCommand, ControlServer

ENV_FILE_PATH = Path.home() / ".config" / "loopback-transcriber" / "env"

CLIENT_COMMANDS = ("start", "stop", "status", "recall-start", "recall-stop", "recall-status")

logger = logging.getLogger(__name__)


def _load_env_file() -> None:
    if not ENV_FILE_PATH.exists():
        return
    with open(ENV_FILE_PATH) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            value = value.strip("'\"")
            if key not in os.environ:
                os.environ[key] = value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live system-audio transcription daemon")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    parser.add_argument("--socket", help="Control socket path")

    subparsers = parser.add_subparsers(dest="command")

    start_parser = subparsers.add_parser("start", help="Start a transcription session")
    start_parser.add_argument("--provider", choices=PROVIDERS, help="Transcription provider")
    start_parser.add_argument("--sample-rate", type=int, help="Requested sample rate")
    start_parser.add_argument("--channels", type=int, help="Channel count")
    start_parser.add_argument("--encoding", help="Audio encoding (default linear16)")
    start_parser.add_argument(
        "--external", action="store_true", help="Use the managed recording side channel"
    )

    subparsers.add_parser("stop", help="Stop the active session")
    subparsers.add_parser("status", help="Query session status")
    subparsers.add_parser("check", help="Run startup health checks")

    recall_parser = subparsers.add_parser("recall-start", help="Start a managed Recall recording")
    recall_parser.add_argument("--provider", choices=PROVIDERS, help="Transcription provider")
    subparsers.add_parser("recall-stop", help="Stop the managed Recall recording")
    subparsers.add_parser("recall-status", help="Query the managed Recall recording")
    return parser


def build_request(args: argparse.Namespace) -> tuple[str, dict | None]:
    if args.command == "start":
        payload: dict[str, Any] = {}
        if args.provider:
            payload["transcriptionType"] = args.provider
        if args.sample_rate:
            payload["sampleRate"] = args.sample_rate
        if args.channels:
            payload["channels"] = args.channels
        if args.encoding:
            payload["encoding"] = args.encoding
        if args.external:
            payload["captureMode"] = CaptureMode.EXTERNAL.value
        return "start", payload or None
    if args.command == "recall-start" and args.provider:
        return "recall-start", {"transcriptionType": args.provider}
    return args.command, None


def main() -> None:
    _load_env_file()
    args = build_parser().parse_args()

    from log_format import setup_logging

    config = TranscriberConfig()
    if args.socket:
        config.socket_path = args.socket

    if args.command in CLIENT_COMMANDS:
        setup_logging(args.verbose)
        asyncio.run(_run_client_command(args, config))
    elif args.command == "check":
        setup_logging(args.verbose)
        _run_checks(config)
    else:
        setup_logging(args.verbose, config.log_file)
        asyncio.run(_run_daemon(config))


def _run_checks(config: TranscriberConfig) -> None:
    from health import has_critical_failures, run_startup_checks

    results = run_startup_checks(config)
    sys.exit(1 if has_critical_failures(results) else 0)


async def _run_client_command(args: argparse.Namespace, config: TranscriberConfig) -> None:
    from adapters.unix_control import UnixSocketControlClient

    client = UnixSocketControlClient(socket_path=config.socket_path)
    action, payload = build_request(args)

    try:
        result = await client.send_command(action, payload)
    except (ConnectionRefusedError, FileNotFoundError):
        print("Loopback transcriber is not running", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(result))
    if result.get("status") != "ok":
        sys.exit(1)


def create_command_handler(
    manager: SessionManager,
    side_channel: Any = None,
    default_provider: str = "deepgram",
) -> CommandHandler:
    background: set[asyncio.Task] = set()

    def spawn_start(options: StartOptions) -> bool:
        if manager.active:
            logger.warning("Transcription already in progress.")
            return False
        task = asyncio.create_task(manager.start(options))
        background.add(task)
        task.add_done_callback(background.discard)
        return True

    async def handle(command: ControlCommand) -> dict[str, Any]:
        if command.action == "start":
            options = StartOptions.from_payload(command.payload, default_provider)
            return {"accepted": spawn_start(options)}
        if command.action == "stop":
            return {"stopped": await manager.stop()}
        if command.action == "status":
            return manager.query_status()
        if command.action == "recall-start":
            payload = dict(command.payload or {}, captureMode=CaptureMode.EXTERNAL.value)
            options = StartOptions.from_payload(payload, default_provider)
            return {"accepted": spawn_start(options)}
        if command.action == "recall-stop":
            session = manager.session
            if session is None or session.capture_mode is not CaptureMode.EXTERNAL:
                return {"stopped": False}
            return {"stopped": await manager.stop()}
        if command.action == "recall-status":
            if side_channel is None:
                return {"active": False, "window_id": None}
            return side_channel.status()
        raise TranscriptionError(f"Unknown action: {command.action}")

    return handle


async def _run_daemon(config: TranscriberConfig) -> None:
    from adapters.unix_control import UnixSocketControlServer
    from factory import create_session_manager, create_side_channel
    from health import has_critical_failures, run_startup_checks

    results = run_startup_checks(config)
    if has_critical_failures(results):
        logging.error("Critical health check failures, aborting startup")
        sys.exit(1)

    side_channel = create_side_channel(config)
    manager = create_session_manager(config, side_channel=side_channel)
    control: ControlServer = UnixSocketControlServer(
        create_command_handler(manager, side_channel, config.default_provider),
        socket_path=config.socket_path,
    )

    shutdown_event = asyncio.Event()
    shutdown_triggered = False

    def handle_signal() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            logging.warning("Forced exit")
            sys.exit(1)
        shutdown_triggered = True
        logging.info("Shutting down...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await control.start()

    try:
        await shutdown_event.wait()
    finally:
        await control.stop()
        try:
            await asyncio.wait_for(manager.stop(), timeout=7.0)
        except asyncio.TimeoutError:
            logging.warning("Session did not stop cleanly")
        await side_channel.close()


if __name__ == "__main__":
    main()

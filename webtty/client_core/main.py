import argparse
import asyncio
import sys
from typing import List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from dotenv import load_dotenv
from pydantic import ValidationError

from webtty.client_core.config import ClientSettings
from webtty.client_core.console_emulator import ConsoleEmulator
from webtty.client_core.graceful_shutdown_handler import GracefulExitHandler
from webtty.client_core.runner import ClientRunner
from webtty.comms_core.errors import ConfigurationError
from webtty.comms_core.utils.logger import setup_logger

EXIT_USAGE = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="webtty",
        description="Connect the local terminal to a shared web terminal. Press Ctrl-] to leave.",
    )
    parser.add_argument("url", nargs="?", help="terminal page URL, e.g. https://host:7681/ (or WEBTTY_URL)")
    parser.add_argument("--fwd-port", type=int, help="connect the WebSocket to this port instead of the page's")
    parser.add_argument("--credential", help="user:password for a token endpoint behind basic auth")
    parser.add_argument("--no-leave-alert", action="store_true", default=None,
                        help="leave on the first Ctrl-] without asking")
    parser.add_argument("--no-resize-overlay", action="store_true", default=None,
                        help="do not show the new size after a resize")
    parser.add_argument("--close-on-disconnect", action="store_true", default=None,
                        help="exit as soon as the connection closes, never reconnect")
    parser.add_argument("--log-file", help="log file path (default: webtty.log)")
    parser.add_argument("--log-level", help="log level (default: INFO)")
    return parser.parse_args(argv)


def with_fwd_port(url: str, port: int) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "fwdPort"]
    query.append(("fwdPort", str(port)))
    return urlunsplit(parts._replace(query=urlencode(query)))


def build_settings(args: argparse.Namespace) -> ClientSettings:
    """Command line arguments override the environment and the .env file."""
    overrides = {
        "url": args.url,
        "credential": args.credential,
        "disable_leave_alert": args.no_leave_alert,
        "disable_resize_overlay": args.no_resize_overlay,
        "close_on_disconnect": args.close_on_disconnect,
        "log_file": args.log_file,
        "log_level": args.log_level,
    }
    settings = ClientSettings(**{k: v for k, v in overrides.items() if v is not None})
    if args.fwd_port is not None and settings.url:
        settings = settings.model_copy(update={"url": with_fwd_port(settings.url, args.fwd_port)})
    return settings


async def start(settings: ClientSettings) -> int:
    emulator = ConsoleEmulator(client_options=settings.client_options())
    runner = ClientRunner(settings, emulator)

    exit_handler = GracefulExitHandler(runner)
    emulator.on_leave(runner.request_close)
    emulator.start()
    try:
        return await runner.run()
    finally:
        exit_handler.remove()
        emulator.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    try:
        settings = build_settings(args)
        settings.flow_control()
        if not settings.url:
            raise ConfigurationError("a terminal URL is required (argument or WEBTTY_URL)")
    except (ValidationError, ConfigurationError) as e:
        print(f"webtty: {e}", file=sys.stderr)
        return EXIT_USAGE

    logger, listener = setup_logger(level=settings.log_level.upper(), log_file=settings.log_file, console=False)
    logger.info(f"Starting webtty client for {settings.url}")
    try:
        return asyncio.run(start(settings))
    except ConfigurationError as e:
        print(f"webtty: {e}", file=sys.stderr)
        return EXIT_USAGE
    finally:
        listener.stop()


if __name__ == "__main__":
    sys.exit(main())

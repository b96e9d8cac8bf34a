import argparse
import asyncio
import json
import sys
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from webtty.comms_core.utils.logger import setup_logger
from webtty.server_core.server_lib import Server
from webtty.server_core.settings import ServerSettings


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="webtty-server",
        description="Share a command over the web terminal protocol.",
        usage="%(prog)s [options] -- command [args...]",
    )
    parser.add_argument("-p", "--port", type=int)
    parser.add_argument("-i", "--interface", help="address to listen on")
    parser.add_argument("-b", "--base-path", help="path prefix when served behind a reverse proxy")
    parser.add_argument("-c", "--credential", help="user:password for basic auth")
    parser.add_argument("-s", "--signal", dest="close_signal", help="signal sent to the command on disconnect")
    parser.add_argument("-r", "--reconnect", type=int, help="reconnect hint sent to clients, in seconds")
    parser.add_argument("-R", "--readonly", action="store_true", default=None, help="ignore client input")
    parser.add_argument("-O", "--check-origin", action="store_true", default=None,
                        help="refuse WebSocket clients from a different origin")
    parser.add_argument("-o", "--once", action="store_true", default=None,
                        help="accept only one client and exit when it disconnects")
    parser.add_argument("-m", "--max-clients", type=int, help="maximum concurrent clients, 0 for no limit")
    parser.add_argument("-t", "--client-option", action="append", default=[], metavar="KEY=VALUE",
                        help="client preference sent on connect; VALUE is JSON or a plain string")
    parser.add_argument("--ack-window", type=int, help="unacknowledged output bytes before reading pauses")
    parser.add_argument("--log-file")
    parser.add_argument("--log-level")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="command to run for each client")
    return parser.parse_args(argv)


def parse_client_options(pairs: List[str]) -> dict:
    options = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"client option must look like KEY=VALUE: {pair!r}")
        try:
            options[key] = json.loads(value)
        except ValueError:
            options[key] = value
    return options


def build_settings(args: argparse.Namespace) -> ServerSettings:
    command = args.command
    if command[:1] == ["--"]:
        command = command[1:]
    overrides = {
        "port": args.port,
        "interface": args.interface,
        "base_path": args.base_path,
        "credential": args.credential,
        "close_signal": args.close_signal,
        "reconnect": args.reconnect,
        "readonly": args.readonly,
        "check_origin": args.check_origin,
        "once": args.once,
        "max_clients": args.max_clients,
        "ack_window": args.ack_window,
        "log_file": args.log_file,
        "log_level": args.log_level,
        "command": command or None,
        "preferences": parse_client_options(args.client_option) or None,
    }
    return ServerSettings(**{k: v for k, v in overrides.items() if v is not None})


async def start(settings: ServerSettings):
    server = Server(settings)
    await server.listen()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    try:
        settings = build_settings(args)
    except (ValidationError, ValueError) as e:
        print(f"webtty-server: {e}", file=sys.stderr)
        return 2

    logger, listener = setup_logger(level=settings.log_level.upper(), log_file=settings.log_file)
    logger.info(f"Serving {settings.command} on port {settings.port}")
    try:
        asyncio.run(start(settings))
    finally:
        listener.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())

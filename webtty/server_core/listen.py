import asyncio
import base64
import binascii
import logging
import secrets
from typing import Dict, Optional
from urllib.parse import urlsplit

import uvicorn
from fastapi import APIRouter, FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse

from webtty.comms_core.protocol.messages import TokenResponse
from webtty.server_core.settings import ServerSettings
from webtty.server_core.UnixPTyTerminal import UnixPTyTerminal
from webtty.server_core.web.socket import CLOSE_POLICY_VIOLATION, TerminalFactory, TtyConnection

logger = logging.getLogger(__name__)

SUBPROTOCOL = "tty"
DEFAULT_PORTS = {"http": 80, "ws": 80, "https": 443, "wss": 443}


def check_basic_auth(authorization: Optional[str], credential: str) -> bool:
    """True if the Authorization header carries ``credential`` (user:password)."""
    if not authorization or not authorization.startswith("Basic "):
        return False
    try:
        decoded = base64.b64decode(authorization[6:], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    return secrets.compare_digest(decoded.encode("utf-8"), credential.encode("utf-8"))


def check_host_origin(origin: Optional[str], host: Optional[str]) -> bool:
    """True if the Origin header names the same host and port as the Host header."""
    if not origin or not host:
        return False
    parts = urlsplit(origin)
    if not parts.hostname:
        return False
    try:
        port = parts.port or DEFAULT_PORTS.get(parts.scheme, 80)
    except ValueError:
        return False
    expected = f"{parts.hostname}:{port}".lower()
    host = host.lower()
    if ":" not in host.rsplit("]", 1)[-1]:
        host = f"{host}:{DEFAULT_PORTS.get(parts.scheme, 80)}"
    return host == expected


def refusal_reason(websocket: WebSocket, settings: ServerSettings, client_count: int) -> Optional[str]:
    if settings.once and client_count > 0:
        return "refusing client due to the once option"
    if 0 < settings.max_clients <= client_count:
        return f"refusing client, {settings.max_clients} client(s) already connected"
    if settings.check_origin and not check_host_origin(websocket.headers.get("origin"),
                                                      websocket.headers.get("host")):
        return "refusing client from a different origin"
    return None


def create_app(settings: ServerSettings, terminal_factory: TerminalFactory = UnixPTyTerminal) -> FastAPI:
    """
    Build the terminal application.

    Routes, relative to ``settings.base_path``:
    - GET /token: the token the client presents in its handshake
    - WS /ws: the terminal itself (subprotocol "tty")
    """
    app = FastAPI(title="webtty")
    app.state.settings = settings
    app.state.terminal_factory = terminal_factory
    app.state.clients = {}
    app.state.exit_event = asyncio.Event()

    router = APIRouter()

    @router.get("/token")
    async def token(request: Request):
        if settings.credential and not check_basic_auth(request.headers.get("authorization"), settings.credential):
            logger.warning(f"Unauthorized token request from {request.client}")
            return JSONResponse({"detail": "Unauthorized"}, status_code=401,
                                headers={"WWW-Authenticate": 'Basic realm="webtty"'})
        return TokenResponse(token=settings.token).model_dump()

    @router.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        clients: Dict[str, TtyConnection] = websocket.app.state.clients

        reason = refusal_reason(websocket, settings, len(clients))
        if reason is not None:
            logger.warning(f"WS {websocket.client}: {reason}")
            await websocket.close(code=CLOSE_POLICY_VIOLATION)
            return

        await websocket.accept(subprotocol=SUBPROTOCOL)
        connection = TtyConnection(websocket, settings, websocket.app.state.terminal_factory)
        clients[connection.id] = connection
        logger.info(f"WS {connection.id} from {websocket.client}, clients: {len(clients)}")

        try:
            await connection.run()
        except Exception as e:
            logger.exception(f"Websocket connection failed due to {e}")
            raise
        finally:
            clients.pop(connection.id, None)
            logger.info(f"WS {connection.id} closed, clients: {len(clients)}")
            if settings.once and not clients:
                logger.info("Exiting due to the once option")
                websocket.app.state.exit_event.set()

    app.include_router(router, prefix=settings.base_path)
    return app


def build_server(app: FastAPI, settings: ServerSettings) -> uvicorn.Server:
    config = uvicorn.Config(
        app=app,
        host=settings.interface,
        port=settings.port,
        loop="asyncio",
        log_config=None,
    )

    server = uvicorn.Server(config=config)
    logger.info(f"Configured webtty server on {config.host}:{config.port}{settings.base_path or '/'}")
    return server

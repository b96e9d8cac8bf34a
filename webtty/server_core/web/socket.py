import asyncio
import itertools
import logging
import secrets
import socket
from typing import Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from webtty.comms_core.errors import AuthenticationError, ProtocolError
from webtty.comms_core.protocol.frames import (
    Ack, Data, Geometry, Handshake, Pause, Resize, Resume, SetOption,
    SetReconnect, SetWindowTitle, decode_client, encode_preferences, encode_server,
)
from webtty.comms_core.utils.task_registry import task_registry
from webtty.server_core.settings import ServerSettings
from webtty.server_core.UnixPTyTerminal import UnixPTyTerminal

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INVALID_PAYLOAD = 1007
CLOSE_UNEXPECTED_CONDITION = 1011

ACK_PAUSE = "ack"
CLIENT_PAUSE = "client"

TerminalFactory = Callable[[list, Optional[Geometry]], UnixPTyTerminal]

_connection_ids = itertools.count(1)


async def send(websocket: WebSocket, message: bytes):
    await websocket.send_bytes(message)


async def recv(websocket: WebSocket) -> bytes | None:
    """
    Receive one message from the WebSocket.

    Returns:
        The message as bytes (text messages are UTF-8 encoded), or None if
        the client disconnected.
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        logger.info(f"WebSocket disconnected with code {message.get('code')}")
        return None
    if message.get("bytes") is not None:
        return message["bytes"]
    return (message.get("text") or "").encode("utf-8")


class TtyConnection:
    """
    One client connected to one command.

    The command is only started once the client has sent its handshake (and
    presented the right token, when a credential is configured). From then on
    the PTY output is pumped to the client and client frames are applied to
    the PTY until either side goes away.
    """

    def __init__(self, websocket: WebSocket, settings: ServerSettings,
                 terminal_factory: TerminalFactory = UnixPTyTerminal):
        self.websocket = websocket
        self.settings = settings
        self.terminal_factory = terminal_factory
        self.id = f"client-{next(_connection_ids)}"
        self.terminal: Optional[UnixPTyTerminal] = None
        self.unacked = 0
        self.acks_seen = False

    async def send_initial_messages(self):
        title = f"{self.settings.command[0]} ({socket.gethostname()})"
        await send(self.websocket, encode_server(SetWindowTitle(title)))
        await send(self.websocket, encode_server(SetReconnect(self.settings.reconnect)))
        await send(self.websocket, encode_preferences(self.settings.preferences))

    async def authenticate(self) -> Optional[Handshake]:
        """
        Wait for the handshake.

        Returns:
            The handshake, or None if the client left before sending one.

        Raises:
            AuthenticationError: On a wrong token, or on any other frame first
                when a credential is configured.
            ProtocolError: On a malformed frame.
        """
        while True:
            raw = await recv(self.websocket)
            if raw is None:
                return None
            frame = decode_client(raw)

            if isinstance(frame, Handshake):
                expected = self.settings.token
                if expected and not secrets.compare_digest(frame.token.encode(), expected.encode()):
                    raise AuthenticationError("authentication failed")
                return frame

            if self.settings.credential:
                raise AuthenticationError("not authenticated")
            logger.warning(f"{self.id}: ignoring {type(frame).__name__} before the handshake")

    async def run(self) -> None:
        code: Optional[int] = CLOSE_NORMAL
        try:
            await self.send_initial_messages()
            handshake = await self.authenticate()
            if handshake is None:
                code = None
                return

            geometry = handshake.geometry
            if geometry.rows < 1 or geometry.cols < 1:
                geometry = None
            self.terminal = self.terminal_factory(self.settings.command, geometry)
            await self.terminal.start()

            output = task_registry.create_task(self._pump_output(), name=f"{self.id}-output", context=self.id)
            incoming = task_registry.create_task(self._receive_input(), name=f"{self.id}-input", context=self.id)
            done, _ = await asyncio.wait({output, incoming}, return_when=asyncio.FIRST_COMPLETED)
            code = done.pop().result()

        except AuthenticationError as e:
            logger.warning(f"{self.id}: {e}")
            code = CLOSE_POLICY_VIOLATION
        except ProtocolError as e:
            logger.warning(f"{self.id}: protocol violation: {e}")
            code = CLOSE_INVALID_PAYLOAD
        except WebSocketDisconnect:
            logger.info(f"{self.id}: client went away")
            code = None
        except OSError as e:
            logger.exception(f"{self.id}: terminal failed: {e}")
            code = CLOSE_UNEXPECTED_CONDITION
        finally:
            await task_registry.cancel_context_tasks(self.id)
            if self.terminal is not None:
                await self.terminal.stop(self.settings.signal_code)
            await self._close(code)

    async def _pump_output(self) -> Optional[int]:
        while True:
            data = await self.terminal.read()
            if data is None:
                logger.info(f"{self.id}: process exited")
                return CLOSE_NORMAL

            await send(self.websocket, encode_server(Data(data)))
            self.unacked += len(data)
            if self.acks_seen and 0 < self.settings.ack_window < self.unacked:
                self.terminal.pause(ACK_PAUSE)

    async def _receive_input(self) -> Optional[int]:
        while True:
            raw = await recv(self.websocket)
            if raw is None:
                return None

            match decode_client(raw):
                case Data(data=data):
                    if not self.settings.readonly:
                        self.terminal.write(data)
                case Resize(geometry=geometry):
                    self.terminal.resize(geometry)
                case Pause():
                    self.terminal.pause(CLIENT_PAUSE)
                case Resume():
                    self.terminal.resume(CLIENT_PAUSE)
                case Ack(count=count):
                    self.acks_seen = True
                    self.unacked = max(0, self.unacked - count)
                    if self.unacked <= self.settings.ack_window:
                        self.terminal.resume(ACK_PAUSE)
                case SetOption(key=key, value=value):
                    logger.info(f"{self.id}: client set option {key}={value!r}")
                case Handshake():
                    logger.warning(f"{self.id}: ignoring repeated handshake")

    async def _close(self, code: Optional[int]) -> None:
        if code is None or self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code)
        except RuntimeError as e:
            logger.debug(f"{self.id}: close after disconnect: {e}")

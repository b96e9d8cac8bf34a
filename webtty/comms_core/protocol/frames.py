"""
Logical frames exchanged over the terminal connection and their wire codec.

Every WebSocket message is one command byte followed by its payload. The
handshake is the exception: it is a bare JSON document whose first byte is
the opening brace.
"""

import json
from dataclasses import dataclass
from typing import Any, List

from webtty.comms_core.errors import ProtocolError
from webtty.comms_core.protocol.messages import WsHandshake, WsWinsize, parse_payload


class ClientCommand:
    """Command bytes for messages sent by the client."""
    INPUT = b"0"
    RESIZE_TERMINAL = b"1"
    PAUSE = b"2"
    RESUME = b"3"
    ACK = b"4"
    SET_OPTION = b"5"
    JSON_DATA = b"{"


class ServerCommand:
    """Command bytes for messages sent by the server."""
    OUTPUT = b"0"
    SET_WINDOW_TITLE = b"1"
    SET_PREFERENCES = b"2"
    SET_RECONNECT = b"3"


@dataclass(frozen=True)
class Geometry:
    """Terminal viewport size in cells and pixels."""
    rows: int
    cols: int
    px_width: int = 0
    px_height: int = 0


class Frame:
    """Base class for messages carried over the terminal connection."""
    pass


@dataclass(frozen=True)
class Data(Frame):
    """Terminal output from the remote side, or keystroke/paste input from the local side."""
    data: bytes


@dataclass(frozen=True)
class Resize(Frame):
    """Resize the remote pseudo-terminal."""
    geometry: Geometry


@dataclass(frozen=True)
class Pause(Frame):
    """Ask the remote side to stop producing output."""
    pass


@dataclass(frozen=True)
class Resume(Frame):
    """Ask the remote side to resume producing output."""
    pass


@dataclass(frozen=True)
class Ack(Frame):
    """Cumulative number of output bytes consumed since the previous ack."""
    count: int


@dataclass(frozen=True)
class SetOption(Frame):
    """Runtime option change, delivered beside the data stream."""
    key: str
    value: Any


@dataclass(frozen=True)
class Handshake(Frame):
    """Auth token and initial geometry, sent once when the connection opens."""
    token: str
    geometry: Geometry


@dataclass(frozen=True)
class SetWindowTitle(Frame):
    """Title for the terminal window."""
    title: str


@dataclass(frozen=True)
class SetReconnect(Frame):
    """Seconds the client should wait before reconnecting after a disconnect."""
    seconds: int


def _as_bytes(message: bytes | str) -> bytes:
    if isinstance(message, str):
        return message.encode("utf-8")
    return bytes(message)


def _parse_count(payload: bytes, what: str) -> int:
    try:
        value = int(payload.decode("ascii"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"invalid {what} payload: {payload!r}") from e
    if value < 0:
        raise ProtocolError(f"negative {what} payload: {value}")
    return value


def _geometry_from_winsize(size: WsWinsize) -> Geometry:
    return Geometry(rows=size.rows, cols=size.columns, px_width=size.width, px_height=size.height)


def encode_client(frame: Frame) -> bytes:
    """Serialize a client-to-server frame."""
    match frame:
        case Data(data=data):
            return ClientCommand.INPUT + data
        case Resize(geometry=g):
            size = WsWinsize(columns=g.cols, rows=g.rows, width=g.px_width, height=g.px_height)
            return ClientCommand.RESIZE_TERMINAL + size.model_dump_json().encode("utf-8")
        case Pause():
            return ClientCommand.PAUSE
        case Resume():
            return ClientCommand.RESUME
        case Ack(count=count):
            return ClientCommand.ACK + str(count).encode("ascii")
        case SetOption(key=key, value=value):
            return ClientCommand.SET_OPTION + json.dumps({key: value}).encode("utf-8")
        case Handshake(token=token, geometry=g):
            hello = WsHandshake(auth_token=token, columns=g.cols, rows=g.rows)
            return hello.model_dump_json(by_alias=True).encode("utf-8")
    raise ProtocolError(f"frame {frame!r} cannot be sent by the client")


def decode_client(message: bytes | str) -> Frame:
    """Parse a client-to-server message. Used by the server."""
    raw = _as_bytes(message)
    if not raw:
        raise ProtocolError("empty message")

    command, payload = raw[:1], raw[1:]
    match command:
        case ClientCommand.INPUT:
            return Data(payload)
        case ClientCommand.RESIZE_TERMINAL:
            return Resize(_geometry_from_winsize(parse_payload(payload, WsWinsize)))
        case ClientCommand.PAUSE:
            return Pause()
        case ClientCommand.RESUME:
            return Resume()
        case ClientCommand.ACK:
            return Ack(_parse_count(payload, "ack"))
        case ClientCommand.SET_OPTION:
            options = _parse_object(payload)
            if len(options) != 1:
                raise ProtocolError(f"option frame must carry exactly one key, got {len(options)}")
            (key, value), = options.items()
            return SetOption(key, value)
        case ClientCommand.JSON_DATA:
            hello = parse_payload(raw, WsHandshake)
            return Handshake(hello.auth_token, Geometry(rows=hello.rows, cols=hello.columns))
    raise ProtocolError(f"unknown client command: {command!r}")


def encode_server(frame: Frame) -> bytes:
    """Serialize a server-to-client frame. Used by the server."""
    match frame:
        case Data(data=data):
            return ServerCommand.OUTPUT + data
        case SetWindowTitle(title=title):
            return ServerCommand.SET_WINDOW_TITLE + title.encode("utf-8")
        case SetOption(key=key, value=value):
            return ServerCommand.SET_PREFERENCES + json.dumps({key: value}).encode("utf-8")
        case SetReconnect(seconds=seconds):
            return ServerCommand.SET_RECONNECT + str(seconds).encode("ascii")
    raise ProtocolError(f"frame {frame!r} cannot be sent by the server")


def encode_preferences(preferences: dict) -> bytes:
    """Serialize a whole preference document in a single message."""
    return ServerCommand.SET_PREFERENCES + json.dumps(preferences).encode("utf-8")


def decode_server(message: bytes | str) -> List[Frame]:
    """
    Parse a server-to-client message.

    A preference message can carry several options at once, so this returns
    one `SetOption` per key; every other command yields exactly one frame.

    Raises:
        ProtocolError: On an empty message, an unknown command byte or a malformed payload.
    """
    raw = _as_bytes(message)
    if not raw:
        raise ProtocolError("empty message")

    command, payload = raw[:1], raw[1:]
    match command:
        case ServerCommand.OUTPUT:
            return [Data(payload)]
        case ServerCommand.SET_WINDOW_TITLE:
            try:
                return [SetWindowTitle(payload.decode("utf-8"))]
            except UnicodeDecodeError as e:
                raise ProtocolError("window title is not valid UTF-8") from e
        case ServerCommand.SET_PREFERENCES:
            return [SetOption(key, value) for key, value in _parse_object(payload).items()]
        case ServerCommand.SET_RECONNECT:
            return [SetReconnect(_parse_count(payload, "reconnect"))]
    raise ProtocolError(f"unknown server command: {command!r}")


def _parse_object(payload: bytes) -> dict:
    try:
        obj = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"invalid JSON payload: {payload[:64]!r}") from e
    if not isinstance(obj, dict):
        raise ProtocolError(f"expected a JSON object, got {type(obj).__name__}")
    return obj

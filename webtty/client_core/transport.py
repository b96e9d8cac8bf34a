"""
Transport Session - the persistent, message-framed connection to the remote shell.

Lifecycle:
    CONNECTING -> OPEN -> CLOSED
    CONNECTING -> CLOSED              (handshake failed)
    OPEN -> DRAINING -> CLOSED        (local close with writes outstanding)

The session is the single consumer of an ordered inbound queue (filled by
the reader task) and the single producer of an ordered outbound queue
(emptied by the writer task). All of its state is confined to the event loop
that runs it. CLOSED is final: reconnecting means building a new session.
"""

import asyncio
import itertools
import logging
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Tuple

import websockets
import websockets.exceptions

from webtty.client_core.config import FlowControl
from webtty.client_core.flow_control import FlowController
from webtty.comms_core.errors import ConnectionFailedError, ProtocolError
from webtty.comms_core.protocol.frames import (
    Ack, Data, Frame, Geometry, Handshake, Pause, Resize, Resume,
    SetOption, SetReconnect, SetWindowTitle, decode_server, encode_client,
)
from webtty.comms_core.utils.task_registry import task_registry
from webtty.comms_core.utils.watch import WatchChannel

logger = logging.getLogger(__name__)

SUBPROTOCOL = "tty"
DEFAULT_GEOMETRY = Geometry(rows=24, cols=80)

CLOSE_NORMAL = 1000
CLOSE_INVALID_PAYLOAD = 1007
CLOSE_UNEXPECTED_CONDITION = 1011

_session_ids = itertools.count(1)

# Marks the end of the inbound stream
_EOF = object()


class SessionState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"


class SessionHandler(Protocol):
    """Receives everything the remote side sends, in order."""

    async def on_data(self, data: bytes) -> None: ...

    def on_option(self, key: str, value: Any) -> None: ...

    def on_title(self, title: str) -> None: ...

    def on_reconnect(self, seconds: int) -> None: ...


class TransportSession:
    def __init__(self,
                 ws_url: str,
                 token: str = "",
                 flow_control: Optional[FlowControl] = None,
                 geometry: Optional[Geometry] = None,
                 connect: Callable[..., Any] = websockets.connect,
                 handshake_timeout: float = 10.0,
                 drain_timeout: float = 5.0):
        # Invalid thresholds fail here, before any network activity
        self.flow = FlowController(flow_control if flow_control is not None else FlowControl())
        self.ws_url = ws_url
        self.id = f"session-{next(_session_ids)}"
        self.geometry: Geometry = geometry or DEFAULT_GEOMETRY
        self.handshake_timeout = handshake_timeout
        self.drain_timeout = drain_timeout
        self.closed_reason: Optional[BaseException] = None
        self.close_code: Optional[int] = None
        self.closed_locally = False
        self.reconnect_seconds: Optional[int] = None

        self._token = token
        self._connect = connect
        self._connection = None
        self._state: WatchChannel[SessionState] = WatchChannel(SessionState.CONNECTING)
        self._inbound: asyncio.Queue[Tuple[Frame, int] | object] = asyncio.Queue()
        self._outbound: asyncio.Queue[bytes] = asyncio.Queue()
        self._last_resize: Optional[Geometry] = None
        self._accepting_inbound = True
        self._in_flight = 0
        self._finished = False
        self._closed = asyncio.Event()

    @property
    def state(self) -> SessionState:
        return self._state.get_latest()

    def state_changes(self, max_size: int = 8) -> WatchChannel.WatchReceiver:
        """Subscribe to lifecycle transitions. The first value received is the current state."""
        return self._state.subscribe(max_size=max_size)

    @property
    def outstanding_writes(self) -> int:
        return self._outbound.qsize()

    def _set_state(self, state: SessionState) -> None:
        previous = self.state
        if previous is state:
            return
        logger.info(f"{self.id}: {previous.value} -> {state.value}")
        self._state.send(state)

    async def open(self) -> None:
        """
        Connect, present the token and start the reader and writer tasks.

        Raises:
            ConnectionFailedError: If the connection or handshake fails. The
                session is CLOSED afterwards.
        """
        if self.state is not SessionState.CONNECTING:
            raise RuntimeError(f"{self.id} cannot be opened from state {self.state.value}")

        handshake = encode_client(Handshake(self._token, self.geometry))
        connection = None
        try:
            connection = await asyncio.wait_for(
                self._connect(self.ws_url, subprotocols=[SUBPROTOCOL], max_size=None),
                timeout=self.handshake_timeout,
            )
            if not self._finished:
                self._connection = connection
                await connection.send(handshake)
        except asyncio.CancelledError:
            await self._finish(None, CLOSE_NORMAL)
            raise
        except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as e:
            error = ConnectionFailedError(f"could not connect to {self.ws_url}: {e!r}")
            logger.error(f"{self.id}: {error}")
            await self._finish(error, CLOSE_UNEXPECTED_CONDITION)
            raise error from e

        if self._finished:
            # close() ran while connecting; CLOSED is final
            await self._release(connection)
            raise ConnectionFailedError(f"{self.id} was closed while connecting to {self.ws_url}")

        self._last_resize = self.geometry
        self._set_state(SessionState.OPEN)
        task_registry.create_task(self._read_loop(), name=f"{self.id}-reader", context=self.id)
        task_registry.create_task(self._write_loop(), name=f"{self.id}-writer", context=self.id)

    def _enqueue(self, frame: Frame) -> None:
        self._outbound.put_nowait(encode_client(frame))

    def send_input(self, data: bytes) -> bool:
        """Queue keystroke or paste input. Input is never subject to flow control."""
        if self.state is not SessionState.OPEN:
            logger.warning(f"{self.id}: dropping {len(data)} input bytes in state {self.state.value}")
            return False
        if not data:
            return False
        self._enqueue(Data(data))
        return True

    def send_resize(self, geometry: Geometry) -> bool:
        """
        Queue a resize of the remote terminal.

        Returns:
            False if the geometry is invalid, equal to the last one sent, or
            the session is not open.
        """
        if geometry.rows < 1 or geometry.cols < 1:
            logger.warning(f"{self.id}: ignoring invalid geometry {geometry}")
            return False
        self.geometry = geometry
        if self.state is not SessionState.OPEN:
            return False
        if geometry == self._last_resize:
            return False
        self._last_resize = geometry
        self._enqueue(Resize(geometry))
        return True

    def send_option(self, key: str, value: Any) -> bool:
        if self.state is not SessionState.OPEN:
            logger.warning(f"{self.id}: dropping option {key} in state {self.state.value}")
            return False
        self._enqueue(SetOption(key, value))
        return True

    async def _read_loop(self) -> None:
        error: Optional[BaseException] = None
        code = CLOSE_NORMAL
        try:
            async for message in self._connection:
                if not self._accepting_inbound:
                    # Closing locally; keep reading so the drain can finish
                    continue
                for frame in decode_server(message):
                    self._accept(frame)
            logger.info(f"{self.id}: remote side closed the connection")
        except ProtocolError as e:
            logger.error(f"{self.id}: protocol violation, closing: {e}")
            error, code = e, CLOSE_INVALID_PAYLOAD
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error(f"{self.id}: connection lost: {e!r}")
            error, code = ConnectionFailedError(f"connection lost: {e}"), CLOSE_UNEXPECTED_CONDITION

        self.close_code = getattr(self._connection, "close_code", None)
        await self._finish(error, code)

    def _accept(self, frame: Frame) -> None:
        if isinstance(frame, Data):
            was_throttled = self.flow.throttled
            credit = self.flow.received(len(frame.data))
            if self.flow.throttled and not was_throttled:
                self._enqueue(Pause())
            self._inbound.put_nowait((frame, credit))
        else:
            self._inbound.put_nowait((frame, 0))

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbound.get()
            self._in_flight = 1
            try:
                await self._connection.send(message)
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.error(f"{self.id}: write failed: {e!r}")
                self._outbound.task_done()
                await self._finish(ConnectionFailedError(f"write failed: {e}"), CLOSE_UNEXPECTED_CONDITION)
                return
            self._outbound.task_done()
            self._in_flight = 0

    async def deliver(self, handler: SessionHandler) -> None:
        """
        Hand inbound frames to the handler in receipt order until the session closes.

        Output is credited back to the Flow Controller only after the handler
        has finished writing it, so a slow emulator holds the window open and
        withholds acks. Acks are batched: one per drain of the inbound queue,
        or one when the throttle releases.

        Raises:
            Whatever the handler raises; the session is closed first.
        """
        while True:
            item = await self._inbound.get()
            if item is _EOF or not self._accepting_inbound:
                return
            frame, credit = item

            try:
                match frame:
                    case Data(data=data):
                        await handler.on_data(data)
                        if not self._accepting_inbound:
                            return
                        self._credit(credit)
                    case SetOption(key=key, value=value):
                        handler.on_option(key, value)
                    case SetWindowTitle(title=title):
                        handler.on_title(title)
                    case SetReconnect(seconds=seconds):
                        self.reconnect_seconds = seconds
                        handler.on_reconnect(seconds)
            except Exception as e:
                logger.exception(f"{self.id}: handler failed, closing session: {e}")
                await self._finish(e, CLOSE_UNEXPECTED_CONDITION)
                raise

    def _credit(self, credit: int) -> None:
        released = self.flow.consumed(credit)
        if released:
            self._enqueue(Resume())
        if released or self._inbound.empty():
            count = self.flow.take_ack()
            if count:
                self._enqueue(Ack(count))

    async def close(self) -> None:
        """
        Close the session from the local side.

        Inbound processing stops at once. Writes already queued are flushed
        first (DRAINING); whatever has not been sent after ``drain_timeout``
        is dropped with a warning.
        """
        if self._finished:
            await self._closed.wait()
            return

        self.closed_locally = True
        self._stop_inbound()

        if self.state is SessionState.OPEN and not self._outbound.empty():
            self._set_state(SessionState.DRAINING)
            await self._drain()

        await self._finish(None, CLOSE_NORMAL)

    async def _drain(self) -> None:
        flushed = asyncio.create_task(self._outbound.join())
        finished = asyncio.create_task(self._closed.wait())
        try:
            done, _ = await asyncio.wait({flushed, finished}, timeout=self.drain_timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            flushed.cancel()
            finished.cancel()
        if flushed in done:
            logger.info(f"{self.id}: outstanding writes flushed")

    def _stop_inbound(self) -> None:
        self._accepting_inbound = False
        discarded = 0
        while not self._inbound.empty():
            self._inbound.get_nowait()
            discarded += 1
        if discarded:
            logger.info(f"{self.id}: discarded {discarded} unprocessed inbound frame(s)")
        self._inbound.put_nowait(_EOF)

    async def _finish(self, error: Optional[BaseException], code: int) -> None:
        """Move to CLOSED, releasing the connection and every task of the session."""
        if self._finished:
            return
        self._finished = True
        self.closed_reason = error
        self._stop_inbound()

        # A write cancelled mid-send is lost as well
        dropped = self._in_flight
        while not self._outbound.empty():
            self._outbound.get_nowait()
            self._outbound.task_done()
            dropped += 1
        if dropped:
            logger.warning(f"{self.id}: dropped {dropped} unsent write(s) on close")

        if self._connection is not None:
            await self._release(self._connection, code, "" if error is None else str(error)[:120])
            if self.close_code is None:
                self.close_code = getattr(self._connection, "close_code", None)

        self._set_state(SessionState.CLOSED)
        self._closed.set()
        await task_registry.cancel_context_tasks(self.id, exclude=asyncio.current_task())

    async def _release(self, connection, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        try:
            await connection.close(code, reason)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.warning(f"{self.id}: error while closing connection: {e!r}")

    async def wait_closed(self) -> Optional[BaseException]:
        """Wait for CLOSED and return the reason, if the session ended with an error."""
        await self._closed.wait()
        return self.closed_reason

    @property
    def failed(self) -> bool:
        return self.closed_reason is not None

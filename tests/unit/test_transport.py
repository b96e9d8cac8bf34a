"""
Unit tests for the Transport Session.

Test Coverage:
- Handshake and the CONNECTING -> OPEN -> (DRAINING) -> CLOSED lifecycle
- Ordered delivery, flow-control credit, batched acks, pause/resume
- Fatal errors: connect failure, protocol violation, lost connection, handler failure
- Resize de-duplication and drops outside the OPEN state
"""

import asyncio

import pytest

from tests.fakes import FakeConnector, eventually
from webtty.client_core.config import FlowControl
from webtty.client_core.transport import SessionState, TransportSession
from webtty.comms_core.errors import ConfigurationError, ConnectionFailedError, ProtocolError
from webtty.comms_core.protocol.frames import Ack, Data, Geometry, Handshake, Pause, Resize, Resume
from webtty.comms_core.utils.task_registry import task_registry

WS_URL = "ws://terminal.test/ws"


class RecordingHandler:
    def __init__(self):
        self.data = []
        self.options = {}
        self.titles = []
        self.reconnects = []
        self.gate = None
        self.fail_with = None

    async def on_data(self, data: bytes) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        self.data.append(data)

    def on_option(self, key, value):
        self.options[key] = value

    def on_title(self, title):
        self.titles.append(title)

    def on_reconnect(self, seconds):
        self.reconnects.append(seconds)


async def open_session(connector: FakeConnector, **kwargs) -> TransportSession:
    session = TransportSession(WS_URL, connect=connector, **kwargs)
    await session.open()
    return session


def acks(connection):
    return [frame.count for frame in connection.frames() if isinstance(frame, Ack)]


@pytest.mark.asyncio
class TestOpen:

    async def test_handshake_carries_token_and_geometry(self, connector):
        session = await open_session(connector, token="tok", geometry=Geometry(rows=30, cols=100))

        assert session.state is SessionState.OPEN
        assert connector.last.frames() == [Handshake("tok", Geometry(rows=30, cols=100))]
        url, kwargs = connector.calls[0]
        assert url == WS_URL
        assert kwargs["subprotocols"] == ["tty"]
        await session.close()

    async def test_connect_failure_closes_session(self):
        connector = FakeConnector(error=OSError("connection refused"))
        session = TransportSession(WS_URL, connect=connector)

        with pytest.raises(ConnectionFailedError):
            await session.open()

        assert session.state is SessionState.CLOSED
        assert isinstance(session.closed_reason, ConnectionFailedError)

    async def test_handshake_timeout(self):
        async def never_connects(url, **kwargs):
            await asyncio.sleep(3600)

        session = TransportSession(WS_URL, connect=never_connects, handshake_timeout=0.01)

        with pytest.raises(ConnectionFailedError):
            await session.open()
        assert session.state is SessionState.CLOSED

    async def test_invalid_flow_control_fails_before_connecting(self, connector):
        with pytest.raises(ConfigurationError):
            TransportSession(WS_URL, flow_control={"limit": 10, "highWater": 20, "lowWater": 1}, connect=connector)

        assert connector.calls == []

    async def test_close_while_connecting_stays_closed(self, connector):
        gate = asyncio.Event()

        async def slow_connect(url, **kwargs):
            await gate.wait()
            return await connector(url, **kwargs)

        session = TransportSession(WS_URL, connect=slow_connect)
        opening = asyncio.create_task(session.open())
        await asyncio.sleep(0)

        await session.close()
        gate.set()

        with pytest.raises(ConnectionFailedError):
            await opening
        assert session.state is SessionState.CLOSED
        assert session.closed_locally
        assert connector.last.close_code == 1000
        assert connector.last.sent == []
        await asyncio.sleep(0)
        assert task_registry.get_context_task_count(session.id) == 0

    async def test_cannot_open_twice(self, connector):
        session = await open_session(connector)

        with pytest.raises(RuntimeError):
            await session.open()
        await session.close()


@pytest.mark.asyncio
class TestDelivery:

    async def test_frames_delivered_in_order_and_acked(self, connector):
        session = await open_session(connector)
        handler = RecordingHandler()
        connector.last.push(b"0one", b"0two", b"1title", b"0three")

        deliver = asyncio.create_task(session.deliver(handler))
        await eventually(lambda: len(handler.data) == 3)
        await eventually(lambda: sum(acks(connector.last)) == 11)

        assert handler.data == [b"one", b"two", b"three"]
        assert handler.titles == ["title"]

        connector.last.remote_close(1000)
        await deliver
        assert session.state is SessionState.CLOSED
        assert session.closed_reason is None
        assert session.close_code == 1000

    async def test_side_channel_frames(self, connector):
        session = await open_session(connector)
        handler = RecordingHandler()
        connector.last.push(b'2{"fontSize": 20, "disableLeaveAlert": true}', b"35")

        deliver = asyncio.create_task(session.deliver(handler))
        await eventually(lambda: handler.reconnects == [5])

        assert handler.options == {"fontSize": 20, "disableLeaveAlert": True}
        assert session.reconnect_seconds == 5
        await session.close()
        await deliver

    async def test_throttle_withholds_acks_until_low_water(self, connector):
        session = await open_session(connector, flow_control=FlowControl(limit=100, high_water=100, low_water=40))
        handler = RecordingHandler()
        handler.gate = asyncio.Event()
        connection = connector.last
        connection.push(b"0" + b"a" * 60, b"0" + b"b" * 60)

        deliver = asyncio.create_task(session.deliver(handler))
        await eventually(lambda: Pause() in connection.frames())

        assert session.flow.throttled
        assert acks(connection) == []

        handler.gate.set()
        await eventually(lambda: acks(connection) == [120])

        assert connection.frames()[1:] == [Pause(), Resume(), Ack(120)]
        await session.close()
        await deliver

    async def test_protocol_error_closes_with_invalid_payload(self, connector):
        session = await open_session(connector)
        connector.last.push(b"9bogus")

        reason = await session.wait_closed()

        assert isinstance(reason, ProtocolError)
        assert connector.last.close_code == 1007
        assert session.close_code == 1007
        assert session.failed

    async def test_lost_connection(self, connector):
        session = await open_session(connector)
        connector.last.fail(OSError("connection reset"))

        reason = await session.wait_closed()

        assert isinstance(reason, ConnectionFailedError)
        assert connector.last.close_code == 1011

    async def test_handler_failure_closes_session(self, connector):
        session = await open_session(connector)
        handler = RecordingHandler()
        handler.fail_with = RuntimeError("renderer exploded")
        connector.last.push(b"0boom")

        with pytest.raises(RuntimeError):
            await session.deliver(handler)

        assert session.state is SessionState.CLOSED
        assert session.closed_reason is handler.fail_with
        assert connector.last.close_code == 1011


@pytest.mark.asyncio
class TestOutbound:

    async def test_input_is_sent(self, connector):
        session = await open_session(connector)

        assert session.send_input(b"ls\r") is True
        await eventually(lambda: Data(b"ls\r") in connector.last.frames())
        await session.close()

    async def test_input_dropped_when_not_open(self, connector):
        session = TransportSession(WS_URL, connect=connector)
        assert session.send_input(b"early") is False

        await session.open()
        await session.close()
        assert session.send_input(b"late") is False

    async def test_resize_is_deduplicated(self, connector):
        session = await open_session(connector)

        assert session.send_resize(Geometry(rows=24, cols=80)) is False     # the handshake geometry
        assert session.send_resize(Geometry(rows=30, cols=100)) is True
        assert session.send_resize(Geometry(rows=30, cols=100)) is False
        assert session.send_resize(Geometry(rows=0, cols=100)) is False

        await eventually(lambda: Resize(Geometry(rows=30, cols=100)) in connector.last.frames())
        resizes = [f for f in connector.last.frames() if isinstance(f, Resize)]
        assert len(resizes) == 1
        await session.close()

    async def test_send_option(self, connector):
        session = await open_session(connector)

        assert session.send_option("fontSize", 18) is True
        await session.close()
        assert session.send_option("fontSize", 18) is False


@pytest.mark.asyncio
class TestClose:

    async def test_draining_precedes_closed_and_flushes_writes(self, connector):
        session = await open_session(connector)
        changes = session.state_changes()
        assert await changes.recv() is SessionState.OPEN

        session.send_input(b"exit\r")
        await session.close()

        assert await changes.recv() is SessionState.DRAINING
        assert await changes.recv() is SessionState.CLOSED
        assert Data(b"exit\r") in connector.last.frames()
        assert connector.last.close_code == 1000
        assert session.closed_locally

    async def test_close_without_pending_writes_skips_draining(self, connector):
        session = await open_session(connector)
        changes = session.state_changes()
        await changes.recv()

        await session.close()

        assert await changes.recv() is SessionState.CLOSED

    async def test_drain_timeout_drops_unsent_writes(self, connector):
        session = await open_session(connector, drain_timeout=0.05)
        connection = connector.last
        connection.send_gate = asyncio.Event()

        session.send_input(b"first")
        session.send_input(b"second")
        await session.close()

        assert session.state is SessionState.CLOSED
        assert connection.frames() == [Handshake("", Geometry(rows=24, cols=80))]

    async def test_close_is_idempotent_and_releases_tasks(self, connector):
        session = await open_session(connector)

        await session.close()
        await session.close()
        await asyncio.sleep(0)

        assert session.state is SessionState.CLOSED
        assert task_registry.get_context_task_count(session.id) == 0

    async def test_output_during_drain_does_not_abort_it(self, connector):
        session = await open_session(connector)
        connection = connector.last
        connection.send_gate = asyncio.Event()

        for data in (b"one", b"two", b"three"):
            session.send_input(data)
        await asyncio.sleep(0)
        closing = asyncio.create_task(session.close())
        await eventually(lambda: session.state is SessionState.DRAINING)

        connection.push(b"0more output")
        await asyncio.sleep(0.01)
        assert session.state is SessionState.DRAINING

        connection.send_gate.set()
        await closing

        assert session.state is SessionState.CLOSED
        assert [f.data for f in connection.frames() if isinstance(f, Data)] == [b"one", b"two", b"three"]
        assert session.closed_reason is None

    async def test_write_stuck_mid_send_counts_as_dropped(self, connector, caplog):
        session = await open_session(connector, drain_timeout=0.05)
        connector.last.send_gate = asyncio.Event()

        for data in (b"one", b"two", b"three"):
            session.send_input(data)
        await asyncio.sleep(0)
        with caplog.at_level("WARNING", logger="webtty.client_core.transport"):
            await session.close()

        assert "dropped 3 unsent write(s)" in caplog.text

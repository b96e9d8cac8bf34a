"""
Unit tests for the Terminal Bridge.

Test Coverage:
- Output, title and runtime options reach the emulator
- Input and coalesced resizes reach the session
- Leave guard and disconnect overlay around the session lifecycle
"""

import asyncio

import pytest

from tests.fakes import FakeConnector, eventually
from webtty.client_core.bridge import RESIZE_OVERLAY_TIMEOUT, TerminalBridge
from webtty.client_core.config import ClientOptions
from webtty.client_core.transport import SessionState, TransportSession
from webtty.comms_core.errors import ConnectionFailedError, ProtocolError
from webtty.comms_core.protocol.frames import Data, Geometry, Handshake, Resize

RESIZE_WINDOW = 0.01


async def attach(emulator, connector, **options):
    bridge = TerminalBridge(emulator, ClientOptions(**options), resize_window=RESIZE_WINDOW)
    session = TransportSession("ws://terminal.test/ws", connect=connector)
    task = asyncio.create_task(bridge.attach(session))
    await eventually(lambda: session.state is SessionState.OPEN)
    return bridge, session, task


def resizes(connection):
    return [frame.geometry for frame in connection.frames() if isinstance(frame, Resize)]


@pytest.mark.asyncio
class TestTerminalBridge:

    async def test_handshake_uses_emulator_dimensions(self, emulator, connector):
        emulator.geometry = Geometry(rows=50, cols=200)
        bridge, session, task = await attach(emulator, connector)

        assert connector.last.frames()[0] == Handshake("", Geometry(rows=50, cols=200))
        await bridge.close()
        await task

    async def test_output_title_and_options(self, emulator, connector):
        bridge, session, task = await attach(emulator, connector)
        connector.last.push(b"0hello ", b"1shell (box)", b'2{"disableResizeOverlay": true}', b"0world")

        await eventually(lambda: emulator.output == b"hello world")

        assert emulator.titles == ["shell (box)"]
        assert emulator.options == {"disableResizeOverlay": True}
        assert bridge.option("disable_resize_overlay") is True
        assert bridge.options.disable_resize_overlay is False
        await bridge.close()
        await task

    async def test_input_forwarded(self, emulator, connector):
        bridge, session, task = await attach(emulator, connector)

        emulator.type(b"echo hi\r")

        await eventually(lambda: Data(b"echo hi\r") in connector.last.frames())
        await bridge.close()
        await task

    async def test_resize_burst_sends_only_the_last_geometry(self, emulator, connector):
        bridge, session, task = await attach(emulator, connector)

        emulator.resize(80, 24)
        emulator.resize(100, 30)
        emulator.resize(120, 40)
        await eventually(lambda: resizes(connector.last))
        await asyncio.sleep(RESIZE_WINDOW * 5)

        assert resizes(connector.last) == [Geometry(rows=40, cols=120)]
        assert emulator.overlays == [("120x40", RESIZE_OVERLAY_TIMEOUT)]
        await bridge.close()
        await task

    async def test_repeated_geometry_is_not_resent(self, emulator, connector):
        bridge, session, task = await attach(emulator, connector)
        emulator.resize(120, 40)
        await eventually(lambda: resizes(connector.last))

        emulator.resize(120, 40)
        await asyncio.sleep(RESIZE_WINDOW * 5)

        assert len(resizes(connector.last)) == 1
        assert len(emulator.overlays) == 1
        await bridge.close()
        await task

    async def test_resize_overlay_can_be_disabled(self, emulator, connector):
        bridge, session, task = await attach(emulator, connector, disable_resize_overlay=True)

        emulator.resize(100, 30)
        await eventually(lambda: resizes(connector.last))

        assert emulator.overlays == []
        await bridge.close()
        await task

    async def test_leave_guard_follows_session(self, emulator, connector):
        bridge, session, task = await attach(emulator, connector)
        assert emulator.leave_guard is True

        connector.last.remote_close()
        assert await task is None

        assert emulator.leave_guard is False
        assert emulator.overlays[-1] == ("Connection Closed", None)

    async def test_leave_guard_disabled(self, emulator, connector):
        bridge, session, task = await attach(emulator, connector, disable_leave_alert=True)

        assert emulator.leave_guard is False
        await bridge.close()
        await task

    async def test_close_reason_is_reported(self, emulator, connector):
        bridge, session, task = await attach(emulator, connector)
        connector.last.push(b"9")

        reason = await task

        assert isinstance(reason, ProtocolError)
        message, timeout = emulator.overlays[-1]
        assert message.startswith("Connection Closed: ")
        assert timeout is None

    async def test_close_on_disconnect_disposes_instead_of_overlay(self, emulator, connector):
        bridge, session, task = await attach(emulator, connector, close_on_disconnect=True)

        connector.last.remote_close()
        await task

        assert emulator.disposed is True
        assert emulator.overlays == []

    async def test_connection_failure(self, emulator):
        bridge = TerminalBridge(emulator)
        session = TransportSession("ws://terminal.test/ws", connect=FakeConnector(error=OSError("refused")))

        with pytest.raises(ConnectionFailedError):
            await bridge.attach(session)

        assert emulator.overlays[-1][0].startswith("Connection Closed: ")

    async def test_local_close_is_clean(self, emulator, connector):
        bridge, session, task = await attach(emulator, connector)

        await bridge.close()

        assert await task is None
        assert session.closed_locally
        assert connector.last.close_code == 1000

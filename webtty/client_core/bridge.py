import logging
from typing import Any, Callable, Dict, Optional, Protocol

from webtty.client_core.config import ClientOptions
from webtty.client_core.transport import TransportSession
from webtty.comms_core.errors import ConnectionFailedError
from webtty.comms_core.protocol.frames import Geometry
from webtty.comms_core.utils.coalesce import Coalescer

logger = logging.getLogger(__name__)

RESIZE_WINDOW = 0.05  # seconds
RESIZE_OVERLAY_TIMEOUT = 1.0  # seconds


class Emulator(Protocol):
    """The terminal surface: turns output bytes into screen state and user input into bytes."""

    async def write(self, data: bytes) -> None:
        """Render output. May suspend while the renderer catches up."""
        ...

    def on_data(self, callback: Callable[[bytes], None]) -> None: ...

    def on_resize(self, callback: Callable[[Geometry], None]) -> None: ...

    def get_dimensions(self) -> Geometry: ...

    def show_overlay(self, message: str, timeout: Optional[float] = None) -> None: ...

    def set_title(self, title: str) -> None: ...

    def set_option(self, key: str, value: Any) -> None: ...

    def set_leave_guard(self, armed: bool) -> None: ...

    def dispose(self) -> None: ...


class TerminalBridge:
    """
    Glues a Transport Session to an emulator.

    Output goes to the emulator, input and coalesced resizes go to the
    session, and side-channel frames (options, title, reconnect hint) are
    applied to the emulator. The bridge owns the session it attaches.
    """

    def __init__(self, emulator: Emulator, options: Optional[ClientOptions] = None,
                 resize_window: float = RESIZE_WINDOW):
        self.emulator = emulator
        self.options = options or ClientOptions()
        self.session: Optional[TransportSession] = None
        self.runtime_options: Dict[str, Any] = {}
        self.reconnect_seconds: Optional[int] = None
        self._resizes: Coalescer[Geometry] = Coalescer(resize_window, self._apply_resize)

        emulator.on_data(self._on_input)
        emulator.on_resize(self._resizes.push)

    def option(self, name: str) -> Any:
        """
        Effective value of a client option.

        Options received from the remote side at runtime take precedence over
        the startup configuration, which itself is never modified.
        """
        alias = ClientOptions.model_fields[name].alias or name
        for key in (alias, name):
            if key in self.runtime_options:
                return self.runtime_options[key]
        return getattr(self.options, name)

    async def attach(self, session: TransportSession) -> Optional[BaseException]:
        """
        Open the session and pump it until it closes.

        Returns:
            The reason the session closed, or None for a clean close.

        Raises:
            ConnectionFailedError: If the session could not be opened.
        """
        self.session = session
        session.geometry = self.emulator.get_dimensions()

        try:
            await session.open()
        except ConnectionFailedError:
            self._on_closed(session)
            raise

        self._on_open()
        try:
            await session.deliver(self)
        finally:
            await session.wait_closed()
            self._on_closed(session)
        return session.closed_reason

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()

    # Session -> emulator

    async def on_data(self, data: bytes) -> None:
        await self.emulator.write(data)

    def on_option(self, key: str, value: Any) -> None:
        logger.info(f"Remote set option {key}={value!r}")
        self.runtime_options[key] = value
        self.emulator.set_option(key, value)

    def on_title(self, title: str) -> None:
        self.emulator.set_title(title)

    def on_reconnect(self, seconds: int) -> None:
        self.reconnect_seconds = seconds

    # Emulator -> session

    def _on_input(self, data: bytes) -> None:
        if self.session is None:
            return
        self.session.send_input(data)

    def _apply_resize(self, geometry: Geometry) -> None:
        if self.session is None:
            return
        if not self.session.send_resize(geometry):
            return
        if not self.option("disable_resize_overlay"):
            self.emulator.show_overlay(f"{geometry.cols}x{geometry.rows}", timeout=RESIZE_OVERLAY_TIMEOUT)

    # Lifecycle

    def _on_open(self) -> None:
        if not self.option("disable_leave_alert"):
            self.emulator.set_leave_guard(True)

    def _on_closed(self, session: TransportSession) -> None:
        self._resizes.cancel()
        self.emulator.set_leave_guard(False)

        reason = session.closed_reason
        if reason is not None:
            logger.error(f"{session.id} closed: {reason}")
        else:
            logger.info(f"{session.id} closed (code {session.close_code})")

        if self.option("close_on_disconnect"):
            self.emulator.dispose()
            return
        message = "Connection Closed" if reason is None else f"Connection Closed: {reason}"
        self.emulator.show_overlay(message)

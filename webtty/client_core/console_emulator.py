"""
Emulator backed by the local terminal.

The local tty is the renderer: output bytes are written to stdout as they
are, keystrokes are read from stdin in raw mode and the window size comes
from the tty itself. Writes are awaited, so a slow terminal slows the
session down through the flow-control window.
"""

import asyncio
import fcntl
import logging
import os
import re
import select
import signal
import struct
import sys
import termios
import tty
from typing import Any, Callable, Dict, List, Optional

from webtty.client_core.config import ClientOptions, TerminalOptions, Theme
from webtty.comms_core.protocol.frames import Geometry
from webtty.comms_core.utils.task_registry import task_registry

logger = logging.getLogger(__name__)

READ_SIZE = 4096
DETACH_KEY = b"\x1d"            # Ctrl-]
LEAVE_CONFIRM_WINDOW = 2.0      # seconds
FALLBACK_GEOMETRY = Geometry(rows=24, cols=80)

THEME_RESET = "\x1b]104\x07\x1b]110\x07\x1b]111\x07\x1b]112\x07"
_BARE_LF = re.compile(rb"(?<!\r)\n")


def theme_sequence(theme: Theme) -> str:
    """OSC sequences that load the palette and the default colours of a theme."""
    parts = [f"\x1b]4;{index};{color}\x07" for index, color in enumerate(theme.ansi_palette())]
    parts.append(f"\x1b]10;{theme.foreground}\x07")
    parts.append(f"\x1b]11;{theme.background}\x07")
    parts.append(f"\x1b]12;{theme.cursor}\x07")
    return "".join(parts)


class ConsoleEmulator:
    def __init__(self,
                 terminal_options: Optional[TerminalOptions] = None,
                 client_options: Optional[ClientOptions] = None,
                 stdin_fd: Optional[int] = None,
                 stdout_fd: Optional[int] = None,
                 detach_key: bytes = DETACH_KEY):
        self.terminal_options = terminal_options or TerminalOptions()
        self.client_options = client_options or ClientOptions()
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
        self.detach_key = detach_key
        self.options: Dict[str, Any] = {}
        self.title: Optional[str] = None
        self.disposed = False

        self._data_callbacks: List[Callable[[bytes], None]] = []
        self._resize_callbacks: List[Callable[[Geometry], None]] = []
        self._leave_callbacks: List[Callable[[], None]] = []
        self._saved_attrs: Optional[list] = None
        self._output_lock = asyncio.Lock()
        self._overlay_timer: Optional[asyncio.TimerHandle] = None
        self._leave_guard = False
        self._leave_pending: Optional[asyncio.TimerHandle] = None
        self._started = False

    # Lifecycle

    def start(self) -> None:
        """Put the tty in raw mode and start listening for keystrokes and window changes."""
        if self._started:
            return
        self._started = True
        loop = asyncio.get_running_loop()

        if os.isatty(self.stdin_fd):
            self._saved_attrs = termios.tcgetattr(self.stdin_fd)
            tty.setraw(self.stdin_fd)
        loop.add_reader(self.stdin_fd, self._on_readable)
        try:
            loop.add_signal_handler(signal.SIGWINCH, self._on_winch)
        except (NotImplementedError, RuntimeError) as e:
            logger.warning(f"Window size changes will not be tracked: {e}")

        self._emit(theme_sequence(self.terminal_options.theme).encode("utf-8"))
        logger.info(f"Console emulator started on fd {self.stdin_fd}/{self.stdout_fd}")

    def dispose(self) -> None:
        """Restore the tty. Safe to call more than once."""
        if self.disposed:
            return
        self.disposed = True
        self._cancel_timers()

        if self._started:
            loop = asyncio.get_running_loop()
            loop.remove_reader(self.stdin_fd)
            try:
                loop.remove_signal_handler(signal.SIGWINCH)
            except (NotImplementedError, RuntimeError):
                pass
        self._write_now(THEME_RESET.encode("ascii"))
        if self._saved_attrs is not None:
            termios.tcsetattr(self.stdin_fd, termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None
        logger.info("Console emulator disposed")

    # Emulator interface

    async def write(self, data: bytes) -> None:
        if self.disposed:
            return
        async with self._output_lock:
            await asyncio.get_running_loop().run_in_executor(None, self._write_now, data)

    def on_data(self, callback: Callable[[bytes], None]) -> None:
        self._data_callbacks.append(callback)

    def on_resize(self, callback: Callable[[Geometry], None]) -> None:
        self._resize_callbacks.append(callback)

    def on_leave(self, callback: Callable[[], None]) -> None:
        """Called when the user asks to close the connection."""
        self._leave_callbacks.append(callback)

    def get_dimensions(self) -> Geometry:
        try:
            packed = fcntl.ioctl(self.stdout_fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0))
        except OSError:
            return FALLBACK_GEOMETRY
        rows, cols, px_width, px_height = struct.unpack("HHHH", packed)
        if rows < 1 or cols < 1:
            return FALLBACK_GEOMETRY
        return Geometry(rows=rows, cols=cols, px_width=px_width, px_height=px_height)

    def show_overlay(self, message: str, timeout: Optional[float] = None) -> None:
        """
        Show a short message on the bottom line.

        A message with a timeout is cleared once it expires. Without one it
        is written below the current output and left there.
        """
        if self.disposed:
            return
        if self._overlay_timer is not None:
            self._overlay_timer.cancel()
            self._overlay_timer = None

        if timeout is None:
            self._emit(f"\r\n\x1b[7m {message} \x1b[0m\r\n".encode("utf-8"))
            return

        rows = self.get_dimensions().rows
        self._emit(f"\x1b7\x1b[{rows};1H\x1b[2K\x1b[7m {message} \x1b[0m\x1b8".encode("utf-8"))
        self._overlay_timer = asyncio.get_running_loop().call_later(timeout, self._clear_overlay, rows)

    def set_title(self, title: str) -> None:
        self.title = title
        self._emit(f"\x1b]2;{title}\x07".encode("utf-8"))

    def set_option(self, key: str, value: Any) -> None:
        self.options[key] = value
        if key == "theme" and isinstance(value, dict):
            theme = Theme.model_validate({**self.terminal_options.theme.model_dump(by_alias=True), **value})
            self._emit(theme_sequence(theme).encode("utf-8"))

    def set_leave_guard(self, armed: bool) -> None:
        self._leave_guard = armed

    # Internals

    def _is_windows(self) -> bool:
        return bool(self.options.get("isWindows", self.client_options.is_windows))

    def _on_readable(self) -> None:
        try:
            data = os.read(self.stdin_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            logger.error(f"Reading from the console failed: {e}")
            data = b""

        if not data:
            logger.info("Console input closed")
            asyncio.get_running_loop().remove_reader(self.stdin_fd)
            self._leave()
            return

        while data:
            before, found, data = data.partition(self.detach_key)
            if before:
                self._dispatch_input(before)
            if found:
                self._request_leave()

    def _dispatch_input(self, data: bytes) -> None:
        if self._is_windows():
            data = _BARE_LF.sub(b"\r\n", data)
        for callback in self._data_callbacks:
            callback(data)

    def _on_winch(self) -> None:
        geometry = self.get_dimensions()
        for callback in self._resize_callbacks:
            callback(geometry)

    def _request_leave(self) -> None:
        if self._leave_guard and self._leave_pending is None:
            self.show_overlay("Press Ctrl-] again to close the connection", timeout=LEAVE_CONFIRM_WINDOW)
            self._leave_pending = asyncio.get_running_loop().call_later(LEAVE_CONFIRM_WINDOW, self._expire_leave)
            return
        self._leave()

    def _expire_leave(self) -> None:
        self._leave_pending = None

    def _leave(self) -> None:
        if self._leave_pending is not None:
            self._leave_pending.cancel()
            self._leave_pending = None
        for callback in self._leave_callbacks:
            callback()

    def _clear_overlay(self, rows: int) -> None:
        self._overlay_timer = None
        self._emit(f"\x1b7\x1b[{rows};1H\x1b[2K\x1b8".encode("ascii"))

    def _cancel_timers(self) -> None:
        for timer in (self._overlay_timer, self._leave_pending):
            if timer is not None:
                timer.cancel()
        self._overlay_timer = None
        self._leave_pending = None

    def _emit(self, data: bytes) -> None:
        """Queue a control sequence behind any output that is still being written."""
        task_registry.create_task(self.write(data), name="console-emit", context="console")

    def _write_now(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            try:
                written = os.write(self.stdout_fd, view)
            except BlockingIOError:
                select.select([], [self.stdout_fd], [])
                continue
            view = view[written:]

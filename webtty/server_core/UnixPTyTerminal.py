import asyncio
import errno
import fcntl
import logging
import os
import pty
import select
import shlex
import shutil
import signal
import struct
import subprocess
import termios
from typing import List, Optional, Set

from webtty.comms_core.protocol.frames import Geometry

logger = logging.getLogger(__name__)

READ_SIZE = 16384
TERMINATE_GRACE = 0.5  # seconds


def _child_setup() -> None:
    # New session with the PTY slave (already on fd 0) as controlling terminal
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def resolve_command(command: List[str]) -> List[str]:
    """Run the command directly when it is an executable, through ``sh -c`` otherwise."""
    if shutil.which(command[0]) is not None:
        return list(command)
    return ["/bin/sh", "-c", shlex.join(command) if len(command) > 1 else command[0]]


class UnixPTyTerminal:
    """
    A command running on a pseudo-terminal.

    Output is read from the master side only while the terminal is not
    paused; a paused terminal leaves output in the kernel buffer, which
    eventually blocks the command. Pausing is reference counted by reason so
    that a client pause and an exhausted ack window can overlap.
    """

    def __init__(self, command: List[str], geometry: Optional[Geometry] = None):
        self.command = command
        self.geometry = geometry
        self.master_fd: Optional[int] = None
        self.process: Optional[subprocess.Popen] = None
        self.pid: Optional[int] = None

        self._output: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._pause_reasons: Set[str] = set()
        self._reading = False
        self._eof = False

    async def start(self) -> None:
        """Spawn the command on a new PTY."""
        master_fd, slave_fd = pty.openpty()
        try:
            if self.geometry is not None:
                self._set_winsize(slave_fd, self.geometry)

            env = os.environ.copy()
            env['TERM'] = 'xterm-256color'
            env['COLORTERM'] = 'truecolor'

            self.process = subprocess.Popen(
                resolve_command(self.command),
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                preexec_fn=_child_setup,
                close_fds=True,
            )
        except Exception:
            os.close(master_fd)
            raise
        finally:
            # Only the child needs the slave end
            os.close(slave_fd)

        self.master_fd = master_fd
        self.pid = self.process.pid
        flags = fcntl.fcntl(self.master_fd, fcntl.F_GETFL)
        fcntl.fcntl(self.master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        self._start_reading()
        logger.info(f"Started process {self.pid}: {shlex.join(self.command)}")

    @staticmethod
    def _set_winsize(fd: int, geometry: Geometry) -> None:
        winsize = struct.pack("HHHH", geometry.rows, geometry.cols, geometry.px_width, geometry.px_height)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)

    def resize(self, geometry: Geometry) -> None:
        self.geometry = geometry
        if self.master_fd is None:
            return
        try:
            self._set_winsize(self.master_fd, geometry)
        except OSError as e:
            logger.error(f"ioctl TIOCSWINSZ failed for process {self.pid}: {e}")

    def write(self, data: bytes) -> None:
        """Write input to the command. Raises OSError if the PTY is gone."""
        if self.master_fd is None:
            return
        view = memoryview(data)
        while view:
            try:
                written = os.write(self.master_fd, view)
            except BlockingIOError:
                select.select([], [self.master_fd], [])
                continue
            view = view[written:]

    async def read(self) -> Optional[bytes]:
        """Next chunk of output, or None once the command has exited."""
        if self._eof and self._output.empty():
            return None
        return await self._output.get()

    def pause(self, reason: str = "client") -> None:
        self._pause_reasons.add(reason)
        self._stop_reading()

    def resume(self, reason: str = "client") -> None:
        self._pause_reasons.discard(reason)
        if not self._pause_reasons:
            self._start_reading()

    @property
    def paused(self) -> bool:
        return bool(self._pause_reasons)

    def is_alive(self) -> bool:
        if self.process is None:
            return False
        return self.process.poll() is None

    def _start_reading(self) -> None:
        if self._reading or self._eof or self.master_fd is None:
            return
        asyncio.get_running_loop().add_reader(self.master_fd, self._on_readable)
        self._reading = True

    def _stop_reading(self) -> None:
        if not self._reading:
            return
        asyncio.get_running_loop().remove_reader(self.master_fd)
        self._reading = False

    def _on_readable(self) -> None:
        try:
            data = os.read(self.master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            # EIO: every slave handle is closed, the command is gone
            if e.errno != errno.EIO:
                logger.error(f"Reading from PTY of process {self.pid} failed: {e}")
            data = b""

        if data:
            self._output.put_nowait(data)
            return

        self._stop_reading()
        self._eof = True
        self._output.put_nowait(None)

    async def stop(self, sig: int = signal.SIGHUP) -> Optional[int]:
        """
        Send ``sig`` to the command, reap it and release the PTY.

        Returns:
            The exit status, or None if the command was never started.
        """
        self._stop_reading()
        status = None

        if self.process is not None:
            if self.is_alive():
                logger.info(f"Sending {signal.Signals(sig).name} to process {self.pid}")
                try:
                    os.kill(self.pid, sig)
                except ProcessLookupError:
                    pass
            loop = asyncio.get_running_loop()
            try:
                status = await asyncio.wait_for(loop.run_in_executor(None, self.process.wait), TERMINATE_GRACE)
            except TimeoutError:
                logger.warning(f"Process {self.pid} ignored {signal.Signals(sig).name}, killing it")
                self.process.kill()
                status = await loop.run_in_executor(None, self.process.wait)
            logger.info(f"Process {self.pid} exited with code {status}")

        if self.master_fd is not None:
            os.close(self.master_fd)
            self.master_fd = None
        return status

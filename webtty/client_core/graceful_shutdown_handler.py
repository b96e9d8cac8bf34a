import asyncio
import functools
import logging
import signal
from typing import Any

from webtty.comms_core.utils.task_registry import task_registry

logger = logging.getLogger(__name__)

EXIT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class GracefulExitHandler:
    """
    Closes the client when the process is asked to stop.

    ``client`` needs an async ``close()``. The first signal starts a graceful
    close; any further signal is ignored while it runs.
    """

    def __init__(self, client: Any):
        self.client = client
        self.shutdown_initiated = False
        self.exit_event = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        self._setup_handlers()

    def _setup_handlers(self):
        for sig in EXIT_SIGNALS:
            self._loop.add_signal_handler(sig, functools.partial(self._async_shutdown, sig))

    def remove(self):
        """Give the signals back to their default handlers."""
        for sig in EXIT_SIGNALS:
            self._loop.remove_signal_handler(sig)

    def _async_shutdown(self, sig) -> asyncio.Task | None:
        if self.shutdown_initiated:
            return None
        self.shutdown_initiated = True
        return task_registry.create_task(self.shutdown_coro(sig), name="signal-shutdown", context="runner")

    async def shutdown_coro(self, sig):
        """Close the client, then signal everyone waiting on ``exit_event``."""
        name = signal.Signals(sig).name
        logger.info(f"Received exit signal {name}, shutting down gracefully...")

        try:
            await self.client.close()
            logger.info("Client closed successfully")
        except Exception as e:
            logger.exception(f"Error closing client: {e}")
        finally:
            self.exit_event.set()

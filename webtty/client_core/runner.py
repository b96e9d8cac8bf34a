import asyncio
import logging
from typing import Any, Callable, Optional

import httpx
import websockets

from webtty.client_core.auth import fetch_token
from webtty.client_core.bridge import Emulator, TerminalBridge
from webtty.client_core.config import ClientSettings
from webtty.client_core.endpoints import PageLocation, resolve_endpoints
from webtty.client_core.transport import TransportSession
from webtty.comms_core.errors import ConfigurationError, ConnectionFailedError, TokenFetchError
from webtty.comms_core.utils.task_registry import task_registry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


class ClientRunner:
    """
    Runs sessions against one terminal URL until the user leaves or the
    connection ends for good.

    Each attempt is Endpoint Resolver -> token -> Transport Session -> Terminal
    Bridge. Whether to start another session after one closes is decided here
    and nowhere else: only when the server sent a reconnect hint, the close
    was not requested locally and ``close_on_disconnect`` is off.
    """

    def __init__(self, settings: ClientSettings, emulator: Emulator,
                 http_client: Optional[httpx.AsyncClient] = None,
                 connect: Callable[..., Any] = websockets.connect):
        if not settings.url:
            raise ConfigurationError("no terminal URL configured")
        try:
            location = PageLocation.from_url(settings.url)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        self.settings = settings
        self.emulator = emulator
        self.endpoints = resolve_endpoints(location)
        # Fails here, before any network activity, on bad thresholds
        self.flow_control = settings.flow_control()
        self.bridge = TerminalBridge(emulator, settings.client_options(), resize_window=settings.resize_window)
        self.session: Optional[TransportSession] = None
        self.attempts = 0

        self._http_client = http_client
        self._connect = connect
        self._stopping = asyncio.Event()

    async def run(self) -> int:
        """Returns the process exit code."""
        logger.info(f"Terminal endpoints: ws={self.endpoints.ws_url} token={self.endpoints.token_url}")

        while not self._stopping.is_set():
            self.attempts += 1
            reason = await self._run_once()

            delay = self._reconnect_delay()
            if delay is None:
                return EXIT_OK if reason is None else EXIT_FAILURE

            logger.info(f"Reconnecting in {delay}s (attempt {self.attempts + 1})")
            self.emulator.show_overlay(f"Reconnecting in {delay}s...", timeout=float(delay))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except TimeoutError:
                pass

        return EXIT_OK

    async def _run_once(self) -> Optional[BaseException]:
        try:
            token = await fetch_token(self.endpoints.token_url, self._http_client, self.settings.credential)
        except TokenFetchError as e:
            self.emulator.show_overlay(f"Connection Closed: {e}")
            return e

        self.session = TransportSession(
            self.endpoints.ws_url,
            token=token,
            flow_control=self.flow_control,
            connect=self._connect,
            handshake_timeout=self.settings.handshake_timeout,
            drain_timeout=self.settings.drain_timeout,
        )
        try:
            return await self.bridge.attach(self.session)
        except ConnectionFailedError as e:
            if self.session.closed_locally:
                return None
            return e

    def _reconnect_delay(self) -> Optional[int]:
        if self._stopping.is_set():
            return None
        if self.session is not None and self.session.closed_locally:
            return None
        if self.bridge.option("close_on_disconnect"):
            return None
        seconds = self.bridge.reconnect_seconds
        if not seconds or seconds <= 0:
            return None
        return seconds

    async def close(self) -> None:
        """Close the current session and stop reconnecting."""
        self._stopping.set()
        await self.bridge.close()

    def request_close(self) -> None:
        """Synchronous variant of close() for emulator callbacks."""
        task_registry.create_task(self.close(), name="client-close", context="runner")


async def run_client(settings: ClientSettings, emulator: Emulator, **kwargs) -> int:
    runner = ClientRunner(settings, emulator, **kwargs)
    return await runner.run()

import asyncio
import logging

from webtty.server_core.listen import build_server, create_app
from webtty.server_core.settings import ServerSettings
from webtty.server_core.web.socket import TerminalFactory
from webtty.server_core.UnixPTyTerminal import UnixPTyTerminal

logger = logging.getLogger(__name__)


class Server:
    def __init__(self, settings: ServerSettings, terminal_factory: TerminalFactory = UnixPTyTerminal):
        self.settings = settings
        self.app = create_app(settings, terminal_factory)
        self.http = build_server(self.app, settings)

    async def listen(self):
        """Serve until interrupted or, with the once option, until the only client leaves."""
        serve_task = asyncio.create_task(self.http.serve(), name="uvicorn")
        exit_task = asyncio.create_task(self.app.state.exit_event.wait(), name="exit_event")
        try:
            done, _ = await asyncio.wait({serve_task, exit_task}, return_when=asyncio.FIRST_COMPLETED)
            if exit_task in done:
                await self.graceful_shutdown()
            await serve_task
        except Exception as e:
            logger.exception(f"Server shutting down due to {e}")
            await self.graceful_shutdown()
            raise
        finally:
            exit_task.cancel()

    async def graceful_shutdown(self):
        # Stop accepting connections; uvicorn closes the open ones
        self.http.should_exit = True
        logger.info(f"Shutting down with {len(self.app.state.clients)} client(s) connected")

"""Main entry point - runs the execution API."""

import asyncio
import logging

import uvicorn

from celofx.api.app import create_app
from celofx.config import get_settings

logger = logging.getLogger(__name__)


class Application:
    """Runs the API server; uvicorn handles SIGINT/SIGTERM."""

    def __init__(self):
        self.settings = get_settings()

    def configure_logging(self):
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

    async def start(self):
        """Start all services."""
        self.configure_logging()

        logger.info("Starting CeloFX...")
        logger.info(f"Environment: {self.settings.environment}")
        if self.settings.agent_paused:
            logger.warning("AGENT_PAUSED is set - executions will be refused")
        if not self.settings.agent_api_secret:
            logger.warning("AGENT_API_SECRET not set - agent requests will be refused")

        await self._run_api()
        logger.info("Shutdown complete")

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            app = create_app()
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise


def run():
    """Main entry point."""
    try:
        asyncio.run(Application().start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")


if __name__ == "__main__":
    run()

import argparse
import asyncio
import logging
import signal
import sys

import uvicorn

from .config import settings
from .database import db
from .geoip import geo_resolver
from .jellyfin_client import jellyfin_client
from .monitor import session_monitor

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class JellypulseServer:
    def __init__(self):
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the session monitor and the API server."""
        logger.info("Starting Jellypulse...")

        await db.connect()
        logger.info(f"Connected to database: {settings.database_path}")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.shutdown()))

        monitor_task = asyncio.create_task(session_monitor.run())
        web_task = asyncio.create_task(self._run_web_server())

        logger.info(f"API available at http://localhost:{settings.api_port}")

        await self._shutdown_event.wait()

        # Let the current cycle settle before closing the stores
        session_monitor.stop()
        web_task.cancel()
        try:
            await monitor_task
        except asyncio.CancelledError:
            pass
        try:
            await web_task
        except asyncio.CancelledError:
            pass

        await jellyfin_client.close()
        geo_resolver.close()
        await db.close()
        logger.info("Jellypulse stopped")

    async def shutdown(self) -> None:
        """Signal shutdown."""
        logger.info("Shutting down...")
        self._shutdown_event.set()

    async def _run_web_server(self) -> None:
        """Run the FastAPI server."""
        from dashboard.app import app

        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=settings.api_port,
            log_level="info",
        )
        server = uvicorn.Server(config)
        try:
            await server.serve()
        except asyncio.CancelledError:
            pass


async def run_recovery() -> dict:
    """Run startup recovery once, without polling."""
    await db.connect()
    try:
        return await session_monitor.recover_on_startup()
    finally:
        await jellyfin_client.close()
        geo_resolver.close()
        await db.close()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Jellypulse - Jellyfin session mirror")
    subparsers = parser.add_subparsers(dest="command", help="Commands")
    subparsers.add_parser(
        "recover",
        help="Close ghost sessions and orphaned history entries left by a previous run",
    )

    args = parser.parse_args()

    if not settings.jellyfin_api_key:
        logger.error("JELLYFIN_API_KEY is not set. Please set it in .env file.")
        sys.exit(1)

    if args.command == "recover":
        result = asyncio.run(run_recovery())
        logger.info(
            f"Recovery done: {result['ghosts']} ghost(s), {result['orphans']} orphan(s) closed"
        )
    else:
        server = JellypulseServer()
        asyncio.run(server.start())


if __name__ == "__main__":
    main()

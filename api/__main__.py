"""Command line interface for running the API server."""
import asyncio
import logging

import uvicorn

from config import settings_conf
from database import init_db, close as db_close

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

class UvicornServer:
    """Wrapper for running uvicorn with proper lifecycle management.

    uvicorn handles SIGINT/SIGTERM itself and returns from ``serve`` once
    in-flight requests are done.
    """

    def __init__(self, app_path: str = "api:app", host: str = "0.0.0.0", port: int = 8000):
        self.config = uvicorn.Config(
            app_path,
            host=host,
            port=port,
            log_level="info"
        )
        self.server = uvicorn.Server(self.config)

    async def run(self):
        """Run the server until it is told to exit."""
        await self.server.serve()

async def main():
    """Initialize the database and serve the API until shutdown."""
    try:
        logger.info("Initializing database...")
        await init_db()

        server = UvicornServer(host=settings_conf['api_host'], port=settings_conf['api_port'])
        logger.info(f"Serving API on {settings_conf['api_host']}:{settings_conf['api_port']}")
        await server.run()

    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise
    finally:
        logger.info("Closing database connections...")
        await db_close()
        logger.info("Cleanup complete.")

if __name__ == "__main__":
    asyncio.run(main())

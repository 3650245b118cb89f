"""Application entry point."""

import asyncio
import logging
import signal
import sys

from leaguehq.config import get_config
from leaguehq.db import close_pool, get_pool
from leaguehq.db.schema.migrate import migrate
from leaguehq.payments import build_services
from leaguehq.payments.base import PaymentStore
from leaguehq.payments.memory import MemoryStore
from leaguehq.payments.persistence import PostgresStore
from leaguehq.payments.processor import StripeProcessor
from leaguehq.payments.server import run_server


async def _open_store() -> PaymentStore:
    config = get_config()
    if config.store_backend == "memory":
        return MemoryStore()

    pool = await get_pool()
    applied = await migrate()
    logging.getLogger(__name__).info(f"Database ready, {applied} migration(s) applied")
    return PostgresStore(pool)


async def boot() -> None:
    """
    Boot sequence: load config → open store → serve until SIGTERM/SIGINT → shutdown.

    Raises:
        SystemExit: On configuration or database errors
    """
    logger = logging.getLogger(__name__)
    shutdown = asyncio.Event()

    try:
        config = get_config()
        logger.info(f"Configuration loaded: env={config.env}, store={config.store_backend}")

        store = await _open_store()
        services = build_services(store, StripeProcessor(config), config)
    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        await close_pool()
        raise SystemExit(1) from e

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await run_server(services, shutdown)
    finally:
        await close_pool()
        logger.info("Application shutdown complete")


def main() -> None:
    """Main entry point with logging configuration."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(boot())
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

"""Periodic keepalive log, run as a background task for the life of the app."""
import asyncio
import logging
import time

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


def uptime_seconds() -> float:
    return time.monotonic() - STARTED_AT


async def heartbeat_loop(interval: float) -> None:
    """Log the process uptime every ``interval`` seconds until cancelled."""
    logger.info("Heartbeat started (every %.0fs)", interval)
    while True:
        await asyncio.sleep(interval)
        logger.info("Server running for %.2f minutes", uptime_seconds() / 60)

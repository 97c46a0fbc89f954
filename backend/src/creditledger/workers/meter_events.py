"""Meter event worker process.

    python -m creditledger.workers.meter_events

Runs until SIGINT/SIGTERM, then stops claiming, drains in-flight deliveries
and closes database connections.
"""
import asyncio
import signal

import structlog

from creditledger.config import settings
from creditledger.container import Container
from creditledger.middleware.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_worker() -> None:
    """Run the meter event worker until a termination signal arrives."""
    container = Container(settings)
    await container.startup()

    worker = container.create_meter_worker()
    await worker.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info(
        "meter_worker_process_ready",
        live_mode=settings.is_live_mode,
        rate_limit=worker.rate_limit,
        concurrency=worker.concurrency,
    )
    await stop.wait()

    logger.info("meter_worker_process_stopping")
    await worker.shutdown()
    await container.shutdown()


def main() -> None:
    setup_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()

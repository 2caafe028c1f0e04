"""Standalone worker process: runs the queue workers without the HTTP API"""

import asyncio
import logging
import signal

from dunning_scheduler.config import settings
from dunning_scheduler.infrastructure.database.session import SessionLocal
from dunning_scheduler.infrastructure.observability.logging import setup_logging
from dunning_scheduler.services.runtime import QueueRuntime
from dunning_scheduler.services.scheduler import build_engine_dependencies

logger = logging.getLogger(__name__)


async def serve() -> None:
    deps = build_engine_dependencies(settings, SessionLocal)
    runtime = QueueRuntime(deps)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await runtime.start()
    logger.info("Worker process running")
    try:
        await stop.wait()
    finally:
        await runtime.stop()
        await deps.backend.close()
        logger.info("Worker process stopped")


def run() -> None:
    """Console entry point"""
    setup_logging(settings.log_level, settings.service_name)
    asyncio.run(serve())


if __name__ == "__main__":
    run()

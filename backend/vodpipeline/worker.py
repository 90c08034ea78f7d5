"""Standalone transcode worker.

Runs the pipeline scheduler in-process instead of through Celery beat:

    python -m vodpipeline.worker
"""

import asyncio
import logging
import signal

from vodpipeline.core.config import get_settings
from vodpipeline.core.database import create_engine, create_session_maker
from vodpipeline.core.logging import log_info, setup_logging
from vodpipeline.modules.pipeline.scheduler import create_scheduler

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)

    engine = create_engine(settings)
    scheduler = create_scheduler(settings, create_session_maker(engine))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await scheduler.run_forever(stop)
    finally:
        await engine.dispose()
        log_info(logger, "Worker shut down")


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()

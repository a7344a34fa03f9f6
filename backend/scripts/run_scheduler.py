from __future__ import annotations

import asyncio
import logging

from aggregator.db import init_models
from aggregator.config import settings
from aggregator.jobs.scheduler import build_scheduler


def _quiet_logging() -> None:
    # Root defaults
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(levelname)s:%(name)s:%(message)s",
    )

    # Quiet the usual offenders
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


async def main() -> None:
    _quiet_logging()
    if settings.CACHE_ENABLED:
        await init_models()

    scheduler = build_scheduler()
    scheduler.start()
    logging.getLogger(__name__).info("Scheduler started locations=%s", settings.WARM_LOCATIONS)

    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, asyncio.CancelledError):
        scheduler.shutdown()
        logging.getLogger(__name__).info("Scheduler stopped")


if __name__ == "__main__":
    asyncio.run(main())

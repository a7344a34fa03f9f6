# aggregator/jobs/scheduler.py
from __future__ import annotations

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..config import Settings, settings as default_settings
from ..domain.types import Query
from ..engine.orchestrator import AggregationEngine
from ..service_layer.search import get_engine

log = logging.getLogger(__name__)


async def warm_locations(engine: AggregationEngine, locations: list[str]) -> dict[str, int]:
    """
    Run a default query per location so the cache holds a fresh result.
    One location failing does not stop the others.
    """
    summary = {"warmed": 0, "no_usable_sources": 0, "errors": 0}
    for loc in locations:
        try:
            result = await engine.aggregate(Query(location=loc))
        except ValueError as e:
            summary["errors"] += 1
            log.warning("warm skipped location=%r: %s", loc, e)
            continue
        if result.no_usable_sources:
            summary["no_usable_sources"] += 1
        else:
            summary["warmed"] += 1
        log.info("warm location=%r clusters=%d from_cache=%s", loc, len(result.clusters), result.from_cache)
    return summary


async def _run_warm() -> None:
    s = default_settings
    if not s.WARM_LOCATIONS:
        return  # quiet when nothing is configured
    engine = get_engine()
    if engine.cache is None:
        log.info("warm job: cache disabled, nothing to warm")
        return
    summary = await warm_locations(engine, list(s.WARM_LOCATIONS))
    log.info("warm job done %s", summary)


def build_scheduler(s: Settings | None = None) -> AsyncIOScheduler:
    s = s or default_settings
    sched = AsyncIOScheduler()

    # cache warm cadence
    sched.add_job(lambda: asyncio.create_task(_run_warm()), "interval", minutes=s.WARM_INTERVAL_MINUTES)

    return sched

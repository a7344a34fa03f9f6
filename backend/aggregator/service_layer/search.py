# aggregator/service_layer/search.py
from __future__ import annotations

import logging

from ..adapters.cache import SqlResultCache
from ..adapters.registry import build_adapters
from ..config import EngineConfig, Settings, settings as default_settings
from ..db import AsyncSessionLocal
from ..domain.types import AggregationResult, Query
from ..engine.orchestrator import AggregationEngine
from ..schemas import AggregationOut, SearchRequest

log = logging.getLogger(__name__)

_ENGINE: AggregationEngine | None = None


def build_engine(s: Settings | None = None) -> AggregationEngine:
    s = s or default_settings
    cache = SqlResultCache(AsyncSessionLocal, ttl_minutes=s.CACHE_TTL_MINUTES) if s.CACHE_ENABLED else None
    engine = AggregationEngine(build_adapters(s), EngineConfig.from_settings(s), cache=cache)
    log.info("engine ready sources=%s cache=%s", engine.source_ids, "on" if cache else "off")
    return engine


def get_engine() -> AggregationEngine:
    """
    Process-wide engine. Slot counters live on the engine, so every request
    must share one instance for the concurrency caps to mean anything.
    """
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = build_engine()
    return _ENGINE


async def search(engine: AggregationEngine, req: SearchRequest) -> AggregationOut:
    """Validate, aggregate, serialize. ValueError means a bad query."""
    query: Query = req.to_query()
    result: AggregationResult = await engine.aggregate(query, deadline_s=req.deadline_s)
    return AggregationOut.from_domain(result)

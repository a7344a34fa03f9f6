# aggregator/entrypoints/api/routers/health.py
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from ..deps import engine_dep, require_api_key
from ....config import settings
from ....engine.orchestrator import AggregationEngine
from ....schemas import HealthOut

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthOut)
def health(engine: AggregationEngine = Depends(engine_dep)) -> HealthOut:
    return HealthOut(status="ok", sources=len(engine.source_ids), cache_enabled=engine.cache is not None)


@router.get("/debug/slots", dependencies=[Depends(require_api_key)])
def debug_slots(engine: AggregationEngine = Depends(engine_dep)) -> dict[str, Any]:
    """Live slot usage; handy when a source seems stuck behind its cap."""
    stats = getattr(engine.cache, "stats", None)
    return {
        "ENV": settings.ENV,
        "slots": engine.slots.snapshot(),
        "limits": {
            "global": engine.config.global_concurrency,
            "per_source": engine.config.per_source_concurrency,
        },
        "cache": stats.snapshot() if stats is not None else None,
    }

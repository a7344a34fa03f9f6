# aggregator/entrypoints/api/deps.py
from __future__ import annotations

from fastapi import Header, HTTPException

from ...config import settings
from ...engine.orchestrator import AggregationEngine
from ...service_layer.search import get_engine


def require_api_key(x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> None:
    if settings.API_KEY:
        if not x_api_key or x_api_key != settings.API_KEY:
            raise HTTPException(status_code=401, detail="Invalid API key")


def engine_dep() -> AggregationEngine:
    # tests override this with app.dependency_overrides
    return get_engine()

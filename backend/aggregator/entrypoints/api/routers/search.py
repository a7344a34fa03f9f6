# aggregator/entrypoints/api/routers/search.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ..deps import engine_dep, require_api_key
from ....engine.orchestrator import AggregationEngine
from ....schemas import AggregationOut, SearchRequest, SourceInfo
from ....service_layer.search import search as run_search

router = APIRouter(tags=["search"], dependencies=[Depends(require_api_key)])


@router.post("/search", response_model=AggregationOut)
async def search(body: SearchRequest, engine: AggregationEngine = Depends(engine_dep)) -> AggregationOut:
    try:
        return await run_search(engine, body)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@router.get("/sources", response_model=list[SourceInfo])
def list_sources(engine: AggregationEngine = Depends(engine_dep)) -> list[SourceInfo]:
    return [
        SourceInfo(
            source_id=sid,
            default_currency=engine.adapters[sid].conventions.default_currency,
            decimal_comma=engine.adapters[sid].conventions.decimal_comma,
        )
        for sid in engine.source_ids
    ]

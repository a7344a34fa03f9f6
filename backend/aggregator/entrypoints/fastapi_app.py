# aggregator/entrypoints/fastapi_app.py
from __future__ import annotations

from fastapi import FastAPI

from ..config import settings
from ..db import init_models
from .api.routers import health, search


def create_app() -> FastAPI:
    app = FastAPI(title="Listing Aggregator")

    @app.on_event("startup")
    async def _startup() -> None:
        # Single place where cache tables are created in dev.
        if settings.CACHE_ENABLED:
            await init_models()

    # Routers
    app.include_router(health.router)
    app.include_router(search.router)

    return app

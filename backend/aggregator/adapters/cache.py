# aggregator/adapters/cache.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..domain.types import AggregationResult
from ..models import CachedResult
from ..schemas import AggregationOut

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware_utc(dt: datetime) -> datetime:
    """
    SQLite + SQLAlchemy gives back naive datetimes even when we stored UTC.
    If naive, assume it's UTC and attach tzinfo so comparisons don't explode.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class CacheStats:
    """
    Process-lifetime counters (surfaced by /health)
    """
    hits: int = 0
    misses: int = 0
    expired: int = 0
    writes: int = 0

    def snapshot(self) -> dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "expired": self.expired, "writes": self.writes}


class SqlResultCache:
    """
    ResultCache backed by the cached_results table.

    - get(): fresh row -> AggregationResult, stale or missing -> None
    - put(): insert or replace the row for the key
    Errors propagate; the engine logs and ignores them.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, ttl_minutes: int = 30) -> None:
        self.session_factory = session_factory
        self.ttl = timedelta(minutes=ttl_minutes)
        self.stats = CacheStats()

    def _is_fresh(self, row: CachedResult) -> bool:
        if not row.created_at:
            return False
        return _ensure_aware_utc(row.created_at) >= _utcnow() - self.ttl

    async def get(self, key: str) -> AggregationResult | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(select(CachedResult).where(CachedResult.cache_key == key))
            ).scalars().first()

        if row is None:
            self.stats.misses += 1
            return None
        if not self._is_fresh(row):
            self.stats.expired += 1
            return None

        self.stats.hits += 1
        return AggregationOut.model_validate_json(row.result_json).to_domain()

    async def put(self, key: str, result: AggregationResult) -> None:
        out = AggregationOut.from_domain(result)
        async with self.session_factory() as session:
            row = (
                await session.execute(select(CachedResult).where(CachedResult.cache_key == key))
            ).scalars().first()
            if row is None:
                row = CachedResult(cache_key=key)
                session.add(row)
            row.location = result.query.location[:255]
            row.query_json = json.dumps(result.query.canonical(), sort_keys=True)
            row.result_json = out.model_dump_json()
            row.clusters = len(out.clusters)
            row.created_at = _utcnow()
            await session.commit()
        self.stats.writes += 1
        log.debug("cached key=%s clusters=%d", key[:12], len(out.clusters))

    async def purge_expired(self) -> int:
        cutoff = _utcnow() - self.ttl
        async with self.session_factory() as session:
            res = await session.execute(delete(CachedResult).where(CachedResult.created_at < cutoff))
            await session.commit()
        return int(res.rowcount or 0)

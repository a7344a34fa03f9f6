# aggregator/engine/orchestrator.py
from __future__ import annotations

import asyncio
import enum
import logging
import random
from datetime import datetime, timezone
from typing import Iterable, Protocol

from ..adapters.base import SourceAdapter
from ..config import EngineConfig
from ..domain.currency import FxTable
from ..domain.errors import ErrorCode
from ..domain.matching import MatchConfig, deduplicate
from ..domain.normalize import normalize_batch
from ..domain.types import AggregationResult, NormalizedListing, Query, SourceOutcome, SourceStatus
from .deadline import Deadline
from .retry import RetryPolicy
from .scheduler import ConcurrencySlots, SourceRun, SourceScheduler

log = logging.getLogger(__name__)


class OrchestratorState(str, enum.Enum):
    pending = "pending"
    dispatching = "dispatching"
    collecting = "collecting"
    finalizing = "finalizing"
    done = "done"


class ResultCache(Protocol):
    """Optional external store. Misses and failures must never break a query."""

    async def get(self, key: str) -> AggregationResult | None:
        ...

    async def put(self, key: str, result: AggregationResult) -> None:
        ...


class _Run:
    """Per-query state; private to one aggregate() call."""

    def __init__(self, query: Query, targets: list[str], deadline: Deadline) -> None:
        self.query = query
        self.targets = targets
        self.deadline = deadline
        self.state = OrchestratorState.pending
        self.runs: dict[str, SourceRun] = {}
        self.completion_order: list[str] = []

    def advance(self, to: OrchestratorState) -> None:
        log.debug("query=%s %s -> %s", self.query.location, self.state.value, to.value)
        self.state = to


class AggregationEngine:
    """
    Fan a Query out to every targeted adapter, collect whatever finishes inside
    the deadline, normalize, deduplicate, rank. Source failures only ever show
    up in source_outcomes; aggregate() itself does not raise for them.
    """

    def __init__(
        self,
        adapters: Iterable[SourceAdapter],
        config: EngineConfig | None = None,
        *,
        cache: ResultCache | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.adapters: dict[str, SourceAdapter] = {}
        for a in adapters:
            if a.source_id in self.adapters:
                raise ValueError(f"duplicate adapter source_id={a.source_id!r}")
            self.adapters[a.source_id] = a

        self.cache = cache
        self.fx = FxTable.from_config(self.config.reference_currency, self.config.fx_rates)
        self.match = MatchConfig(
            threshold=self.config.match_threshold,
            price_tolerance=self.config.price_tolerance,
            size_tolerance=self.config.size_tolerance,
            geo_radius_m=self.config.geo_radius_m,
        )
        # shared by every concurrent query on this engine
        self.slots = ConcurrencySlots(self.config.global_concurrency, self.config.per_source_concurrency)
        self.scheduler = SourceScheduler(
            self.slots,
            RetryPolicy(
                max_attempts=self.config.max_attempts,
                base_s=self.config.backoff_base_s,
                cap_s=self.config.backoff_cap_s,
                attempt_timeout_s=self.config.attempt_timeout_s,
            ),
            page_cap=self.config.page_cap,
            rng=rng,
        )

    @property
    def source_ids(self) -> list[str]:
        return sorted(self.adapters)

    def resolve_targets(self, query: Query) -> list[str]:
        """Explicit list (unknown ids included, they fail) or every registered adapter."""
        if query.sources is None:
            return self.source_ids
        return sorted(query.sources)

    # -------------------------
    # Cache (optional, never fatal)
    # -------------------------

    async def _cache_get(self, key: str) -> AggregationResult | None:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(key)
        except Exception as e:
            log.warning("cache read failed key=%s: %s", key[:12], e)
            return None

    async def _cache_put(self, key: str, result: AggregationResult) -> None:
        if self.cache is None or result.no_usable_sources:
            return
        try:
            await self.cache.put(key, result)
        except Exception as e:
            log.warning("cache write failed key=%s: %s", key[:12], e)

    # -------------------------
    # State machine
    # -------------------------

    async def aggregate(self, query: Query, deadline_s: float | None = None) -> AggregationResult:
        key = query.canonical_key()
        cached = await self._cache_get(key)
        if cached is not None:
            log.info("query=%s served from cache", query.location)
            return AggregationResult(
                clusters=cached.clusters,
                source_outcomes=cached.source_outcomes,
                query=query,
                from_cache=True,
                elapsed_s=0.0,
                finished_at=cached.finished_at,
            )

        budget = self.config.query_deadline_s if deadline_s is None else deadline_s
        run = _Run(query, self.resolve_targets(query), Deadline.after(budget))

        run.advance(OrchestratorState.dispatching)
        tasks = self._dispatch(run)

        run.advance(OrchestratorState.collecting)
        await self._collect(run, tasks)

        run.advance(OrchestratorState.finalizing)
        result = self._finalize(run)

        run.advance(OrchestratorState.done)
        await self._cache_put(key, result)
        return result

    def _dispatch(self, run: _Run) -> dict[asyncio.Task, str]:
        tasks: dict[asyncio.Task, str] = {}
        for source_id in run.targets:
            adapter = self.adapters.get(source_id)
            if adapter is None:
                run.runs[source_id] = SourceRun(
                    source_id=source_id,
                    status=SourceStatus.failed,
                    error=ErrorCode.unknown_source.value,
                    detail="no adapter registered under this id",
                )
                continue
            task = asyncio.create_task(self.scheduler.run(adapter, run.query, run.deadline), name=f"fetch:{source_id}")
            tasks[task] = source_id
        return tasks

    async def _collect(self, run: _Run, tasks: dict[asyncio.Task, str]) -> None:
        pending = set(tasks)
        # small grace past the deadline for tasks to notice it themselves
        grace = min(1.0, self.config.attempt_timeout_s)

        while pending:
            timeout = run.deadline.remaining() + grace
            done, pending = await asyncio.wait(pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if not done:
                break
            for task in done:
                source_id = tasks[task]
                run.completion_order.append(source_id)
                if task.cancelled():
                    run.runs[source_id] = SourceRun(source_id, SourceStatus.timed_out, error=ErrorCode.timed_out.value)
                    continue
                exc = task.exception()
                if exc is not None:
                    log.error("source=%s crashed: %r", source_id, exc)
                    run.runs[source_id] = SourceRun(
                        source_id, SourceStatus.failed, error=ErrorCode.transient.value, detail=repr(exc)
                    )
                    continue
                run.runs[source_id] = task.result()

        # anything still running is past the deadline: cancel and discard
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                source_id = tasks[task]
                run.runs[source_id] = SourceRun(
                    source_id, SourceStatus.timed_out, error=ErrorCode.timed_out.value, detail="cancelled at deadline"
                )

    def _finalize(self, run: _Run) -> AggregationResult:
        outcomes: dict[str, SourceOutcome] = {}
        listings: list[NormalizedListing] = []

        for source_id in run.targets:
            sr = run.runs.get(source_id) or SourceRun(source_id, SourceStatus.timed_out, error=ErrorCode.timed_out.value)
            kept: list[NormalizedListing] = []
            dropped = filtered = 0

            adapter = self.adapters.get(source_id)
            if adapter is not None and sr.records:
                kept, counters = normalize_batch(sr.records, conventions=adapter.conventions, fx=self.fx, query=run.query)
                dropped, filtered = counters.dropped, counters.filtered
                if counters.reasons:
                    log.info("source=%s dropped=%d reasons=%s", source_id, dropped, counters.reasons)

            listings.extend(kept)
            outcome = SourceOutcome(
                source_id=source_id,
                status=sr.status,
                listings_returned=len(kept),
                error=sr.error,
                detail=sr.detail,
                attempts=sr.attempts,
                pages=sr.pages,
                dropped=dropped,
                filtered=filtered,
            )
            outcomes[source_id] = outcome
            log.info(
                "source=%s status=%s listings=%d attempts=%d pages=%d error=%s",
                source_id, outcome.status.value, outcome.listings_returned, outcome.attempts, outcome.pages, outcome.error,
            )

        clusters = deduplicate(listings, self.match, run.query.sort)
        result = AggregationResult(
            clusters=tuple(clusters),
            source_outcomes=outcomes,
            query=run.query,
            elapsed_s=round(run.deadline.elapsed(), 3),
            finished_at=datetime.now(timezone.utc),
        )
        if result.no_usable_sources:
            log.warning("query=%s %s: %s", run.query.location, ErrorCode.no_usable_sources.value, sorted(outcomes))
        return result

    def aggregate_sync(self, query: Query, deadline_s: float | None = None) -> AggregationResult:
        """Blocking entry point for callers without an event loop."""
        return asyncio.run(self.aggregate(query, deadline_s))

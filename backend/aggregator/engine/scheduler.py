# aggregator/engine/scheduler.py
from __future__ import annotations

import asyncio
import inspect
import logging
import random
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from ..adapters.base import FetchPage, RawListing, SourceAdapter
from ..domain.errors import ErrorCode, Malformed
from ..domain.types import Query, SourceStatus
from .deadline import Deadline, DeadlineExceeded
from .retry import AttemptStatus, RetryOutcome, RetryPolicy, call_with_retry

log = logging.getLogger(__name__)


@dataclass
class _Waiter:
    source_id: str
    future: asyncio.Future


class ConcurrencySlots:
    """
    Global + per-source fetch budgets shared by every query on one engine.

    Counters only change on the event loop, so increments and decrements are
    atomic. Waiters are served in submission order; a waiter whose source is
    saturated does not hold back waiters for other sources.
    """

    def __init__(self, global_limit: int, per_source_limit: int) -> None:
        self.global_limit = global_limit
        self.per_source_limit = per_source_limit
        self.in_flight = 0
        self.by_source: dict[str, int] = {}
        self._waiters: deque[_Waiter] = deque()

    def _has_room(self, source_id: str) -> bool:
        return self.in_flight < self.global_limit and self.by_source.get(source_id, 0) < self.per_source_limit

    def _take(self, source_id: str) -> None:
        self.in_flight += 1
        self.by_source[source_id] = self.by_source.get(source_id, 0) + 1

    def _wake(self) -> None:
        for w in list(self._waiters):
            if self.in_flight >= self.global_limit:
                break
            if w.future.done():
                self._waiters.remove(w)
                continue
            if self._has_room(w.source_id):
                self._waiters.remove(w)
                self._take(w.source_id)
                w.future.set_result(None)

    def snapshot(self) -> dict[str, object]:
        return {
            "in_flight": self.in_flight,
            "by_source": {k: v for k, v in self.by_source.items() if v},
            "queued": sum(1 for w in self._waiters if not w.future.done()),
        }

    async def acquire(self, source_id: str, deadline: Deadline) -> None:
        # earlier waiters keep priority for the same source
        queued_ahead = any(w.source_id == source_id and not w.future.done() for w in self._waiters)
        if not queued_ahead and self._has_room(source_id):
            self._take(source_id)
            return

        fut = asyncio.get_running_loop().create_future()
        waiter = _Waiter(source_id, fut)
        self._waiters.append(waiter)
        try:
            await asyncio.wait_for(asyncio.shield(fut), timeout=deadline.remaining())
        except (asyncio.TimeoutError, asyncio.CancelledError) as e:
            if fut.done() and not fut.cancelled():
                # slot was granted just as we gave up: hand it back
                self.release(source_id)
            else:
                fut.cancel()
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            if isinstance(e, asyncio.CancelledError):
                raise
            raise DeadlineExceeded(f"no slot for {source_id} before the deadline") from None

    def release(self, source_id: str) -> None:
        self.in_flight = max(0, self.in_flight - 1)
        self.by_source[source_id] = max(0, self.by_source.get(source_id, 0) - 1)
        self._wake()

    @asynccontextmanager
    async def slot(self, source_id: str, deadline: Deadline) -> AsyncIterator[None]:
        await self.acquire(source_id, deadline)
        try:
            yield
        finally:
            self.release(source_id)


@dataclass
class SourceRun:
    """Terminal state of one source's (possibly paginated) work for one query."""

    source_id: str
    status: SourceStatus
    records: list[RawListing] = field(default_factory=list)
    attempts: int = 0
    pages: int = 0
    error: str | None = None
    detail: str | None = None


async def _invoke(adapter: SourceAdapter, query: Query, page_token: str | None) -> FetchPage:
    fetch = adapter.fetch
    if inspect.iscoroutinefunction(fetch):
        return await fetch(query, page_token)
    # blocking adapters run on the default thread pool
    return await asyncio.to_thread(fetch, query, page_token)


class SourceScheduler:
    """Runs one source's pages in order under the shared slots and the retry policy."""

    def __init__(
        self,
        slots: ConcurrencySlots,
        policy: RetryPolicy,
        *,
        page_cap: int = 3,
        rng: random.Random | None = None,
    ) -> None:
        self.slots = slots
        self.policy = policy
        self.page_cap = page_cap
        self.rng = rng

    async def _fetch_page(
        self, adapter: SourceAdapter, query: Query, token: str | None, deadline: Deadline
    ) -> RetryOutcome:
        source_id = adapter.source_id
        return await call_with_retry(
            lambda: _invoke(adapter, query, token),
            policy=self.policy,
            deadline=deadline,
            source_id=source_id,
            # the slot is held only for the duration of a single fetch
            gate=lambda: self.slots.slot(source_id, deadline),
            rng=self.rng,
        )

    async def run(self, adapter: SourceAdapter, query: Query, deadline: Deadline) -> SourceRun:
        source_id = adapter.source_id
        run = SourceRun(source_id=source_id, status=SourceStatus.ok)
        token: str | None = None

        while run.pages < self.page_cap:
            if deadline.expired:
                if run.pages == 0:
                    run.status = SourceStatus.timed_out
                else:
                    # stopped at a page boundary: earlier pages are complete
                    run.status = SourceStatus.partial
                run.error = ErrorCode.timed_out.value
                break

            outcome = await self._fetch_page(adapter, query, token, deadline)
            run.attempts += outcome.attempts

            if outcome.status == AttemptStatus.timed_out:
                # in-flight work at the deadline: partial output is discarded
                run.status = SourceStatus.timed_out
                run.error = ErrorCode.timed_out.value
                run.detail = str(outcome.error) if outcome.error else None
                run.records = []
                break

            if outcome.status == AttemptStatus.failed:
                err = outcome.error
                if isinstance(err, Malformed):
                    log.warning("source=%s page=%d malformed response: %s", source_id, run.pages + 1, err)
                # nothing collected yet: the source gave us nothing usable
                run.status = SourceStatus.failed if run.pages == 0 else SourceStatus.partial
                run.error = err.code.value if err else ErrorCode.transient.value
                run.detail = str(err) if err else None
                break

            page: FetchPage = outcome.value
            run.pages += 1
            run.records.extend(page.records)
            token = page.next_page_token
            if not token:
                break

        return run

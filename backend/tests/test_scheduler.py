import asyncio
import random
from dataclasses import replace

import pytest

from aggregator.adapters.base import FetchPage, SourceConventions
from aggregator.domain.errors import Blocked, Malformed
from aggregator.domain.types import Query, SourceStatus
from aggregator.engine.deadline import Deadline, DeadlineExceeded
from aggregator.engine.orchestrator import AggregationEngine
from aggregator.engine.retry import RetryPolicy
from aggregator.engine.scheduler import ConcurrencySlots, SourceScheduler

from fakes import ScriptedAdapter, Step, Tracker, page, raw

POLICY = RetryPolicy(max_attempts=3, base_s=0.01, cap_s=0.05, attempt_timeout_s=1.0)
Q = Query(location="mdp")


class ManualDeadline(Deadline):
    """Expires when the test says so."""

    def __init__(self) -> None:
        super().__init__(expires_at=float("inf"), started_at=0.0)
        object.__setattr__(self, "_expired", [False])

    def expire(self) -> None:
        self._expired[0] = True

    @property
    def expired(self) -> bool:
        return self._expired[0]

    def remaining(self) -> float:
        return 0.0 if self.expired else 60.0


def _scheduler(page_cap: int = 3, slots: ConcurrencySlots | None = None) -> SourceScheduler:
    return SourceScheduler(slots or ConcurrencySlots(6, 2), POLICY, page_cap=page_cap, rng=random.Random(0))


@pytest.mark.asyncio
async def test_slots_grant_fifo_and_skip_saturated_sources():
    slots = ConcurrencySlots(global_limit=2, per_source_limit=1)
    dl = Deadline.after(5)
    await slots.acquire("a", dl)
    await slots.acquire("b", dl)

    wait_a = asyncio.create_task(slots.acquire("a", dl))
    await asyncio.sleep(0)
    wait_c = asyncio.create_task(slots.acquire("c", dl))
    await asyncio.sleep(0)
    assert slots.snapshot()["queued"] == 2

    # "a" is still at its per-source cap, so "c" goes first despite queuing later
    slots.release("b")
    await asyncio.wait_for(wait_c, 1)
    assert not wait_a.done()

    slots.release("a")
    await asyncio.wait_for(wait_a, 1)
    assert slots.snapshot() == {"in_flight": 2, "by_source": {"a": 1, "c": 1}, "queued": 0}


@pytest.mark.asyncio
async def test_slot_wait_is_bounded_by_deadline():
    slots = ConcurrencySlots(global_limit=1, per_source_limit=1)
    await slots.acquire("a", Deadline.after(5))
    with pytest.raises(DeadlineExceeded):
        await slots.acquire("b", Deadline.after(0.05))
    assert slots.snapshot()["queued"] == 0

    slots.release("a")
    assert slots.in_flight == 0


@pytest.mark.asyncio
async def test_pagination_is_sequential_and_capped():
    adapter = ScriptedAdapter(
        "s",
        [
            Step(page(raw("s", "1"), next_token="p2")),
            Step(page(raw("s", "2"), next_token="p3")),
            Step(page(raw("s", "3"), next_token="p4")),
        ],
    )
    run = await _scheduler(page_cap=3).run(adapter, Q, Deadline.after(5))
    assert run.status == SourceStatus.ok
    assert adapter.calls == [None, "p2", "p3"]
    assert run.pages == 3
    assert [r.source_ref for r in run.records] == ["1", "2", "3"]


@pytest.mark.asyncio
async def test_pagination_stops_without_token():
    adapter = ScriptedAdapter("s", [Step(page(raw("s", "1")))])
    run = await _scheduler().run(adapter, Q, Deadline.after(5))
    assert adapter.calls == [None]
    assert run.pages == 1
    assert run.attempts == 1


@pytest.mark.asyncio
async def test_failure_on_first_page_fails_the_source():
    adapter = ScriptedAdapter("s", [Step(Blocked("403"))])
    run = await _scheduler().run(adapter, Q, Deadline.after(5))
    assert run.status == SourceStatus.failed
    assert run.error == "blocked"
    assert run.records == []


@pytest.mark.asyncio
async def test_failure_on_later_page_keeps_earlier_pages():
    adapter = ScriptedAdapter("s", [Step(page(raw("s", "1"), next_token="p2")), Step(Blocked("403"))])
    run = await _scheduler().run(adapter, Q, Deadline.after(5))
    assert run.status == SourceStatus.partial
    assert run.error == "blocked"
    assert [r.source_ref for r in run.records] == ["1"]


@pytest.mark.asyncio
async def test_malformed_first_page_is_failed():
    adapter = ScriptedAdapter("s", [Step(Malformed("layout changed"))])
    run = await _scheduler().run(adapter, Q, Deadline.after(5))
    assert run.status == SourceStatus.failed
    assert run.error == "malformed"
    assert run.attempts == 1


@pytest.mark.asyncio
async def test_malformed_later_page_keeps_earlier_pages():
    adapter = ScriptedAdapter("s", [Step(page(raw("s", "1"), next_token="p2")), Step(Malformed("no cards"))])
    run = await _scheduler().run(adapter, Q, Deadline.after(5))
    assert run.status == SourceStatus.partial
    assert run.error == "malformed"
    assert [r.source_ref for r in run.records] == ["1"]


@pytest.mark.asyncio
async def test_in_flight_work_at_deadline_is_discarded():
    adapter = ScriptedAdapter(
        "s",
        [Step(page(raw("s", "1"), next_token="p2")), Step(page(raw("s", "2")), delay=5.0)],
    )
    run = await _scheduler().run(adapter, Q, Deadline.after(0.2))
    assert run.status == SourceStatus.timed_out
    assert run.records == []


@pytest.mark.asyncio
async def test_deadline_at_page_boundary_keeps_completed_pages():
    deadline = ManualDeadline()

    class TwoPages:
        source_id = "s"
        conventions = SourceConventions()

        async def fetch(self, query, page_token=None):
            # first page lands, then the budget runs out before page two starts
            deadline.expire()
            return page(raw("s", "1"), next_token="p2")

    run = await _scheduler().run(TwoPages(), Q, deadline)
    assert run.status == SourceStatus.partial
    assert run.error == "timed_out"
    assert run.pages == 1
    assert [r.source_ref for r in run.records] == ["1"]


@pytest.mark.asyncio
async def test_blocking_adapter_runs_in_a_worker_thread():
    class SyncAdapter:
        source_id = "legacy"
        conventions = SourceConventions()

        def fetch(self, query, page_token=None):
            return FetchPage(records=[raw("legacy", "1")])

    run = await _scheduler().run(SyncAdapter(), Q, Deadline.after(5))
    assert run.status == SourceStatus.ok
    assert len(run.records) == 1


@pytest.mark.asyncio
async def test_caps_hold_across_concurrent_queries(fast_config):
    tracker = Tracker()

    def slow(source_id):
        return ScriptedAdapter(source_id, [Step(page(raw(source_id, "1")), delay=0.05)], tracker=tracker)

    cfg = replace(fast_config, global_concurrency=3, per_source_concurrency=2)
    engine = AggregationEngine([slow("a"), slow("b")], cfg)

    results = await asyncio.gather(*(engine.aggregate(Query(location=f"loc {i}")) for i in range(4)))

    assert all(r.source_outcomes["a"].status == SourceStatus.ok for r in results)
    assert tracker.peak <= 3
    assert max(tracker.peak_by_source.values()) <= 2
    assert tracker.peak >= 2
    assert engine.slots.in_flight == 0

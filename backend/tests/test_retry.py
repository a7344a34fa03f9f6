import asyncio
import random
import time
from contextlib import asynccontextmanager

import pytest

from aggregator.domain.errors import Blocked, Malformed, RateLimited, Transient
from aggregator.engine.deadline import Deadline, DeadlineExceeded
from aggregator.engine.retry import AttemptStatus, RetryPolicy, call_with_retry

FAST = RetryPolicy(max_attempts=3, base_s=0.01, cap_s=0.05, attempt_timeout_s=1.0)


def scripted(*results, delay: float = 0.0):
    """Callable that yields each result in turn (raising exceptions)."""
    queue = list(results)
    calls = {"n": 0}

    async def call():
        calls["n"] += 1
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if delay:
            await asyncio.sleep(delay)
        if isinstance(item, BaseException):
            raise item
        return item

    return call, calls


def test_backoff_grows_exponentially_with_bounded_jitter():
    p = RetryPolicy(base_s=0.5, cap_s=8.0)
    rng = random.Random(7)
    assert 1.0 <= p.backoff_seconds(2, rng) < 1.5
    assert 2.0 <= p.backoff_seconds(3, rng) < 2.5
    # exponential part capped
    assert 8.0 <= p.backoff_seconds(10, rng) < 8.5


@pytest.mark.asyncio
async def test_transient_twice_then_success():
    call, calls = scripted(Transient("502"), Transient("503"), "page")
    out = await call_with_retry(call, policy=FAST, deadline=Deadline.after(5), rng=random.Random(0))
    assert out.status == AttemptStatus.success
    assert out.value == "page"
    assert out.attempts == 3
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_blocked_is_not_retried():
    call, calls = scripted(Blocked("captcha"), "page")
    out = await call_with_retry(call, policy=FAST, deadline=Deadline.after(5))
    assert out.status == AttemptStatus.failed
    assert out.attempts == 1
    assert isinstance(out.error, Blocked)
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_malformed_is_not_retried():
    call, _ = scripted(Malformed("no cards"))
    out = await call_with_retry(call, policy=FAST, deadline=Deadline.after(5))
    assert out.status == AttemptStatus.failed
    assert out.attempts == 1


@pytest.mark.asyncio
async def test_unknown_exception_counts_as_transient():
    call, _ = scripted(RuntimeError("socket went away"), "page")
    out = await call_with_retry(call, policy=FAST, deadline=Deadline.after(5), source_id="s")
    assert out.ok
    assert out.attempts == 2


@pytest.mark.asyncio
async def test_attempts_exhausted_reports_last_error():
    call, calls = scripted(Transient("still down"))
    out = await call_with_retry(call, policy=FAST, deadline=Deadline.after(5))
    assert out.status == AttemptStatus.failed
    assert out.attempts == 3
    assert isinstance(out.error, Transient)
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_rate_limited_waits_at_least_retry_after():
    call, _ = scripted(RateLimited("429", retry_after=0.2), "page")
    t0 = time.monotonic()
    out = await call_with_retry(call, policy=FAST, deadline=Deadline.after(5))
    assert out.ok
    assert time.monotonic() - t0 >= 0.2


@pytest.mark.asyncio
async def test_backoff_crossing_deadline_times_out_promptly():
    call, calls = scripted(RateLimited("429", retry_after=30))
    t0 = time.monotonic()
    out = await call_with_retry(call, policy=FAST, deadline=Deadline.after(0.3))
    assert out.status == AttemptStatus.timed_out
    assert out.attempts == 1
    assert calls["n"] == 1
    assert time.monotonic() - t0 < 0.3 + 0.2


@pytest.mark.asyncio
async def test_deadline_during_backoff_schedule():
    policy = RetryPolicy(max_attempts=5, base_s=1.0, cap_s=8.0, attempt_timeout_s=1.0)
    call, _ = scripted(Transient("502"))
    t0 = time.monotonic()
    out = await call_with_retry(call, policy=policy, deadline=Deadline.after(0.5))
    assert out.status == AttemptStatus.timed_out
    assert time.monotonic() - t0 < 0.5 + 0.2


@pytest.mark.asyncio
async def test_slow_attempt_is_transient_then_retried():
    state = {"n": 0}

    async def call():
        state["n"] += 1
        if state["n"] == 1:
            await asyncio.sleep(1.0)
        return "page"

    policy = RetryPolicy(max_attempts=3, base_s=0.01, cap_s=0.05, attempt_timeout_s=0.05)
    out = await call_with_retry(call, policy=policy, deadline=Deadline.after(5))
    assert out.ok
    assert out.attempts == 2


@pytest.mark.asyncio
async def test_in_flight_attempt_cut_at_deadline():
    call, _ = scripted("page", delay=2.0)
    t0 = time.monotonic()
    out = await call_with_retry(call, policy=FAST, deadline=Deadline.after(0.1))
    assert out.status == AttemptStatus.timed_out
    assert time.monotonic() - t0 < 0.1 + 0.2


@pytest.mark.asyncio
async def test_gate_that_never_opens_times_out():
    @asynccontextmanager
    async def gate():
        raise DeadlineExceeded("no slot")
        yield  # pragma: no cover

    call, calls = scripted("page")
    out = await call_with_retry(call, policy=FAST, deadline=Deadline.after(1), gate=gate)
    assert out.status == AttemptStatus.timed_out
    assert out.attempts == 0
    assert calls["n"] == 0

# aggregator/engine/retry.py
from __future__ import annotations

import asyncio
import enum
import logging
import random
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Awaitable, Callable

from ..domain.errors import FetchError, RateLimited, Transient, as_fetch_error
from .deadline import Deadline, DeadlineExceeded

log = logging.getLogger(__name__)


class AttemptStatus(str, enum.Enum):
    success = "success"
    failed = "failed"
    timed_out = "timed_out"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_s: float = 0.5
    cap_s: float = 8.0
    attempt_timeout_s: float = 10.0

    def backoff_seconds(self, attempt: int, rng: random.Random | None = None) -> float:
        """
        Delay before `attempt` (2, 3, ...): base * 2^(attempt-1), capped, plus
        jitter uniform in [0, base).
        """
        exp = min(self.base_s * (2 ** max(0, attempt - 1)), self.cap_s)
        jitter = (rng or random).uniform(0.0, self.base_s) if self.base_s > 0 else 0.0
        return exp + jitter


@dataclass(frozen=True)
class RetryOutcome:
    status: AttemptStatus
    attempts: int
    value: Any = None
    error: FetchError | None = None

    @property
    def ok(self) -> bool:
        return self.status == AttemptStatus.success


async def call_with_retry(
    call: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    deadline: Deadline,
    source_id: str | None = None,
    gate: Callable[[], AsyncContextManager[Any]] | None = None,
    rng: random.Random | None = None,
) -> RetryOutcome:
    """
    Run one adapter call with bounded retries.

    Transient and RateLimited are retried; Blocked and Malformed return at once.
    `gate` (a concurrency slot) is entered before each attempt and left before
    any backoff sleep; time spent waiting on it is bounded by the deadline, not
    by the attempt timeout. Each attempt is capped by min(attempt timeout,
    remaining deadline). When the deadline is gone, or the next backoff would
    outlive it, the result is timed_out rather than another attempt.
    """
    attempts = 0
    last: FetchError | None = None

    while attempts < policy.max_attempts:
        if deadline.expired:
            return RetryOutcome(AttemptStatus.timed_out, attempts, error=last)

        try:
            async with (gate() if gate is not None else nullcontext()):
                attempts += 1
                budget = deadline.bound(policy.attempt_timeout_s)
                value = await asyncio.wait_for(call(), timeout=budget)
            return RetryOutcome(AttemptStatus.success, attempts, value=value)
        except DeadlineExceeded:
            return RetryOutcome(AttemptStatus.timed_out, attempts, error=last)
        except asyncio.TimeoutError:
            if deadline.expired:
                return RetryOutcome(AttemptStatus.timed_out, attempts, error=last)
            last = Transient(f"attempt timed out after {policy.attempt_timeout_s:.2f}s", source_id=source_id)
        except Exception as e:
            last = as_fetch_error(e, source_id=source_id)
            if not last.retryable:
                log.info("source=%s attempt=%d %s (not retried): %s", source_id, attempts, last.code.value, last)
                return RetryOutcome(AttemptStatus.failed, attempts, error=last)

        if attempts >= policy.max_attempts:
            break

        delay = policy.backoff_seconds(attempts + 1, rng)
        if isinstance(last, RateLimited) and last.retry_after:
            delay = max(delay, float(last.retry_after))

        if delay >= deadline.remaining():
            log.info("source=%s backoff %.2fs would cross the deadline; giving up", source_id, delay)
            return RetryOutcome(AttemptStatus.timed_out, attempts, error=last)

        log.debug("source=%s attempt=%d %s, retrying in %.2fs", source_id, attempts, last.code.value, delay)
        await asyncio.sleep(delay)

    return RetryOutcome(AttemptStatus.failed, attempts, error=last)

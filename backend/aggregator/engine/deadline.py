from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Deadline:
    """
    Shared cancellation token for one query: every suspension point asks it
    how long it may wait.
    """

    expires_at: float
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        now = time.monotonic()
        return cls(expires_at=now + max(0.0, float(seconds)), started_at=now)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def bound(self, timeout: float | None) -> float:
        """min(timeout, remaining) for a single wait."""
        rem = self.remaining()
        return rem if timeout is None else min(float(timeout), rem)


class DeadlineExceeded(Exception):
    """Raised by waits that ran out of query time (e.g. a concurrency slot never freed)."""

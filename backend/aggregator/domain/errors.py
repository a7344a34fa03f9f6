# aggregator/domain/errors.py
from __future__ import annotations

import enum


class ErrorCode(str, enum.Enum):
    rate_limited = "rate_limited"
    blocked = "blocked"
    transient = "transient"
    malformed = "malformed"
    timed_out = "timed_out"
    normalization = "normalization"
    no_usable_sources = "no_usable_sources"
    unknown_source = "unknown_source"


class FetchError(Exception):
    """Base for adapter-level failures. Subclasses pin the taxonomy code."""

    code: ErrorCode = ErrorCode.transient
    retryable: bool = False

    def __init__(self, message: str = "", *, source_id: str | None = None) -> None:
        super().__init__(message or self.code.value)
        self.source_id = source_id


class RateLimited(FetchError):
    code = ErrorCode.rate_limited
    retryable = True

    def __init__(
        self,
        message: str = "",
        *,
        retry_after: float | None = None,
        source_id: str | None = None,
    ) -> None:
        super().__init__(message, source_id=source_id)
        self.retry_after = retry_after


class Blocked(FetchError):
    """Anti-bot or consent wall. Never retried within one query."""

    code = ErrorCode.blocked


class Transient(FetchError):
    code = ErrorCode.transient
    retryable = True


class Malformed(FetchError):
    """Response parsed but structurally unexpected."""

    code = ErrorCode.malformed


class NormalizationError(ValueError):
    """Raised per record; always soft."""

    code = ErrorCode.normalization

    def __init__(self, reason: str, *, field: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.field = field


def as_fetch_error(exc: BaseException, *, source_id: str | None = None) -> FetchError:
    """Unknown adapter exceptions count as transient."""
    if isinstance(exc, FetchError):
        if exc.source_id is None:
            exc.source_id = source_id
        return exc
    return Transient(f"{type(exc).__name__}: {exc}", source_id=source_id)

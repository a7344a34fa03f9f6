# tests/fakes.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from aggregator.adapters.base import FetchPage, RawListing, SourceConventions
from aggregator.domain.types import NormalizedListing, Query


@dataclass
class Step:
    """One scripted fetch: optional delay, then a page or a raised error."""

    result: FetchPage | BaseException | None = None
    delay: float = 0.0


@dataclass
class Tracker:
    """Concurrent-call high-water marks across adapters."""

    active: int = 0
    peak: int = 0
    by_source: dict[str, int] = field(default_factory=dict)
    peak_by_source: dict[str, int] = field(default_factory=dict)
    started: list[str] = field(default_factory=list)

    def enter(self, source_id: str) -> None:
        self.active += 1
        self.peak = max(self.peak, self.active)
        n = self.by_source.get(source_id, 0) + 1
        self.by_source[source_id] = n
        self.peak_by_source[source_id] = max(self.peak_by_source.get(source_id, 0), n)
        self.started.append(source_id)

    def leave(self, source_id: str) -> None:
        self.active -= 1
        self.by_source[source_id] -= 1


class ScriptedAdapter:
    """
    Plays back `steps` in order, one per fetch() call. The last step repeats
    once the script runs out.
    """

    def __init__(
        self,
        source_id: str,
        steps: list[Step],
        *,
        conventions: SourceConventions | None = None,
        tracker: Tracker | None = None,
    ) -> None:
        self.source_id = source_id
        self.conventions = conventions or SourceConventions()
        self.steps = list(steps)
        self.tracker = tracker
        self.calls: list[str | None] = []

    async def fetch(self, query: Query, page_token: str | None = None) -> FetchPage:
        self.calls.append(page_token)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if self.tracker is not None:
            self.tracker.enter(self.source_id)
        try:
            if step.delay:
                await asyncio.sleep(step.delay)
            if isinstance(step.result, BaseException):
                raise step.result
            return step.result if step.result is not None else FetchPage(records=[])
        finally:
            if self.tracker is not None:
                self.tracker.leave(self.source_id)


def raw(source_id: str, ref: str, **payload: Any) -> RawListing:
    payload.setdefault("url", f"https://{source_id}.test/listing/{ref}")
    return RawListing(source=source_id, source_ref=ref, payload=payload)


def page(*records: RawListing, next_token: str | None = None) -> FetchPage:
    return FetchPage(records=list(records), next_page_token=next_token)


_T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def listing(source_id: str, listing_id: str, price: float | str = 100_000, **kw: Any) -> NormalizedListing:
    kw.setdefault("title", f"{source_id} {listing_id}")
    kw.setdefault("location_text", "")
    kw.setdefault("url", f"https://{source_id}.test/{listing_id}")
    kw.setdefault("fetched_at", _T0)
    kw.setdefault("price_currency", "USD")
    amount = Decimal(str(price))
    kw.setdefault("reference_price", amount if kw["price_currency"] == "USD" else None)
    return NormalizedListing(source_id=source_id, source_listing_id=listing_id, price_amount=amount, **kw)

# aggregator/adapters/base.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

from ..domain.parsing import fold_text
from ..domain.types import Query


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SourceConventions:
    """How a source writes prices and sizes; consumed by the normalizer."""

    default_currency: str = "USD"
    decimal_comma: bool = False
    # "3 ambientes" means 2 bedrooms on Rioplatense portals
    rooms_mean_bedrooms_plus_one: bool = False


@dataclass(frozen=True)
class RawListing:
    """
    What adapters hand to the engine. `payload` keys are loosely canonical:
      title, price, location, neighborhood, size, bedrooms, bathrooms,
      propertyType, url, imageUrl, latitude, longitude
    """

    source: str
    source_ref: str | None
    payload: dict[str, Any]
    fetched_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class FetchPage:
    records: Sequence[RawListing]
    next_page_token: str | None = None


class SourceAdapter(Protocol):
    """
    One implementation per platform. fetch() raises a FetchError subclass on
    failure and must be safe to repeat for the same query/page.
    """

    source_id: str
    conventions: SourceConventions

    async def fetch(self, query: Query, page_token: str | None = None) -> FetchPage:
        raise NotImplementedError


def location_slug(location: str) -> str:
    """'Mar del Plata, Buenos Aires' -> 'mar-del-plata-buenos-aires' (URL and fixture naming)."""
    return "-".join(fold_text(location).split())

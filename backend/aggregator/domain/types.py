# aggregator/domain/types.py
from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Iterator, Mapping


class PropertyType(str, enum.Enum):
    house = "house"
    apartment = "apartment"
    ph = "ph"  # "propiedad horizontal": unit in a low-rise shared lot
    any = "any"


class SortOrder(str, enum.Enum):
    price_asc = "price_asc"
    price_desc = "price_desc"
    newest = "newest"
    size_desc = "size_desc"


class SourceStatus(str, enum.Enum):
    ok = "ok"
    partial = "partial"
    failed = "failed"
    timed_out = "timed_out"


def _check_range(name: str, lo: float | None, hi: float | None) -> None:
    for v in (lo, hi):
        if v is not None and v < 0:
            raise ValueError(f"{name}: values must be non-negative (got {v})")
    if lo is not None and hi is not None and lo > hi:
        raise ValueError(f"{name}: min {lo} is greater than max {hi}")


@dataclass(frozen=True)
class PriceRange:
    min: Decimal | None = None
    max: Decimal | None = None
    currency: str = "USD"

    def __post_init__(self) -> None:
        for attr in ("min", "max"):
            v = getattr(self, attr)
            if v is not None and not isinstance(v, Decimal):
                object.__setattr__(self, attr, Decimal(str(v)))
        object.__setattr__(self, "currency", (self.currency or "").strip().upper())
        if len(self.currency) != 3:
            raise ValueError(f"price_range: currency must be an ISO code (got {self.currency!r})")
        _check_range("price_range", self.min, self.max)


@dataclass(frozen=True)
class SizeRange:
    """Square meters."""

    min: float | None = None
    max: float | None = None

    def __post_init__(self) -> None:
        _check_range("size_range", self.min, self.max)


@dataclass(frozen=True)
class Query:
    """
    Platform-agnostic search. Validated at construction and immutable afterwards.

    sources=None means "every registered adapter".
    """

    location: str
    property_type: PropertyType = PropertyType.any
    price_range: PriceRange | None = None
    size_range: SizeRange | None = None
    bedrooms: int | None = None
    sources: frozenset[str] | None = None
    sort: SortOrder = SortOrder.price_asc

    def __post_init__(self) -> None:
        loc = (self.location or "").strip()
        if not loc:
            raise ValueError("location is required")
        object.__setattr__(self, "location", loc)
        object.__setattr__(self, "property_type", PropertyType(self.property_type))
        object.__setattr__(self, "sort", SortOrder(self.sort))

        if self.bedrooms is not None and self.bedrooms < 0:
            raise ValueError(f"bedrooms must be non-negative (got {self.bedrooms})")

        if self.sources is not None:
            srcs = frozenset(s.strip() for s in self.sources if s and s.strip())
            if not srcs:
                raise ValueError("sources must name at least one source (or be None for all)")
            object.__setattr__(self, "sources", srcs)

    def canonical(self) -> dict[str, object]:
        pr = self.price_range
        sr = self.size_range
        return {
            "location": " ".join(self.location.lower().split()),
            "property_type": self.property_type.value,
            "price_range": None if pr is None else [
                None if pr.min is None else str(pr.min),
                None if pr.max is None else str(pr.max),
                pr.currency,
            ],
            "size_range": None if sr is None else [sr.min, sr.max],
            "bedrooms": self.bedrooms,
            "sources": None if self.sources is None else sorted(self.sources),
            "sort": self.sort.value,
        }

    def canonical_key(self) -> str:
        blob = json.dumps(self.canonical(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class NormalizedListing:
    source_id: str
    source_listing_id: str
    title: str
    price_amount: Decimal
    price_currency: str
    location_text: str
    url: str
    fetched_at: datetime
    neighborhood: str | None = None
    size_m2: float | None = None
    bedrooms: int | None = None
    bathrooms: int | None = None
    property_type: PropertyType | None = None
    image_url: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    # price expressed in the engine's reference currency, None when no rate is known
    reference_price: Decimal | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_id, self.source_listing_id)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def completeness(self) -> int:
        """Number of populated optional fields; used for representative choice and ranking."""
        return sum(
            1
            for present in (
                bool(self.title),
                bool(self.location_text),
                self.neighborhood is not None,
                self.size_m2 is not None,
                self.bedrooms is not None,
                self.bathrooms is not None,
                self.property_type is not None,
                self.image_url is not None,
                self.has_coordinates,
            )
            if present
        )


@dataclass(frozen=True)
class ListingCluster:
    members: tuple[NormalizedListing, ...]
    representative: NormalizedListing
    confidence: float

    def __post_init__(self) -> None:
        if not self.members:
            raise ValueError("cluster must have at least one member")
        if self.representative not in self.members:
            raise ValueError("representative must be a cluster member")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence out of range: {self.confidence}")

    @property
    def sources(self) -> list[str]:
        return sorted({m.source_id for m in self.members})


@dataclass(frozen=True)
class SourceOutcome:
    source_id: str
    status: SourceStatus
    listings_returned: int = 0
    error: str | None = None
    detail: str | None = None
    attempts: int = 0
    pages: int = 0
    dropped: int = 0
    filtered: int = 0

    @property
    def usable(self) -> bool:
        return self.status in (SourceStatus.ok, SourceStatus.partial) or self.listings_returned > 0


@dataclass(frozen=True)
class AggregationResult:
    clusters: tuple[ListingCluster, ...]
    source_outcomes: Mapping[str, SourceOutcome]
    query: Query
    from_cache: bool = False
    elapsed_s: float = 0.0
    finished_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "clusters", tuple(self.clusters))
        object.__setattr__(self, "source_outcomes", MappingProxyType(dict(self.source_outcomes)))

    @property
    def no_usable_sources(self) -> bool:
        """All targeted sources failed or timed out without listings."""
        return not any(o.usable for o in self.source_outcomes.values())

    def listings(self) -> Iterator[NormalizedListing]:
        for c in self.clusters:
            yield from c.members


@dataclass
class DropCounters:
    """Per-source soft-failure tallies while finalizing one query."""

    dropped: int = 0
    filtered: int = 0
    reasons: dict[str, int] = field(default_factory=dict)

    def drop(self, reason: str) -> None:
        self.dropped += 1
        self.reasons[reason] = self.reasons.get(reason, 0) + 1

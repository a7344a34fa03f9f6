from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from .domain.types import (
    AggregationResult,
    ListingCluster,
    NormalizedListing,
    PriceRange,
    PropertyType,
    Query,
    SizeRange,
    SortOrder,
    SourceOutcome,
    SourceStatus,
)

PropertyTypeName = Literal["house", "apartment", "ph", "any"]
SortName = Literal["price_asc", "price_desc", "newest", "size_desc"]


class PriceRangeIn(BaseModel):
    min: Decimal | None = None
    max: Decimal | None = None
    currency: str = "USD"


class SizeRangeIn(BaseModel):
    min: float | None = None
    max: float | None = None


class SearchRequest(BaseModel):
    location: str
    property_type: PropertyTypeName = "any"
    price_range: PriceRangeIn | None = None
    size_range: SizeRangeIn | None = None
    bedrooms: int | None = None
    sources: list[str] | None = None
    sort: SortName = "price_asc"
    deadline_s: float | None = Field(default=None, gt=0, le=120)

    def to_query(self) -> Query:
        """Raises ValueError on semantic problems (min > max, empty location...)."""
        pr = self.price_range
        sr = self.size_range
        return Query(
            location=self.location,
            property_type=PropertyType(self.property_type),
            price_range=None if pr is None else PriceRange(min=pr.min, max=pr.max, currency=pr.currency),
            size_range=None if sr is None else SizeRange(min=sr.min, max=sr.max),
            bedrooms=self.bedrooms,
            sources=None if self.sources is None else frozenset(self.sources),
            sort=SortOrder(self.sort),
        )

    @classmethod
    def from_query(cls, q: Query) -> "SearchRequest":
        pr = q.price_range
        sr = q.size_range
        return cls(
            location=q.location,
            property_type=q.property_type.value,
            price_range=None if pr is None else PriceRangeIn(min=pr.min, max=pr.max, currency=pr.currency),
            size_range=None if sr is None else SizeRangeIn(min=sr.min, max=sr.max),
            bedrooms=q.bedrooms,
            sources=None if q.sources is None else sorted(q.sources),
            sort=q.sort.value,
        )


class ListingOut(BaseModel):
    source_id: str
    source_listing_id: str
    title: str
    price_amount: Decimal
    price_currency: str
    reference_price: Decimal | None = None
    location_text: str
    neighborhood: str | None = None
    url: str
    fetched_at: datetime
    size_m2: float | None = None
    bedrooms: int | None = None
    bathrooms: int | None = None
    property_type: PropertyTypeName | None = None
    image_url: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    @classmethod
    def from_domain(cls, x: NormalizedListing) -> "ListingOut":
        return cls(
            source_id=x.source_id,
            source_listing_id=x.source_listing_id,
            title=x.title,
            price_amount=x.price_amount,
            price_currency=x.price_currency,
            reference_price=x.reference_price,
            location_text=x.location_text,
            neighborhood=x.neighborhood,
            url=x.url,
            fetched_at=x.fetched_at,
            size_m2=x.size_m2,
            bedrooms=x.bedrooms,
            bathrooms=x.bathrooms,
            property_type=None if x.property_type is None else x.property_type.value,
            image_url=x.image_url,
            latitude=x.latitude,
            longitude=x.longitude,
        )

    def to_domain(self) -> NormalizedListing:
        return NormalizedListing(
            source_id=self.source_id,
            source_listing_id=self.source_listing_id,
            title=self.title,
            price_amount=self.price_amount,
            price_currency=self.price_currency,
            location_text=self.location_text,
            url=self.url,
            fetched_at=self.fetched_at,
            neighborhood=self.neighborhood,
            size_m2=self.size_m2,
            bedrooms=self.bedrooms,
            bathrooms=self.bathrooms,
            property_type=None if self.property_type is None else PropertyType(self.property_type),
            image_url=self.image_url,
            latitude=self.latitude,
            longitude=self.longitude,
            reference_price=self.reference_price,
        )


class ClusterOut(BaseModel):
    representative: ListingOut
    members: list[ListingOut]
    confidence: float = Field(..., ge=0.0, le=1.0)
    sources: list[str]

    @classmethod
    def from_domain(cls, c: ListingCluster) -> "ClusterOut":
        return cls(
            representative=ListingOut.from_domain(c.representative),
            members=[ListingOut.from_domain(m) for m in c.members],
            confidence=c.confidence,
            sources=c.sources,
        )

    def to_domain(self) -> ListingCluster:
        members = tuple(m.to_domain() for m in self.members)
        rep = self.representative.to_domain()
        return ListingCluster(members=members, representative=rep, confidence=self.confidence)


class SourceOutcomeOut(BaseModel):
    source_id: str
    status: Literal["ok", "partial", "failed", "timed_out"]
    listings_returned: int = Field(..., ge=0)
    error: str | None = None
    detail: str | None = None
    attempts: int = 0
    pages: int = 0
    dropped: int = 0
    filtered: int = 0

    @classmethod
    def from_domain(cls, o: SourceOutcome) -> "SourceOutcomeOut":
        return cls(
            source_id=o.source_id,
            status=o.status.value,
            listings_returned=o.listings_returned,
            error=o.error,
            detail=o.detail,
            attempts=o.attempts,
            pages=o.pages,
            dropped=o.dropped,
            filtered=o.filtered,
        )

    def to_domain(self) -> SourceOutcome:
        return SourceOutcome(
            source_id=self.source_id,
            status=SourceStatus(self.status),
            listings_returned=self.listings_returned,
            error=self.error,
            detail=self.detail,
            attempts=self.attempts,
            pages=self.pages,
            dropped=self.dropped,
            filtered=self.filtered,
        )


class AggregationOut(BaseModel):
    query: SearchRequest
    clusters: list[ClusterOut]
    source_outcomes: dict[str, SourceOutcomeOut]
    no_usable_sources: bool
    from_cache: bool = False
    elapsed_s: float = 0.0
    finished_at: datetime | None = None

    @classmethod
    def from_domain(cls, r: AggregationResult) -> "AggregationOut":
        return cls(
            query=SearchRequest.from_query(r.query),
            clusters=[ClusterOut.from_domain(c) for c in r.clusters],
            source_outcomes={k: SourceOutcomeOut.from_domain(v) for k, v in r.source_outcomes.items()},
            no_usable_sources=r.no_usable_sources,
            from_cache=r.from_cache,
            elapsed_s=r.elapsed_s,
            finished_at=r.finished_at,
        )

    def to_domain(self) -> AggregationResult:
        return AggregationResult(
            clusters=tuple(c.to_domain() for c in self.clusters),
            source_outcomes={k: v.to_domain() for k, v in self.source_outcomes.items()},
            query=self.query.to_query(),
            from_cache=self.from_cache,
            elapsed_s=self.elapsed_s,
            finished_at=self.finished_at,
        )


class SourceInfo(BaseModel):
    source_id: str
    default_currency: str
    decimal_comma: bool


class HealthOut(BaseModel):
    status: str
    sources: int
    cache_enabled: bool

# aggregator/domain/normalize.py
from __future__ import annotations

import re
from typing import Iterable

from ..adapters.base import RawListing, SourceConventions
from .currency import FxTable
from .errors import NormalizationError
from .parsing import clean_text, get_first, parse_count, parse_price, parse_size_m2, to_float
from .types import DropCounters, NormalizedListing, PropertyType, Query


def normalize_property_type(raw: object) -> PropertyType | None:
    """
    Map messy upstream property type strings onto the query enum.
    Unknown -> None (absent), never a guess.
    """
    if raw is None:
        return None
    if isinstance(raw, PropertyType):
        return None if raw == PropertyType.any else raw

    s = str(raw).strip().lower()
    s = re.sub(r"[\s_/|.-]+", " ", s)
    if not s:
        return None

    # PH first: "ph" also shows up as a token inside longer labels
    if s == "ph" or s.startswith("ph ") or " ph" in f" {s} " or "propiedad horizontal" in s:
        return PropertyType.ph
    if any(k in s for k in ["apartment", "apartamento", "departamento", "depto", "dpto", "condo", "flat", "apt", "loft"]):
        return PropertyType.apartment
    if any(k in s for k in ["house", "casa", "chalet", "single family", "detached", "duplex", "townhouse"]):
        return PropertyType.house
    return None


def _coordinate(value: object, lo: float, hi: float) -> float | None:
    v = to_float(value)
    if v is None or not lo <= v <= hi:
        return None
    return v


def normalize_listing(
    raw: RawListing,
    *,
    conventions: SourceConventions,
    fx: FxTable,
) -> NormalizedListing:
    """
    RawListing -> NormalizedListing. Pure; raises NormalizationError when the
    record lacks identity (source, id, url) or a readable price.
    """
    p = raw.payload or {}

    source_id = clean_text(raw.source)
    listing_id = clean_text(raw.source_ref or get_first(p, "id", "listingId", "listing_id"))
    url = clean_text(get_first(p, "url", "permalink", "link"))
    if not source_id:
        raise NormalizationError("missing source id", field="source")
    if not listing_id:
        raise NormalizationError("missing listing id", field="source_ref")
    if not url:
        raise NormalizationError("missing url", field="url")

    price = parse_price(
        get_first(p, "price", "priceText", "listPrice"),
        default_currency=str(get_first(p, "currency") or conventions.default_currency).upper(),
        decimal_comma=conventions.decimal_comma,
    )
    if price is None:
        raise NormalizationError("unparseable price", field="price")
    amount, currency = price

    location = clean_text(get_first(p, "location", "address", "addressLine"))
    neighborhood = clean_text(get_first(p, "neighborhood", "barrio")) or None

    lat = _coordinate(get_first(p, "latitude", "lat"), -90.0, 90.0)
    lon = _coordinate(get_first(p, "longitude", "lon", "lng"), -180.0, 180.0)
    if lat is None or lon is None:
        lat = lon = None

    return NormalizedListing(
        source_id=source_id,
        source_listing_id=listing_id,
        title=clean_text(get_first(p, "title", "name")) or location,
        price_amount=amount,
        price_currency=currency,
        location_text=location,
        url=url,
        fetched_at=raw.fetched_at,
        neighborhood=neighborhood,
        size_m2=parse_size_m2(get_first(p, "size", "area", "surface"), decimal_comma=conventions.decimal_comma),
        bedrooms=parse_count(
            get_first(p, "bedrooms", "rooms"),
            rooms_mean_bedrooms_plus_one=conventions.rooms_mean_bedrooms_plus_one,
        ),
        bathrooms=parse_count(get_first(p, "bathrooms", "baths")),
        property_type=normalize_property_type(get_first(p, "propertyType", "type")),
        image_url=clean_text(get_first(p, "imageUrl", "image", "thumbnail")) or None,
        latitude=lat,
        longitude=lon,
        reference_price=fx.to_reference(amount, currency),
    )


def matches_query(listing: NormalizedListing, query: Query, fx: FxTable) -> bool:
    """
    Post-fetch filter. Only fields that are present and comparable can reject
    a listing; a missing size or FX rate keeps it.
    """
    pr = query.price_range
    if pr is not None:
        price = fx.to_reference(listing.price_amount, listing.price_currency)
        lo = fx.to_reference(pr.min, pr.currency)
        hi = fx.to_reference(pr.max, pr.currency)
        if price is not None:
            if lo is not None and price < lo:
                return False
            if hi is not None and price > hi:
                return False

    sr = query.size_range
    if sr is not None and listing.size_m2 is not None:
        if sr.min is not None and listing.size_m2 < sr.min:
            return False
        if sr.max is not None and listing.size_m2 > sr.max:
            return False

    if query.bedrooms is not None and listing.bedrooms is not None and listing.bedrooms < query.bedrooms:
        return False

    if (
        query.property_type != PropertyType.any
        and listing.property_type is not None
        and listing.property_type != query.property_type
    ):
        return False

    return True


def normalize_batch(
    records: Iterable[RawListing],
    *,
    conventions: SourceConventions,
    fx: FxTable,
    query: Query | None = None,
) -> tuple[list[NormalizedListing], DropCounters]:
    """
    Normalize one source's records. Unparseable records are dropped and counted;
    duplicate ids inside a source keep the first occurrence.
    """
    counters = DropCounters()
    out: list[NormalizedListing] = []
    seen: set[tuple[str, str]] = set()

    for raw in records:
        try:
            listing = normalize_listing(raw, conventions=conventions, fx=fx)
        except NormalizationError as e:
            counters.drop(f"{e.field or 'record'}::{e.reason}")
            continue
        except (ValueError, ArithmeticError) as e:
            # out-of-range numbers (huge amounts overflow the FX quantize)
            counters.drop(f"record::{type(e).__name__}")
            continue

        if listing.key in seen:
            counters.drop("duplicate_id")
            continue
        seen.add(listing.key)

        if query is not None and not matches_query(listing, query, fx):
            counters.filtered += 1
            continue

        out.append(listing)

    return out, counters

# aggregator/adapters/mercadolibre.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..config import Settings, settings
from ..domain.errors import Malformed
from ..domain.parsing import get_nested, to_int
from ..domain.types import PropertyType, Query
from .base import FetchPage, RawListing, SourceConventions
from .http import PoliteClient

# Inmuebles > Venta, per property type (MLA tree)
_CATEGORY = {
    PropertyType.apartment: "MLA401686",
    PropertyType.house: "MLA401685",
    PropertyType.ph: "MLA105181",
    PropertyType.any: "MLA1459",
}

_ATTRS = {
    "TOTAL_AREA": "size",
    "COVERED_AREA": "coveredArea",
    "BEDROOMS": "bedrooms",
    "ROOMS": "rooms",
    "FULL_BATHROOMS": "bathrooms",
    "PROPERTY_TYPE": "propertyType",
}


def _attributes(item: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for a in item.get("attributes") or []:
        if not isinstance(a, dict):
            continue
        key = _ATTRS.get(str(a.get("id") or ""))
        if key and a.get("value_name"):
            out[key] = a["value_name"]
    return out


def item_to_payload(item: dict[str, Any]) -> dict[str, Any]:
    """Flatten one search result into the loose payload the normalizer reads."""
    loc = item.get("location") or {}
    attrs = _attributes(item)

    parts = [
        loc.get("address_line"),
        get_nested(loc, "neighborhood.name"),
        get_nested(loc, "city.name"),
    ]
    payload: dict[str, Any] = {
        "id": item.get("id"),
        "title": item.get("title"),
        "price": item.get("price"),
        "currency": item.get("currency_id"),
        "url": item.get("permalink"),
        "imageUrl": item.get("thumbnail"),
        "location": ", ".join(p for p in parts if p),
        "neighborhood": get_nested(loc, "neighborhood.name"),
        "latitude": loc.get("latitude"),
        "longitude": loc.get("longitude"),
    }
    payload["size"] = attrs.get("size") or attrs.get("coveredArea")
    payload["bedrooms"] = attrs.get("bedrooms")
    # ROOMS is ambientes; only used when BEDROOMS is missing
    if payload["bedrooms"] is None and attrs.get("rooms") is not None:
        payload["rooms"] = f"{attrs['rooms']} ambientes"
    payload["bathrooms"] = attrs.get("bathrooms")
    payload["propertyType"] = attrs.get("propertyType")
    return payload


@dataclass
class MercadoLibreAdapter:
    """Public search API, offset/limit pagination."""

    base_url: str
    client: PoliteClient
    site_id: str = "MLA"
    page_size: int = 50
    source_id: str = "mercadolibre"
    conventions: SourceConventions = field(
        default_factory=lambda: SourceConventions(
            default_currency="ARS", decimal_comma=False, rooms_mean_bedrooms_plus_one=True
        )
    )

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> "MercadoLibreAdapter":
        s = s or settings
        return cls(
            base_url=s.MERCADOLIBRE_BASE_URL,
            client=PoliteClient.from_settings("mercadolibre", s),
            site_id=s.MERCADOLIBRE_SITE_ID,
            page_size=s.MERCADOLIBRE_PAGE_SIZE,
        )

    def params_for(self, query: Query, offset: int) -> dict[str, Any]:
        # no upstream price filter: it applies per listing currency, which mixes ARS and USD
        return {
            "q": query.location,
            "category": _CATEGORY[query.property_type],
            "offset": offset,
            "limit": self.page_size,
        }

    async def fetch(self, query: Query, page_token: str | None = None) -> FetchPage:
        offset = int(page_token or 0)
        url = f"{self.base_url.rstrip('/')}/sites/{self.site_id}/search"
        data = await self.client.get_json(url, params=self.params_for(query, offset))

        if not isinstance(data, dict) or not isinstance(data.get("results"), list):
            raise Malformed("search response has no results array", source_id=self.source_id)

        records: list[RawListing] = []
        for item in data["results"]:
            if not isinstance(item, dict):
                continue
            payload = item_to_payload(item)
            ref = payload.get("id")
            records.append(RawListing(source=self.source_id, source_ref=None if ref is None else str(ref), payload=payload))

        total = to_int(get_nested(data, "paging.total")) or 0
        nxt = offset + self.page_size
        return FetchPage(records=records, next_page_token=str(nxt) if records and nxt < total else None)

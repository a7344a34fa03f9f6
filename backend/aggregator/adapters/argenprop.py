# aggregator/adapters/argenprop.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..config import Settings, settings
from ..domain.errors import Malformed
from ..domain.types import PropertyType, Query
from .base import FetchPage, RawListing, SourceConventions, location_slug
from .http import PoliteClient

_TYPE_PATH = {
    PropertyType.apartment: "departamentos",
    PropertyType.house: "casas",
    PropertyType.ph: "ph",
    PropertyType.any: "inmuebles",
}

_ID_RE = re.compile(r"--(\d+)(?:$|[/?#])")


def _text(node: Any) -> str | None:
    if node is None:
        return None
    t = node.get_text(" ", strip=True)
    return t or None


def _feature(features: list[str], *patterns: str) -> str | None:
    for f in features:
        low = f.lower()
        if any(p in low for p in patterns):
            return f
    return None


def build_search_url(base_url: str, query: Query, page: int = 1) -> str:
    """
    https://www.argenprop.com/departamentos/venta/palermo?pagina-2
    Ranges are not pushed upstream; the engine filters after normalization.
    """
    path = f"{_TYPE_PATH[query.property_type]}/venta/{location_slug(query.location)}"
    url = urljoin(base_url.rstrip("/") + "/", path)
    return url if page <= 1 else f"{url}?pagina-{page}"


def parse_listing_cards(html: str, *, base_url: str) -> tuple[list[dict[str, Any]], bool]:
    """
    Return (card payloads, has_next_page). Raises Malformed when the page has
    none of the expected structure (layout change, interstitial).
    """
    soup = BeautifulSoup(html, "lxml")
    container = soup.select_one(".listing__items, .listing-container")
    cards = soup.select(".listing__item")
    if container is None and not cards:
        raise Malformed("listing container not found")

    out: list[dict[str, Any]] = []
    for card in cards:
        a = card.find("a", href=True)
        if a is None:
            continue
        url = urljoin(base_url, a["href"])
        listing_id = card.get("data-item-card") or card.get("id")
        if not listing_id:
            m = _ID_RE.search(a["href"])
            listing_id = m.group(1) if m else None

        features = [
            t for t in (li.get_text(" ", strip=True) for li in card.select(".card__main-features li")) if t
        ]
        currency = _text(card.select_one(".card__currency"))
        price = _text(card.select_one(".card__price"))
        if currency and price and currency not in price:
            price = f"{currency} {price}"

        img = card.select_one("img")
        out.append(
            {
                "id": listing_id,
                "url": url,
                "title": _text(card.select_one(".card__title")) or _text(card.select_one(".card__title--primary")),
                "price": price,
                "location": _text(card.select_one(".card__address")),
                "neighborhood": _text(card.select_one(".card__title--primary")),
                "size": _feature(features, "m²", "m2", "cubie", "total"),
                "rooms": _feature(features, "amb", "monoamb"),
                "bedrooms": _feature(features, "dorm"),
                "bathrooms": _feature(features, "baño", "bano"),
                "propertyType": card.get("data-property-type"),
                "imageUrl": (img.get("data-src") or img.get("src")) if img is not None else None,
            }
        )

    has_next = soup.select_one("a[rel=next], .pagination__page-next a") is not None
    return out, has_next


@dataclass
class ArgenpropAdapter:
    """HTML listing pages; one page of cards per fetch."""

    base_url: str
    client: PoliteClient
    source_id: str = "argenprop"
    conventions: SourceConventions = field(
        default_factory=lambda: SourceConventions(
            default_currency="ARS", decimal_comma=True, rooms_mean_bedrooms_plus_one=True
        )
    )

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> "ArgenpropAdapter":
        s = s or settings
        return cls(base_url=s.ARGENPROP_BASE_URL, client=PoliteClient.from_settings("argenprop", s))

    async def fetch(self, query: Query, page_token: str | None = None) -> FetchPage:
        page = int(page_token or 1)
        url = build_search_url(self.base_url, query, page)
        html = await self.client.get_html(url)

        try:
            cards, has_next = parse_listing_cards(html, base_url=self.base_url)
        except Malformed as e:
            raise Malformed(f"{url}: {e}", source_id=self.source_id) from e

        records = [
            RawListing(source=self.source_id, source_ref=c.get("id"), payload=c)
            for c in cards
        ]
        return FetchPage(records=records, next_page_token=str(page + 1) if has_next and cards else None)

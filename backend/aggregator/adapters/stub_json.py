# aggregator/adapters/stub_json.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..config import Settings, settings
from ..domain.errors import Malformed
from ..domain.types import Query
from .base import FetchPage, RawListing, SourceConventions, location_slug


def _as_list_of_dicts(payload: Any) -> list[dict[str, Any]] | None:
    """
    Accept either:
      - list[dict]
      - {"value": list[dict]} (common RESO/OData shape)
    None when the document has neither shape.
    """
    if isinstance(payload, list):
        return [x for x in payload if isinstance(x, dict)]
    if isinstance(payload, dict):
        v = payload.get("value")
        if isinstance(v, list):
            return [x for x in v if isinstance(x, dict)]
    return None


@dataclass
class StubJsonAdapter:
    """
    Offline adapter for development/testing.

    Reads listing payloads from fixtures:
      <fixtures_dir>/<location-slug>.json

    and serves them in pages of `page_size`, the page token being the next offset.
    """

    fixtures_dir: Path
    source_id: str = "stub_json"
    page_size: int = 20
    conventions: SourceConventions = field(
        default_factory=lambda: SourceConventions(default_currency="USD", decimal_comma=True, rooms_mean_bedrooms_plus_one=True)
    )

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> "StubJsonAdapter":
        s = s or settings
        # uvicorn is typically launched from backend/, so this is backend/data/stub_listings
        return cls(fixtures_dir=Path(s.STUB_FIXTURES_DIR), page_size=s.STUB_PAGE_SIZE)

    def _load(self, query: Query) -> list[dict[str, Any]]:
        path = self.fixtures_dir / f"{location_slug(query.location)}.json"
        if not path.exists():
            # Dev-friendly: missing fixture means "no listings"
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise Malformed(f"fixture {path.name} is not JSON: {e}", source_id=self.source_id) from e
        items = _as_list_of_dicts(raw)
        if items is None:
            raise Malformed(f"fixture {path.name} has no listing array", source_id=self.source_id)
        return items

    async def fetch(self, query: Query, page_token: str | None = None) -> FetchPage:
        items = self._load(query)
        offset = int(page_token or 0)
        chunk = items[offset: offset + self.page_size]

        records = [
            _to_raw(it, source_id=self.source_id)
            for it in chunk
        ]
        nxt = offset + self.page_size
        return FetchPage(records=records, next_page_token=str(nxt) if nxt < len(items) else None)


def _to_raw(it: dict[str, Any], *, source_id: str) -> RawListing:
    listing_id = it.get("listingId") or it.get("id")
    return RawListing(source=source_id, source_ref=None if listing_id is None else str(listing_id), payload=dict(it))

# scripts/smoke_search.py
from __future__ import annotations

import argparse
import asyncio
import logging

from aggregator.config import settings
from aggregator.db import init_models
from aggregator.domain.types import PriceRange, PropertyType, Query
from aggregator.service_layer.search import build_engine


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run one aggregation and print the clusters.")
    p.add_argument("location")
    p.add_argument("--type", default="any", choices=[t.value for t in PropertyType])
    p.add_argument("--min-price", type=float, default=None)
    p.add_argument("--max-price", type=float, default=None)
    p.add_argument("--currency", default="USD")
    p.add_argument("--bedrooms", type=int, default=None)
    p.add_argument("--sources", default=None, help="comma-separated source ids (default: all enabled)")
    p.add_argument("--deadline", type=float, default=None)
    p.add_argument("--limit", type=int, default=15)
    return p.parse_args()


async def main() -> None:
    args = _parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if settings.CACHE_ENABLED:
        await init_models()

    price = None
    if args.min_price is not None or args.max_price is not None:
        price = PriceRange(min=args.min_price, max=args.max_price, currency=args.currency)
    query = Query(
        location=args.location,
        property_type=PropertyType(args.type),
        price_range=price,
        bedrooms=args.bedrooms,
        sources=None if not args.sources else frozenset(args.sources.split(",")),
    )

    engine = build_engine()
    result = await engine.aggregate(query, deadline_s=args.deadline)

    for sid, o in result.source_outcomes.items():
        print(f"[{o.status.value:>9}] {sid}: listings={o.listings_returned} attempts={o.attempts} pages={o.pages} error={o.error}")
    print(f"{len(result.clusters)} clusters in {result.elapsed_s}s (from_cache={result.from_cache})")

    for c in result.clusters[: args.limit]:
        r = c.representative
        print(
            r.price_currency, r.price_amount, "|", r.reference_price, "|", r.size_m2, "m2 |",
            r.bedrooms, "bd |", r.location_text, "|", ",".join(c.sources), f"conf={c.confidence:.2f}",
        )


if __name__ == "__main__":
    asyncio.run(main())

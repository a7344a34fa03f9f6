# aggregator/domain/matching.py
"""
Cross-source duplicate detection.

Listings are blocked on coarse location keys so only plausible pairs are scored,
pairs at or above the threshold are merged with union-find, and each resulting
component becomes one ListingCluster. Every decision depends only on the pair
being compared, so the final partition does not depend on input order.
"""
from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Sequence

from rapidfuzz import fuzz

from .parsing import fold_text, street_key
from .types import ListingCluster, NormalizedListing, SortOrder


@dataclass(frozen=True)
class MatchConfig:
    threshold: float = 0.75
    price_tolerance: float = 0.05
    size_tolerance: float = 0.10
    geo_radius_m: float = 150.0

    w_price: float = 0.30
    w_size: float = 0.20
    w_bedrooms: float = 0.15
    w_text: float = 0.25
    w_geo: float = 0.25

    # grid cell for coordinate blocking, ~1.1 km at the equator
    geo_cell_deg: float = 0.01


class UnionFind:
    """Disjoint-set with path compression and union by rank."""

    def __init__(self, size: int) -> None:
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, x: int) -> int:
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, a: int, b: int) -> bool:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return False
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1
        return True

    def groups(self) -> dict[int, list[int]]:
        out: dict[int, list[int]] = defaultdict(list)
        for i in range(len(self.parent)):
            out[self.find(i)].append(i)
        return out


# -------------------------
# Pairwise components
# -------------------------

def relative_diff(a: float, b: float) -> float:
    if a == b:
        return 0.0
    hi = max(abs(a), abs(b))
    return abs(a - b) / hi if hi else 0.0


def proximity(a: float | None, b: float | None, tolerance: float) -> float | None:
    """
    1.0 inside the tolerance, linear decay to 0.0 at twice the tolerance.
    None when either side is missing.
    """
    if a is None or b is None or a <= 0 or b <= 0:
        return None
    d = relative_diff(a, b)
    if d <= tolerance:
        return 1.0
    if tolerance <= 0:
        return 0.0
    return max(0.0, 1.0 - (d - tolerance) / tolerance)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6_371_000.0
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lon2 - lon1)
    h = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * r * math.asin(math.sqrt(h))


def comparable_price(x: NormalizedListing) -> tuple[Decimal, str]:
    if x.reference_price is not None:
        return x.reference_price, "__ref__"
    return x.price_amount, x.price_currency


def text_similarity(a: NormalizedListing, b: NormalizedListing) -> float | None:
    la, lb = fold_text(a.location_text), fold_text(b.location_text)
    if la and lb:
        return fuzz.token_set_ratio(la, lb) / 100.0
    ta, tb = fold_text(a.title), fold_text(b.title)
    if ta and tb:
        return fuzz.token_set_ratio(ta, tb) / 100.0
    return None


def pair_score(a: NormalizedListing, b: NormalizedListing, cfg: MatchConfig) -> float:
    """
    Weighted mean over the signals both listings carry. Fewer than two signals
    is not enough evidence and scores 0.
    """
    parts: list[tuple[float, float]] = []

    pa, ca = comparable_price(a)
    pb, cb = comparable_price(b)
    if ca == cb:
        s = proximity(float(pa), float(pb), cfg.price_tolerance)
        if s is not None:
            parts.append((cfg.w_price, s))

    s = proximity(a.size_m2, b.size_m2, cfg.size_tolerance)
    if s is not None:
        parts.append((cfg.w_size, s))

    if a.bedrooms is not None and b.bedrooms is not None:
        parts.append((cfg.w_bedrooms, 1.0 if a.bedrooms == b.bedrooms else 0.0))

    s = text_similarity(a, b)
    if s is not None:
        parts.append((cfg.w_text, s))

    if a.has_coordinates and b.has_coordinates:
        dist = haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)  # type: ignore[arg-type]
        r = cfg.geo_radius_m
        parts.append((cfg.w_geo, 1.0 if dist <= r else max(0.0, 1.0 - (dist - r) / r)))

    total_w = sum(w for w, _ in parts)
    if len(parts) < 2 or total_w <= 0:
        return 0.0
    return sum(w * s for w, s in parts) / total_w


# -------------------------
# Blocking
# -------------------------

def blocking_keys(x: NormalizedListing, cfg: MatchConfig) -> set[str]:
    keys: set[str] = set()
    if x.neighborhood:
        n = fold_text(x.neighborhood)
        if n:
            keys.add(f"n:{n}")
    s = street_key(x.location_text)
    if s:
        keys.add(f"s:{s}")
    if x.has_coordinates:
        cell = cfg.geo_cell_deg
        gy = math.floor(x.latitude / cell)  # type: ignore[operator]
        gx = math.floor(x.longitude / cell)  # type: ignore[operator]
        # neighbouring cells too, so points straddling a border still meet
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                keys.add(f"g:{gy + dy}:{gx + dx}")
    return keys


def candidate_pairs(items: Sequence[NormalizedListing], cfg: MatchConfig) -> set[tuple[int, int]]:
    buckets: dict[str, list[int]] = defaultdict(list)
    for i, x in enumerate(items):
        for k in blocking_keys(x, cfg):
            buckets[k].append(i)

    pairs: set[tuple[int, int]] = set()
    for idxs in buckets.values():
        for pos, i in enumerate(idxs):
            for j in idxs[pos + 1:]:
                pairs.add((i, j) if i < j else (j, i))
    return pairs


# -------------------------
# Clustering
# -------------------------

def _sort_key(x: NormalizedListing) -> tuple[str, str]:
    return x.key


def pick_representative(members: Iterable[NormalizedListing]) -> NormalizedListing:
    """Most complete, then most recently fetched, then lowest (source, id) for determinism."""
    return min(
        members,
        key=lambda m: (-m.completeness(), -m.fetched_at.timestamp(), m.source_id, m.source_listing_id),
    )


def cluster_listings(listings: Iterable[NormalizedListing], cfg: MatchConfig) -> list[ListingCluster]:
    # canonical order first so indices (and therefore ties) never depend on input order
    items = sorted({x.key: x for x in listings}.values(), key=_sort_key)
    if not items:
        return []

    uf = UnionFind(len(items))
    edges: list[tuple[int, int, float]] = []
    for i, j in sorted(candidate_pairs(items, cfg)):
        a, b = items[i], items[j]
        if a.source_id == b.source_id:
            continue  # one portal never lists the same property twice under two ids we can trust
        score = pair_score(a, b, cfg)
        if score >= cfg.threshold:
            uf.union(i, j)
            edges.append((i, j, score))

    edge_scores: dict[int, list[float]] = defaultdict(list)
    for i, j, score in edges:
        edge_scores[uf.find(i)].append(score)

    clusters: list[ListingCluster] = []
    for root, idxs in uf.groups().items():
        members = tuple(items[i] for i in idxs)
        scores = edge_scores.get(root)
        confidence = 1.0 if not scores else round(sum(scores) / len(scores), 4)
        clusters.append(
            ListingCluster(
                members=members,
                representative=pick_representative(members),
                confidence=min(1.0, max(0.0, confidence)),
            )
        )
    return clusters


def _price_key(c: ListingCluster, *, descending: bool = False) -> tuple[bool, str, Decimal]:
    """
    Reference prices compare across currencies; raw amounts only within their
    own currency, after every comparable cluster.
    """
    rep = c.representative
    if rep.reference_price is not None:
        amount, currency = rep.reference_price, ""
    else:
        amount, currency = rep.price_amount, rep.price_currency
    return rep.reference_price is None, currency, -amount if descending else amount


def rank_clusters(clusters: Iterable[ListingCluster], order: SortOrder = SortOrder.price_asc) -> list[ListingCluster]:
    """
    Default: ascending price, ties by descending completeness. The trailing
    representative key keeps the order total.
    """
    def tail(c: ListingCluster) -> tuple[str, str]:
        return c.representative.key

    items = list(clusters)
    if order == SortOrder.price_desc:
        return sorted(items, key=lambda c: (_price_key(c, descending=True), -c.representative.completeness(), tail(c)))
    if order == SortOrder.newest:
        return sorted(items, key=lambda c: (-max(m.fetched_at.timestamp() for m in c.members), _price_key(c), tail(c)))
    if order == SortOrder.size_desc:
        return sorted(
            items,
            key=lambda c: (c.representative.size_m2 is None, -(c.representative.size_m2 or 0.0), _price_key(c), tail(c)),
        )
    return sorted(items, key=lambda c: (_price_key(c), -c.representative.completeness(), tail(c)))


def deduplicate(
    listings: Iterable[NormalizedListing],
    cfg: MatchConfig,
    order: SortOrder = SortOrder.price_asc,
) -> list[ListingCluster]:
    return rank_clusters(cluster_listings(listings, cfg), order)

# aggregator/domain/parsing.py
from __future__ import annotations

import math
import re
import unicodedata
from decimal import Decimal, InvalidOperation
from typing import Any


def to_int(x: Any) -> int | None:
    if x is None or x == "" or isinstance(x, bool):
        return None
    try:
        return int(float(x))
    except Exception:
        return None


def to_float(x: Any) -> float | None:
    if x is None or x == "" or isinstance(x, bool):
        return None
    try:
        return float(x)
    except Exception:
        return None


def get_first(payload: dict[str, Any], *keys: str) -> Any:
    """Return first non-empty key from payload."""
    for k in keys:
        v = payload.get(k)
        if v is None:
            continue
        if isinstance(v, str) and not v.strip():
            continue
        return v
    return None


def get_nested(payload: dict[str, Any], path: str) -> Any:
    """Tiny dot-path getter: 'location.address' or 'price.amount'."""
    cur: Any = payload
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
        if cur is None:
            return None
    return cur


# -------------------------
# Text
# -------------------------

_ABBREVIATIONS = {
    "av": "avenida",
    "avda": "avenida",
    "bv": "boulevard",
    "bvd": "boulevard",
    "blvd": "boulevard",
    "gral": "general",
    "pje": "pasaje",
    "st": "street",
    "ave": "avenue",
}


def clean_text(value: Any) -> str:
    """Trim and collapse whitespace; keeps case for display."""
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()


def fold_text(value: Any) -> str:
    """
    Matching form of free text: accents stripped, lower case, punctuation
    dropped, common street abbreviations expanded.
    """
    s = unicodedata.normalize("NFKD", clean_text(value))
    s = "".join(ch for ch in s if not unicodedata.combining(ch)).lower()
    s = re.sub(r"[^a-z0-9]+", " ", s)
    return " ".join(_ABBREVIATIONS.get(tok, tok) for tok in s.split())


def street_key(location: Any) -> str:
    """First address segment with house numbers removed: 'Av. Colón 1234, Centro' -> 'avenida colon'."""
    first = clean_text(location).split(",")[0]
    folded = fold_text(first)
    return " ".join(tok for tok in folded.split() if not tok.isdigit())


# -------------------------
# Numbers in free text
# -------------------------

_NUMBER_RE = re.compile(r"\d[\d.,\s\u00a0]*\d|\d")


def parse_decimal(text: str, *, decimal_comma: bool) -> Decimal | None:
    """
    Parse the first number in `text`, resolving thousands vs decimal separators.

    When both separators appear the last one is the decimal mark. A lone
    separator followed by exactly three digits groups thousands ("250.000",
    "250,000") unless it is the source's decimal mark after a zero ("0,750").
    Any other lone separator is a decimal mark ("85,5", "1.25").
    """
    m = _NUMBER_RE.search(text or "")
    if not m:
        return None
    raw = re.sub(r"[\s\u00a0]", "", m.group(0))

    has_dot = "." in raw
    has_comma = "," in raw
    dec: str | None
    if has_dot and has_comma:
        dec = "," if raw.rfind(",") > raw.rfind(".") else "."
    elif has_dot or has_comma:
        sep = "." if has_dot else ","
        parts = raw.split(sep)
        source_decimal = "," if decimal_comma else "."
        if len(parts) > 2:
            dec = None
        elif len(parts[-1]) == 3:
            dec = sep if (sep == source_decimal and parts[0] == "0") else None
        else:
            dec = sep
    else:
        dec = None

    if dec is None:
        digits = re.sub(r"[.,]", "", raw)
    else:
        thousands = "." if dec == "," else ","
        digits = raw.replace(thousands, "").replace(dec, ".")
    try:
        return Decimal(digits)
    except InvalidOperation:
        return None


_CURRENCY_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(?:us\$|u\$s|u\$d|usd|dolares|dólares|dollars?)|us\s*\$", re.I), "USD"),
    (re.compile(r"€|\beur\b|\beuros?\b", re.I), "EUR"),
    (re.compile(r"r\$|\bbrl\b", re.I), "BRL"),
    (re.compile(r"£|\bgbp\b", re.I), "GBP"),
    (re.compile(r"\bars\b|\bpesos?\b", re.I), "ARS"),
    (re.compile(r"\buyu\b", re.I), "UYU"),
    (re.compile(r"\bclp\b", re.I), "CLP"),
]

_MULTIPLIERS: list[tuple[re.Pattern[str], Decimal]] = [
    (re.compile(r"\d\s*(?:mm|millones|millon|millón|m)\b", re.I), Decimal(1_000_000)),
    (re.compile(r"\d\s*(?:k|mil)\b", re.I), Decimal(1_000)),
]


def detect_currency(text: str) -> str | None:
    for pattern, code in _CURRENCY_PATTERNS:
        if pattern.search(text):
            return code
    return None


def parse_price(value: Any, *, default_currency: str, decimal_comma: bool = False) -> tuple[Decimal, str] | None:
    """
    Free-text or numeric price -> (amount, ISO currency). None when no amount can be read
    ("Consultar precio", empty, zero).

    A bare "$" means the source's local currency (`default_currency`).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        amount = Decimal(str(value))
        if not amount.is_finite() or amount <= 0:
            return None
        return amount, default_currency

    text = clean_text(value)
    if not text:
        return None

    amount = parse_decimal(text, decimal_comma=decimal_comma)
    if amount is None or amount <= 0:
        return None
    for pattern, factor in _MULTIPLIERS:
        if pattern.search(text):
            amount *= factor
            break

    currency = detect_currency(text) or default_currency
    return amount, currency


# size units -> square meters per unit
_AREA_UNITS: list[tuple[re.Pattern[str], float]] = [
    (re.compile(r"(?:sq\.?\s*ft|sqft|ft2|ft²|square\s+feet|pies)", re.I), 0.09290304),
    (re.compile(r"(?:sq\.?\s*m|m2|m²|mts2|mts²|mt2|mts|metros|square\s+met(?:er|re)s?|m\b)", re.I), 1.0),
    (re.compile(r"\b(?:ha|hect[aá]reas?)\b", re.I), 10_000.0),
    (re.compile(r"\bacres?\b", re.I), 4046.8564224),
]


def parse_size_m2(value: Any, *, decimal_comma: bool = False) -> float | None:
    """
    Size text -> square meters. Numbers are taken as m² already; text must name
    its unit, otherwise the size is treated as absent.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        v = float(value)
        return v if math.isfinite(v) and v > 0 else None

    text = clean_text(value)
    amount = parse_decimal(text, decimal_comma=decimal_comma)
    if amount is None or amount <= 0:
        return None
    for pattern, factor in _AREA_UNITS:
        if pattern.search(text):
            return round(float(amount) * factor, 2)
    return None


_STUDIO_RE = re.compile(r"monoambiente|studio|estudio", re.I)
_ROOMS_RE = re.compile(r"\bamb(?:ientes?)?\b\.?", re.I)


def parse_count(value: Any, *, rooms_mean_bedrooms_plus_one: bool = False) -> int | None:
    """
    "3 dormitorios" -> 3, "2 baños" -> 2, "monoambiente" -> 0.
    With rooms_mean_bedrooms_plus_one, "3 ambientes" -> 2 (living room counts as an ambiente).
    Unparseable values are absent, never zero.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        if not math.isfinite(value):
            return None
        n = int(value)
        return n if n >= 0 else None

    text = clean_text(value)
    if not text:
        return None
    if rooms_mean_bedrooms_plus_one and _STUDIO_RE.search(text):
        return 0
    m = re.search(r"\d+", text)
    if not m:
        return None
    n = int(m.group(0))
    if rooms_mean_bedrooms_plus_one and _ROOMS_RE.search(text):
        return max(0, n - 1)
    return n

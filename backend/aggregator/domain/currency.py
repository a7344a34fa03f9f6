from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping


@dataclass(frozen=True)
class FxTable:
    """
    Conversion into a single reference currency.

    rates maps ISO code -> units of `reference` per one unit of that currency.
    Rates are configuration; a missing rate means "not comparable", never 1:1.
    """

    reference: str = "USD"
    rates: Mapping[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_config(cls, reference: str, rates: Mapping[str, float] | None) -> "FxTable":
        ref = reference.strip().upper()
        table = {k.strip().upper(): Decimal(str(v)) for k, v in (rates or {}).items() if v and float(v) > 0}
        return cls(reference=ref, rates=table)

    def rate(self, currency: str) -> Decimal | None:
        cur = (currency or "").strip().upper()
        if cur == self.reference:
            return Decimal(1)
        return self.rates.get(cur)

    def to_reference(self, amount: Decimal | None, currency: str) -> Decimal | None:
        if amount is None:
            return None
        r = self.rate(currency)
        if r is None:
            return None
        return (amount * r).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

# aggregator/adapters/registry.py
from __future__ import annotations

import logging
from typing import Callable

from ..config import Settings, settings as default_settings
from .argenprop import ArgenpropAdapter
from .base import SourceAdapter
from .mercadolibre import MercadoLibreAdapter
from .stub_json import StubJsonAdapter

log = logging.getLogger(__name__)

BUILDERS: dict[str, Callable[[Settings], SourceAdapter]] = {
    "stub_json": StubJsonAdapter.from_settings,
    "argenprop": ArgenpropAdapter.from_settings,
    "mercadolibre": MercadoLibreAdapter.from_settings,
}


def enabled_source_ids(s: Settings | None = None) -> list[str]:
    s = s or default_settings
    ids = [x.strip() for x in (s.ENABLED_SOURCES or "").split(",")]
    out: list[str] = []
    for i in ids:
        if i and i not in out:
            out.append(i)
    return out


def build_adapters(s: Settings | None = None) -> list[SourceAdapter]:
    """
    Adapters named in ENABLED_SOURCES.

    - Unknown ids are skipped with a warning in dev/local/test, error otherwise
      (a typo in prod should not silently shrink coverage)
    """
    s = s or default_settings
    adapters: list[SourceAdapter] = []
    for source_id in enabled_source_ids(s):
        builder = BUILDERS.get(source_id)
        if builder is None:
            if s.ENV.lower() in ("dev", "local", "test"):
                log.warning("unknown source in ENABLED_SOURCES: %r (skipped)", source_id)
                continue
            raise ValueError(f"Unknown source {source_id!r}. Use one of: {', '.join(sorted(BUILDERS))}.")
        adapters.append(builder(s))
    return adapters

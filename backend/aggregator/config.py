from __future__ import annotations

from dataclasses import dataclass, field

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Runtime ---
    ENV: str = "dev"  # dev|prod
    LOG_LEVEL: str = "INFO"

    # Send: X-API-Key: <key>
    API_KEY: str | None = None

    # --- Sources ---
    # Comma-separated adapter ids, see adapters/registry.py
    ENABLED_SOURCES: str = "stub_json"
    STUB_FIXTURES_DIR: str = "data/stub_listings"
    STUB_PAGE_SIZE: int = 20

    ARGENPROP_BASE_URL: str = "https://www.argenprop.com"
    MERCADOLIBRE_BASE_URL: str = "https://api.mercadolibre.com"
    MERCADOLIBRE_SITE_ID: str = "MLA"
    MERCADOLIBRE_PAGE_SIZE: int = 50

    # --- Outbound HTTP (be polite) ---
    HTTP_USER_AGENT: str = "listing-aggregator/0.1 (+local dev)"
    HTTP_MIN_INTERVAL_S: float = 0.25
    HTTP_VERIFY_SSL: bool = True

    # --- Engine ---
    AGG_GLOBAL_CONCURRENCY: int = 6
    AGG_PER_SOURCE_CONCURRENCY: int = 2
    AGG_MAX_ATTEMPTS: int = 3
    AGG_BACKOFF_BASE_S: float = 0.5
    AGG_BACKOFF_CAP_S: float = 8.0
    AGG_ATTEMPT_TIMEOUT_S: float = 10.0
    AGG_QUERY_DEADLINE_S: float = 25.0
    AGG_PAGE_CAP: int = 3

    # --- Matching ---
    MATCH_THRESHOLD: float = 0.75
    MATCH_PRICE_TOLERANCE: float = 0.05
    MATCH_SIZE_TOLERANCE: float = 0.10
    MATCH_GEO_RADIUS_M: float = 150.0

    # --- Currency ---
    # FX_RATES='{"ARS": 0.00085, "EUR": 1.08}' -> units of REFERENCE_CURRENCY per unit
    REFERENCE_CURRENCY: str = "USD"
    FX_RATES: dict[str, float] = {}

    # --- Result cache (optional) ---
    CACHE_ENABLED: bool = False
    CACHE_TTL_MINUTES: int = 30
    AGG_DB_URL: str = "sqlite+aiosqlite:///./aggregator.db"

    # --- Cache warming job ---
    WARM_LOCATIONS: list[str] = []
    WARM_INTERVAL_MINUTES: int = 60


settings = Settings()


@dataclass(frozen=True)
class EngineConfig:
    """
    Knobs the aggregation engine reads. Decoupled from Settings so tests and
    embedding callers can build one directly.
    """

    global_concurrency: int = 6
    per_source_concurrency: int = 2
    max_attempts: int = 3
    backoff_base_s: float = 0.5
    backoff_cap_s: float = 8.0
    attempt_timeout_s: float = 10.0
    query_deadline_s: float = 25.0
    page_cap: int = 3

    match_threshold: float = 0.75
    price_tolerance: float = 0.05
    size_tolerance: float = 0.10
    geo_radius_m: float = 150.0

    reference_currency: str = "USD"
    fx_rates: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.global_concurrency < 1 or self.per_source_concurrency < 1:
            raise ValueError("concurrency limits must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.page_cap < 1:
            raise ValueError("page_cap must be >= 1")
        if not 0.0 <= self.match_threshold <= 1.0:
            raise ValueError("match_threshold must be within [0, 1]")

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> "EngineConfig":
        s = s or settings
        return cls(
            global_concurrency=s.AGG_GLOBAL_CONCURRENCY,
            per_source_concurrency=s.AGG_PER_SOURCE_CONCURRENCY,
            max_attempts=s.AGG_MAX_ATTEMPTS,
            backoff_base_s=s.AGG_BACKOFF_BASE_S,
            backoff_cap_s=s.AGG_BACKOFF_CAP_S,
            attempt_timeout_s=s.AGG_ATTEMPT_TIMEOUT_S,
            query_deadline_s=s.AGG_QUERY_DEADLINE_S,
            page_cap=s.AGG_PAGE_CAP,
            match_threshold=s.MATCH_THRESHOLD,
            price_tolerance=s.MATCH_PRICE_TOLERANCE,
            size_tolerance=s.MATCH_SIZE_TOLERANCE,
            geo_radius_m=s.MATCH_GEO_RADIUS_M,
            reference_currency=s.REFERENCE_CURRENCY,
            fx_rates=dict(s.FX_RATES),
        )

# aggregator/adapters/http.py
from __future__ import annotations

import asyncio
import re
import time
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any

import httpx

from ..config import Settings, settings
from ..domain.errors import Blocked, Malformed, RateLimited, Transient

_BLOCKED_STATUSES = {401, 403, 407, 451}
_TRANSIENT_STATUSES = {408, 425, 500, 502, 503, 504}

# Anti-bot / consent interstitials served with a 200
_WALL_MARKERS = re.compile(
    r"captcha|cf-chl|challenge-platform|attention required|are you a robot|unusual traffic|consent\.google",
    re.I,
)


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    v = value.strip()
    try:
        return max(0.0, float(v))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(v)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def looks_like_wall(html: str) -> bool:
    return bool(_WALL_MARKERS.search(html[:20000]))


def raise_for_source(resp: httpx.Response, *, source_id: str) -> None:
    """Translate an HTTP response into the fetch-error taxonomy (no-op on 2xx)."""
    code = resp.status_code
    if code < 400:
        return
    if code == 429:
        raise RateLimited(
            f"HTTP 429 from {resp.request.url.host}",
            retry_after=parse_retry_after(resp.headers.get("Retry-After")),
            source_id=source_id,
        )
    if code in _BLOCKED_STATUSES:
        raise Blocked(f"HTTP {code} from {resp.request.url.host}", source_id=source_id)
    if code in _TRANSIENT_STATUSES or code >= 500:
        raise Transient(f"HTTP {code} from {resp.request.url.host}", source_id=source_id)
    # any other 4xx: the request itself is rejected, repeating it will not help
    raise Blocked(f"HTTP {code} for {resp.request.url}", source_id=source_id)


class PoliteClient:
    """
    Thin httpx wrapper used by the HTTP adapters: a short-lived AsyncClient per
    request, a minimum gap between requests to the same source, and error
    mapping. Retries are the engine's job, not this class's.
    """

    def __init__(
        self,
        source_id: str,
        *,
        min_interval_s: float | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        headers: dict[str, str] | None = None,
        user_agent: str | None = None,
        verify: bool | None = None,
    ) -> None:
        self.source_id = source_id
        self.min_interval_s = settings.HTTP_MIN_INTERVAL_S if min_interval_s is None else min_interval_s
        self._timeout = httpx.Timeout(timeout_s or settings.AGG_ATTEMPT_TIMEOUT_S)
        self._transport = transport
        self._headers = {"User-Agent": user_agent or settings.HTTP_USER_AGENT, "Accept-Language": "es-AR,es;q=0.9,en;q=0.5"}
        self._headers.update(headers or {})
        self._last_ts = 0.0
        self._verify = settings.HTTP_VERIFY_SSL if verify is None else verify
        self._lock: asyncio.Lock | None = None

    @classmethod
    def from_settings(cls, source_id: str, s: Settings | None = None) -> "PoliteClient":
        s = s or settings
        return cls(
            source_id,
            min_interval_s=s.HTTP_MIN_INTERVAL_S,
            timeout_s=s.AGG_ATTEMPT_TIMEOUT_S,
            user_agent=s.HTTP_USER_AGENT,
            verify=s.HTTP_VERIFY_SSL,
        )

    async def _pace(self) -> None:
        if self.min_interval_s <= 0:
            return
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            wait = (self._last_ts + self.min_interval_s) - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_ts = time.monotonic()

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        await self._pace()
        merged = dict(self._headers)
        merged.update(headers or {})
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                verify=self._verify,
                follow_redirects=True,
            ) as client:
                resp = await client.request(method, url, params=params, headers=merged)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise Transient(f"{type(e).__name__}: {e}", source_id=self.source_id) from e

        raise_for_source(resp, source_id=self.source_id)
        return resp

    async def get_html(self, url: str, *, params: dict[str, Any] | None = None) -> str:
        resp = await self.request("GET", url, params=params, headers={"Accept": "text/html"})
        html = resp.text
        if looks_like_wall(html):
            raise Blocked(f"anti-bot wall at {resp.url}", source_id=self.source_id)
        return html

    async def get_json(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        resp = await self.request("GET", url, params=params, headers={"Accept": "application/json"})
        try:
            return resp.json()
        except ValueError as e:
            raise Malformed(f"invalid JSON from {resp.url}: {e}", source_id=self.source_id) from e

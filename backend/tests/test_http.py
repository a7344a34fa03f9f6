import httpx
import pytest

from aggregator.adapters.http import PoliteClient, parse_retry_after, raise_for_source
from aggregator.domain.errors import Blocked, Malformed, RateLimited, Transient


def _resp(status: int, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(status, headers=headers, request=httpx.Request("GET", "https://portal.test/search"))


def _client(handler) -> PoliteClient:
    return PoliteClient("portal", min_interval_s=0, transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "status, exc",
    [
        (429, RateLimited),
        (401, Blocked),
        (403, Blocked),
        (451, Blocked),
        (404, Blocked),
        (408, Transient),
        (500, Transient),
        (503, Transient),
    ],
)
def test_status_codes_map_onto_fetch_errors(status, exc):
    with pytest.raises(exc) as e:
        raise_for_source(_resp(status), source_id="portal")
    assert e.value.source_id == "portal"


def test_success_statuses_pass():
    raise_for_source(_resp(200), source_id="portal")
    raise_for_source(_resp(304), source_id="portal")


def test_retry_after_header_is_carried():
    with pytest.raises(RateLimited) as e:
        raise_for_source(_resp(429, {"Retry-After": "3"}), source_id="portal")
    assert e.value.retry_after == 3.0


def test_parse_retry_after_forms():
    assert parse_retry_after("12") == 12.0
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None


@pytest.mark.asyncio
async def test_captcha_page_is_blocked():
    def handler(request):
        return httpx.Response(200, text="<html><div class='g-recaptcha'>captcha</div></html>")

    with pytest.raises(Blocked):
        await _client(handler).get_html("https://portal.test/search")


@pytest.mark.asyncio
async def test_transport_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(Transient):
        await _client(handler).get_html("https://portal.test/search")


@pytest.mark.asyncio
async def test_bad_json_is_malformed():
    def handler(request):
        return httpx.Response(200, text="not json")

    with pytest.raises(Malformed):
        await _client(handler).get_json("https://portal.test/api")


@pytest.mark.asyncio
async def test_requests_carry_polite_headers_and_params():
    seen = {}

    def handler(request):
        seen["ua"] = request.headers.get("User-Agent")
        seen["q"] = request.url.params.get("q")
        return httpx.Response(200, json={"ok": True})

    data = await _client(handler).get_json("https://portal.test/api", params={"q": "mar del plata"})
    assert data == {"ok": True}
    assert seen["q"] == "mar del plata"
    assert seen["ua"]

import httpx
import pytest

from aggregator.config import settings
from aggregator.domain.errors import Blocked
from aggregator.engine.orchestrator import AggregationEngine
from aggregator.entrypoints.api.deps import engine_dep
from aggregator.entrypoints.fastapi_app import create_app

from fakes import ScriptedAdapter, Step, page, raw


@pytest.fixture
def app(fast_config):
    ok = ScriptedAdapter(
        "argenprop",
        [Step(page(
            raw("argenprop", "a1", price="USD 120.000", location="Av. Colón 1200, Mar del Plata", size="75 m2"),
            raw("argenprop", "a2", price="USD 300.000", location="Calle Brown 2750, Mar del Plata"),
        ))],
    )
    down = ScriptedAdapter("zonaprop", [Step(Blocked("403"))])
    engine = AggregationEngine([ok, down], fast_config)

    app = create_app()
    app.dependency_overrides[engine_dep] = lambda: engine
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_search_returns_clusters_and_outcomes(client):
    r = await client.post(
        "/search",
        json={"location": "Mar del Plata", "price_range": {"max": 250000, "currency": "USD"}},
    )
    assert r.status_code == 200
    body = r.json()

    assert len(body["clusters"]) == 1
    rep = body["clusters"][0]["representative"]
    assert rep["source_listing_id"] == "a1"
    assert rep["price_currency"] == "USD"
    assert body["source_outcomes"]["argenprop"]["status"] == "ok"
    assert body["source_outcomes"]["argenprop"]["filtered"] == 1
    assert body["source_outcomes"]["zonaprop"]["status"] == "failed"
    assert body["source_outcomes"]["zonaprop"]["error"] == "blocked"
    assert body["no_usable_sources"] is False
    assert body["query"]["location"] == "Mar del Plata"


@pytest.mark.asyncio
async def test_search_rejects_inverted_range(client):
    r = await client.post("/search", json={"location": "mdp", "price_range": {"min": 10, "max": 5}})
    assert r.status_code == 422
    assert "greater than max" in r.json()["detail"]


@pytest.mark.asyncio
async def test_search_rejects_unknown_property_type(client):
    r = await client.post("/search", json={"location": "mdp", "property_type": "castle"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_sources_and_health(client):
    r = await client.get("/sources")
    assert r.status_code == 200
    assert [s["source_id"] for s in r.json()] == ["argenprop", "zonaprop"]

    r = await client.get("/health")
    assert r.json() == {"status": "ok", "sources": 2, "cache_enabled": False}


@pytest.mark.asyncio
async def test_api_key_guard(client, monkeypatch):
    monkeypatch.setattr(settings, "API_KEY", "s3cret")

    r = await client.get("/sources")
    assert r.status_code == 401

    r = await client.get("/sources", headers={"X-API-Key": "s3cret"})
    assert r.status_code == 200

    # health stays open for liveness checks
    r = await client.get("/health")
    assert r.status_code == 200

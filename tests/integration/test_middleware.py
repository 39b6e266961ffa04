# integration tests for the response cache and invalidation wrappers
# a small app is built per test so handlers can count their own calls

import httpx
import pytest
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from service.cache import CacheManager
from service.middleware import CACHE_STATUS_HEADER, cache_response, invalidate_cache

def build_app(cache: CacheManager):
    app = FastAPI()
    app.state.cache = cache
    app.state.calls = 0

    def count(request: Request):
        request.app.state.calls += 1

    @app.get("/items")
    @cache_response(ttl=60)
    async def list_items(request: Request, q: str = ""):
        count(request)
        return {"q": q, "items": [1, 2, 3]}

    @app.get("/fresh")
    @cache_response(ttl=60, condition=lambda request: "nocache" not in request.query_params)
    async def fresh(request: Request, nocache: str = ""):
        count(request)
        return {"calls": request.app.state.calls}

    @app.get("/missing")
    @cache_response(ttl=60)
    async def missing(request: Request):
        count(request)
        raise HTTPException(status_code=404, detail="not here")

    @app.get("/created")
    @cache_response(ttl=60)
    async def created(request: Request):
        count(request)
        return JSONResponse(content={"calls": request.app.state.calls}, status_code=202)

    @app.get("/teapot")
    @cache_response(ttl=60)
    async def teapot(request: Request, response: Response):
        count(request)
        response.status_code = 418
        return {"calls": request.app.state.calls}

    @app.get("/declared", status_code=201)
    @cache_response(ttl=60)
    async def declared(request: Request):
        count(request)
        return {"calls": request.app.state.calls}

    @app.post("/items")
    @cache_response(ttl=60)
    async def post_items(request: Request):
        count(request)
        return {"calls": request.app.state.calls}

    @app.post("/company")
    @invalidate_cache("company")
    async def save_company(payload: dict):
        return {"saved": True}

    @app.post("/company/{company_id}/fail")
    @invalidate_cache("company")
    async def fail_company(company_id: str):
        raise HTTPException(status_code=400, detail="bad input")

    @app.put("/company/{company_id}")
    @invalidate_cache("company")
    async def rename_company(company_id: str):
        return {"renamed": company_id}

    @app.post("/customer")
    @invalidate_cache("customer")
    async def save_customer(payload: dict):
        return {"saved": True}

    return app

@pytest.fixture
def app(cache):
    return build_app(cache)

@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

async def test_second_get_is_a_hit(app, client):
    first = await client.get("/items", params={"q": "a"})
    second = await client.get("/items", params={"q": "a"})

    assert first.headers[CACHE_STATUS_HEADER] == "MISS"
    assert second.headers[CACHE_STATUS_HEADER] == "HIT"
    assert second.content == first.content
    assert app.state.calls == 1

async def test_query_order_does_not_matter(app, client):
    await client.get("/items?q=a&page=1")
    response = await client.get("/items?page=1&q=a")

    assert response.headers[CACHE_STATUS_HEADER] == "HIT"
    assert app.state.calls == 1

async def test_different_query_is_a_separate_entry(app, client):
    await client.get("/items", params={"q": "a"})
    response = await client.get("/items", params={"q": "b"})

    assert response.headers[CACHE_STATUS_HEADER] == "MISS"
    assert response.json()["q"] == "b"
    assert app.state.calls == 2

async def test_cached_entry_expires(app, client, clock):
    await client.get("/items")
    clock.advance(61)
    response = await client.get("/items")

    assert response.headers[CACHE_STATUS_HEADER] == "MISS"
    assert app.state.calls == 2

async def test_condition_skips_cache(app, client):
    await client.get("/fresh", params={"nocache": "1"})
    response = await client.get("/fresh", params={"nocache": "1"})

    assert CACHE_STATUS_HEADER not in response.headers
    assert response.json() == {"calls": 2}

async def test_error_responses_are_not_cached(app, client, store):
    first = await client.get("/missing")
    second = await client.get("/missing")

    assert first.status_code == second.status_code == 404
    assert app.state.calls == 2
    assert store.size() == 0

async def test_non_2xx_status_on_injected_response_is_not_cached(app, client, store):
    await client.get("/teapot")
    response = await client.get("/teapot")

    assert response.status_code == 418
    assert response.headers[CACHE_STATUS_HEADER] == "MISS"
    assert app.state.calls == 2
    assert store.size() == 0

async def test_returned_json_response_is_cached(app, client):
    first = await client.get("/created")
    second = await client.get("/created")

    assert first.status_code == 202
    assert first.headers[CACHE_STATUS_HEADER] == "MISS"
    assert second.headers[CACHE_STATUS_HEADER] == "HIT"
    assert second.status_code == 202
    assert second.json() == {"calls": 1}

async def test_declared_route_status_survives_a_hit(app, client):
    first = await client.get("/declared")
    second = await client.get("/declared")

    assert first.status_code == second.status_code == 201
    assert second.headers[CACHE_STATUS_HEADER] == "HIT"
    assert second.json() == {"calls": 1}
    assert app.state.calls == 1

async def test_unrecognised_cached_value_is_a_miss(app, client, store):
    await client.get("/items")
    key = store.keys()[0]
    await store.set_with_expiry(key, b'["not", "an", "entry"]', 60)

    response = await client.get("/items")

    assert response.headers[CACHE_STATUS_HEADER] == "MISS"
    assert app.state.calls == 2

async def test_non_get_requests_are_not_cached(app, client, store):
    await client.post("/items")
    response = await client.post("/items")

    assert response.json() == {"calls": 2}
    assert CACHE_STATUS_HEADER not in response.headers
    assert store.size() == 0

async def test_invalidate_company_from_body(client, cache):
    related = ["company:id:X", "company:customer:X", "expenses:company:X", "wages:company:X"]
    for key in related:
        await cache.set(key, {"k": key})
    await cache.set("company:id:Y", {"k": "Y"})

    response = await client.post("/company", json={"companyId": "X", "name": "Acme"})

    assert response.json() == {"saved": True}
    for key in related:
        assert await cache.get(key) is None, key
    assert await cache.get("company:id:Y") == {"k": "Y"}

async def test_invalidate_company_from_path(client, cache):
    await cache.set("company:id:X", 1)

    response = await client.put("/company/X")

    assert response.json() == {"renamed": "X"}
    assert await cache.get("company:id:X") is None

async def test_invalidate_customer_by_email_is_normalized(client, cache):
    await cache.set("customer:email:jane@example.com", {"id": "c1"})

    await client.post("/customer", json={"email": " Jane@Example.COM "})

    assert await cache.get("customer:email:jane@example.com") is None

async def test_invalidate_without_id_is_skipped(client, cache):
    await cache.set("company:id:X", 1)

    response = await client.post("/company", json={"name": "no id here"})

    assert response.status_code == 200
    assert await cache.get("company:id:X") == 1

async def test_failed_mutation_does_not_invalidate(client, cache):
    await cache.set("company:id:X", 1)

    response = await client.post("/company/X/fail")

    assert response.status_code == 400
    assert await cache.get("company:id:X") == 1

async def test_wrappers_fail_soft_when_store_is_down(failing_cache):
    app = build_app(failing_cache)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        first = await ac.get("/items")
        second = await ac.get("/items")
        saved = await ac.post("/company", json={"companyId": "X"})

    assert first.status_code == second.status_code == 200
    assert second.headers[CACHE_STATUS_HEADER] == "MISS"
    assert app.state.calls == 2
    assert saved.json() == {"saved": True}

# shared fixtures: in-memory cache store with a controllable clock,
# a store that fails every call (simulated redis outage) and a fake
# airtable served through httpx.MockTransport

import json

import httpx
import pytest

from service.cache import CacheManager
from service.cache_store import CacheStore, CacheStoreError, InMemoryCacheStore

class FakeClock:
    """monotonic clock that only moves when told to"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

class FailingStore(CacheStore):
    """every operation fails like an unreachable redis"""

    name = "failing"

    def __init__(self):
        self.calls = 0

    async def get(self, key):
        self.calls += 1
        raise CacheStoreError("connection refused")

    async def set_with_expiry(self, key, value, ttl_seconds):
        self.calls += 1
        raise CacheStoreError("connection refused")

    async def delete(self, *keys):
        self.calls += 1
        raise CacheStoreError("connection refused")

    async def delete_by_pattern(self, pattern):
        self.calls += 1
        raise CacheStoreError("connection refused")

    async def ping(self):
        return False

class FakeAirtable:
    """routes requests by table name and records them"""

    def __init__(self):
        self.requests = []
        self.customers = [{"id": "recCust1", "fields": {"email": "jane@example.com", "name": "Jane"}}]
        self.companies = [{"id": "recComp1", "fields": {"company_name": "Acme", "customer_id": "recCust1"}}]
        self.wages = [{"id": "recW1", "fields": {"amount": 1000}}]
        self.expenses = [{"id": "recE1", "fields": {"amount": 50}}]
        self.documents = [{"id": "recD1", "fields": {"customer_id": "recCust1", "status": "received"}}]
        self.fail = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            return httpx.Response(500, json={"error": "boom"})

        path = request.url.path.split("/")
        table = path[3]
        record_id = path[4] if len(path) > 4 else None

        if request.method == "GET" and table == "Customers" and record_id:
            match = [c for c in self.customers if c["id"] == record_id]
            return httpx.Response(200, json=match[0]) if match else httpx.Response(404, json={})
        if request.method == "GET":
            records = {
                "Customers": self.customers,
                "Companies": self.companies,
                "Wages": self.wages,
                "Expenses": self.expenses,
                "Documents": self.documents,
            }.get(table)
            if records is not None:
                return httpx.Response(200, json={"records": records})
        if request.method == "PATCH" and table == "Companies":
            # airtable merges the patch and answers with the whole record
            fields = json.loads(request.content)["fields"]
            for company in self.companies:
                if company["id"] == record_id:
                    company["fields"] = {**company["fields"], **fields}
                    return httpx.Response(200, json=company)
            return httpx.Response(200, json={"id": record_id, "fields": fields})
        if request.method == "POST":
            records = json.loads(request.content)["records"]
            created = [{"id": f"recNew{i}", "fields": r["fields"]} for i, r in enumerate(records)]
            return httpx.Response(200, json={"records": created})
        return httpx.Response(404, json={})

    def count(self, method: str, table: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path.split("/")[3] == table)

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def store(clock):
    return InMemoryCacheStore(clock=clock)

@pytest.fixture
def cache(store):
    return CacheManager(store)

@pytest.fixture
def failing_store():
    return FailingStore()

@pytest.fixture
def failing_cache(failing_store):
    return CacheManager(failing_store)

@pytest.fixture
def fake_airtable():
    return FakeAirtable()

@pytest.fixture
async def http_client(fake_airtable):
    # late-bound so a test can swap fake_airtable.handler
    transport = httpx.MockTransport(lambda request: fake_airtable.handler(request))
    async with httpx.AsyncClient(transport=transport) as client:
        yield client

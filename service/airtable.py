# airtable data access - customers, companies, wages and expenses
# every lookup goes through the cache manager so repeated requests for the
# same record don't hit airtable again

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from service import cache_keys
from service.cache import CacheManager
from service.cache_keys import CacheTTL, EntityKind

logger = logging.getLogger(__name__)

# airtable rejects create/update batches bigger than this
MAX_RECORDS_PER_REQUEST = 10

class AirtableError(Exception):
    """upstream request failed or airtable isn't configured"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

def _quote(value: str) -> str:
    # string literal inside a filterByFormula expression
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"

class AirtableService:
    """
    cached access to the airtable base

    args:
        cache: process-wide cache manager
        http_client: shared httpx client (created once at startup)
        api_key / base_id: airtable credentials; missing credentials only
                           fail the calls that actually reach airtable
        api_url: airtable rest root
    """

    def __init__(
        self,
        cache: CacheManager,
        http_client: httpx.AsyncClient,
        api_key: Optional[str],
        base_id: Optional[str],
        api_url: str = "https://api.airtable.com/v0"
    ):
        self.cache = cache
        self.http = http_client
        self.api_key = api_key
        self.base_id = base_id
        self.api_url = api_url.rstrip("/")

        # by-id lookups are plain memoized fetches
        self.get_customer_by_id = cache.memoize_async(
            self._fetch_customer_by_id,
            key_fn=cache_keys.customer_by_id,
            ttl=CacheTTL.HOUR
        )

    # --- raw http ---

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self.api_key or not self.base_id:
            raise AirtableError("airtable credentials not configured")

        url = f"{self.api_url}/{self.base_id}/{path}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            response = await self.http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise AirtableError(f"airtable {method} {path} failed: {e}") from e
        return response

    async def _list_records(self, table: str, formula: str) -> List[Dict[str, Any]]:
        """all records of a table matching a formula (follows pagination)"""
        records: List[Dict[str, Any]] = []
        params = {"filterByFormula": formula}
        while True:
            response = await self._request("GET", table, params=params)
            if response.status_code != 200:
                raise AirtableError(f"failed to fetch {table}", response.status_code)
            data = response.json()
            records.extend(data.get("records", []))
            offset = data.get("offset")
            if not offset:
                return records
            params = {"filterByFormula": formula, "offset": offset}

    async def _find_first(self, table: str, formula: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", table, params={"filterByFormula": formula, "maxRecords": 1})
        if response.status_code != 200:
            raise AirtableError(f"failed to fetch {table}", response.status_code)
        records = response.json().get("records", [])
        return records[0] if records else None

    # --- customers ---

    async def get_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """
        look up a customer by email (case-insensitive)
        a found record is also cached under its id so by-id lookups are warm
        """
        async def fetch():
            customer = await self._find_first(
                "Customers", f"LOWER({{email}})=LOWER({_quote(email.strip())})"
            )
            if customer:
                await self.cache.set(cache_keys.customer_by_id(customer["id"]), customer, CacheTTL.HOUR)
            return customer

        return await self.cache.get_or_fetch(cache_keys.customer_by_email(email), fetch, CacheTTL.HOUR)

    async def _fetch_customer_by_id(self, customer_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", f"Customers/{customer_id}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise AirtableError("failed to fetch customer", response.status_code)
        return response.json()

    async def get_document_status(self, customer_id: str) -> List[Dict[str, Any]]:
        """generated documents for a customer (status lives on each record)"""
        async def fetch():
            return await self._list_records("Documents", f"{{customer_id}}={_quote(customer_id)}")

        return await self.cache.get_or_fetch(cache_keys.document_status(customer_id), fetch, CacheTTL.HOUR)

    # --- companies ---

    async def get_company_by_customer_id(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """company record owned by a customer, None if they have none yet"""
        async def fetch():
            company = await self._find_first("Companies", f"{{customer_id}}={_quote(customer_id)}")
            if company:
                await self.cache.set(cache_keys.company_by_id(company["id"]), company, CacheTTL.LONG)
            return company

        return await self.cache.get_or_fetch(cache_keys.company_by_customer(customer_id), fetch, CacheTTL.LONG)

    async def update_company(self, company_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """patch a company, then drop everything cached for it"""
        response = await self._request("PATCH", f"Companies/{company_id}", json={"fields": fields})
        if response.status_code != 200:
            raise AirtableError(f"failed to update company: {response.text}", response.status_code)

        record = response.json()
        await self.cache.invalidate_related(EntityKind.COMPANY, company_id)
        # company:customer:<cid> is keyed by the owner, not the company id
        customer_id = record.get("fields", {}).get("customer_id")
        if customer_id:
            await self.cache.delete(cache_keys.company_by_customer(customer_id))
        return record

    async def create_company(self, customer_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """create a company for a customer; clears the customer's cached lookups"""
        created = await self.create_records("Companies", [{**fields, "customer_id": customer_id}])
        await self.cache.invalidate_related(EntityKind.CUSTOMER, customer_id)
        return created[0]

    # --- wages & expenses ---

    async def get_expenses_by_company(self, company_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """
        wages and expenses for a company
        each half is cached separately, only the missing half is fetched
        """
        wages_key = cache_keys.wages_by_company(company_id)
        expenses_key = cache_keys.expenses_by_company(company_id)

        cached_wages, cached_expenses = await asyncio.gather(
            self.cache.get(wages_key),
            self.cache.get(expenses_key)
        )
        if cached_wages is not None and cached_expenses is not None:
            return {"wages": cached_wages, "expenses": cached_expenses}

        formula = f"{{company_id}}={_quote(company_id)}"

        async def load(table: str, key: str, cached):
            if cached is not None:
                return cached
            records = await self._list_records(table, formula)
            await self.cache.set(key, records, CacheTTL.MEDIUM)
            return records

        wages, expenses = await asyncio.gather(
            load("Wages", wages_key, cached_wages),
            load("Expenses", expenses_key, cached_expenses)
        )
        return {"wages": wages, "expenses": expenses}

    async def create_records(self, table: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        create records in a table (batched to airtable's limit)

        args:
            table: airtable table name
            records: field dicts

        returns:
            created records as airtable returns them
        """
        created: List[Dict[str, Any]] = []
        for start in range(0, len(records), MAX_RECORDS_PER_REQUEST):
            chunk = records[start:start + MAX_RECORDS_PER_REQUEST]
            response = await self._request(
                "POST", table, json={"records": [{"fields": fields} for fields in chunk]}
            )
            if response.status_code != 200:
                raise AirtableError(f"failed to create {table} records: {response.text}", response.status_code)
            created.extend(response.json().get("records", []))
        logger.info("created %d %s records", len(created), table)
        return created

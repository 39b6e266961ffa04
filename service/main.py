# fastapi application - lead/intake api for the r&d tax credit service
# airtable holds the records, redis (via the cache manager) sits in front of it

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union
import logging

import httpx
import uvicorn

from service import cache_keys
from service.airtable import AirtableError, AirtableService
from service.cache import CacheManager
from service.cache_keys import CacheTTL
from service.cache_store import CacheStore, create_cache_store
from service.calculator import CalculationCache, CalculatorInput
from service.config import Settings, settings as default_settings
from service.log_config import configure_logging
from service.middleware import cache_response, get_cache_manager, invalidate_cache
from worker.cache_warmer import CacheWarmer

logger = logging.getLogger(__name__)

# pydantic models for request/response validation
class EmailRequest(BaseModel):
    """request body carrying just the customer's email"""
    email: str = Field(..., min_length=3, description="customer email")

class CompanySubmitRequest(BaseModel):
    """company info form submission"""
    email: str = Field(..., min_length=3)
    company_info: Dict[str, Any] = Field(..., alias="companyInfo")

class CompanyUpdateRequest(BaseModel):
    """fields to change on an existing company"""
    company_info: Dict[str, Any] = Field(..., alias="companyInfo")

class SaveExpensesRequest(BaseModel):
    """wage and expense rows for one company"""
    company_id: str = Field(..., alias="companyId")
    wages: List[Dict[str, Any]] = Field(default_factory=list)
    expenses: List[Dict[str, Any]] = Field(default_factory=list)

class HealthResponse(BaseModel):
    """response from /health endpoint"""
    status: str
    cache_connected: bool
    cache_backend: str
    cache_stats: Dict[str, Union[int, float]]
    airtable_configured: bool

# form field → airtable column
COMPANY_FIELDS = {
    "companyName": "company_name",
    "ein": "ein",
    "entityType": "entity_type",
    "annualRevenue": "revenue",
    "employeeCount": "employee_count",
    "yearFounded": "year_founded",
    "primaryState": "primary_state",
    "rdStates": "rd_states",
    "hasMultipleStates": "has_multiple_states",
    "rdEmployeeCount": "rd_employee_count",
}

def _company_fields(form: Dict[str, Any]) -> Dict[str, Any]:
    fields = {column: form[name] for name, column in COMPANY_FIELDS.items() if name in form}
    if isinstance(fields.get("rd_states"), list):
        fields["rd_states"] = ",".join(fields["rd_states"])
    return fields

def _company_info(company: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not company:
        return None
    fields = company.get("fields", {})
    info = {name: fields.get(column) for name, column in COMPANY_FIELDS.items()}
    info["rdStates"] = fields["rd_states"].split(",") if fields.get("rd_states") else []
    info["hasMultipleStates"] = bool(fields.get("has_multiple_states"))
    return info

def get_airtable(request: Request) -> AirtableService:
    return request.app.state.airtable

def get_calc_cache(request: Request) -> CalculationCache:
    return request.app.state.calc_cache

async def _require_customer(airtable: AirtableService, email: str) -> Dict[str, Any]:
    """customer record for an email, 403 if there isn't one"""
    try:
        customer = await airtable.get_customer_by_email(email)
    except AirtableError as e:
        raise HTTPException(status_code=502, detail=f"customer lookup failed: {e}")
    if not customer:
        raise HTTPException(status_code=403, detail="access denied")
    return customer

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CacheStore] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> FastAPI:
    """
    build the api with its process-wide resources

    args:
        settings: config (default: loaded from environment)
        store: cache backend (default: chosen from settings, None = no cache)
        http_client: client for airtable calls (default: new httpx client)
    """
    settings = settings or default_settings
    configure_logging(settings.log_level)

    if store is None:
        store = create_cache_store(settings)
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.airtable_timeout)

    cache = CacheManager(store, single_flight=settings.cache_single_flight)
    calc_cache = CalculationCache(cache)

    app = FastAPI(
        title="R&D Tax Credit API",
        description="Calculator and intake api with a redis cache in front of airtable",
        version="1.0.0"
    )
    app.state.settings = settings
    app.state.cache = cache
    app.state.http_client = http_client
    app.state.calc_cache = calc_cache
    app.state.airtable = AirtableService(
        cache,
        http_client,
        api_key=settings.airtable_api_key,
        base_id=settings.airtable_base_id,
        api_url=settings.airtable_api_url
    )
    app.state.warmer = CacheWarmer(calc_cache, cache, interval_seconds=settings.cache_warm_interval)

    @app.on_event("startup")
    async def startup():
        """check the cache and start the warmer"""
        logger.info("🚀 starting r&d tax credit api...")

        if await cache.ping():
            logger.info("✅ cache connected (%s)", cache.backend_name)
        else:
            logger.warning("⚠️  cache unavailable (%s) - serving without cache", cache.backend_name)

        if settings.cache_warm_interval > 0:
            app.state.warmer.start()

    @app.on_event("shutdown")
    async def shutdown():
        """cleanup on app shutdown"""
        logger.info("👋 shutting down...")
        await app.state.warmer.stop()
        await http_client.aclose()
        await cache.close()

    @app.get("/", tags=["root"])
    async def root():
        """api root - basic info"""
        return {
            "service": "R&D Tax Credit API",
            "version": "1.0.0",
            "endpoints": {
                "estimate": "/calculator/estimate - credit estimate",
                "health": "/health - health check",
                "docs": "/docs - api documentation"
            }
        }

    @app.get("/health", response_model=HealthResponse, tags=["monitoring"])
    async def health_check(cache: CacheManager = Depends(get_cache_manager)):
        """
        health check endpoint
        an unreachable cache only degrades the service, it never fails it
        """
        cache_connected = await cache.ping()
        return HealthResponse(
            status="healthy" if cache_connected else "degraded",
            cache_connected=cache_connected,
            cache_backend=cache.backend_name,
            cache_stats=cache.stats.as_dict(),
            airtable_configured=bool(settings.airtable_api_key and settings.airtable_base_id)
        )

    @app.post("/calculator/estimate", tags=["calculator"])
    async def estimate(data: CalculatorInput, calc_cache: CalculationCache = Depends(get_calc_cache)):
        """
        r&d credit estimate and pricing tier
        identical inputs are served from the calculation cache
        """
        result = await calc_cache.get_or_calculate(data)
        return {**result, "savingsAmount": result["federalCredit"] - result["price"]}

    @app.post("/api/auth/verify", tags=["auth"])
    async def verify(body: EmailRequest, airtable: AirtableService = Depends(get_airtable)):
        """email gate - is this a paying customer?"""
        customer = await _require_customer(airtable, body.email)
        try:
            company = await airtable.get_company_by_customer_id(customer["id"])
        except AirtableError as e:
            raise HTTPException(status_code=502, detail=f"company lookup failed: {e}")
        return {"success": True, "customerId": customer["id"], "hasCompany": company is not None}

    @app.get("/api/company/info", tags=["company"])
    @cache_response(ttl=CacheTTL.SHORT)
    async def company_info(email: str, airtable: AirtableService = Depends(get_airtable)):
        """saved company info for the customer's intake form"""
        customer = await _require_customer(airtable, email)
        try:
            company = await airtable.get_company_by_customer_id(customer["id"])
        except AirtableError as e:
            raise HTTPException(status_code=502, detail=f"company lookup failed: {e}")
        return {"companyInfo": _company_info(company)}

    @app.post("/api/company/submit", tags=["company"])
    async def submit_company(
        body: CompanySubmitRequest,
        airtable: AirtableService = Depends(get_airtable),
        cache: CacheManager = Depends(get_cache_manager)
    ):
        """create or update the customer's company record"""
        customer = await _require_customer(airtable, body.email)
        fields = _company_fields(body.company_info)
        try:
            company = await airtable.get_company_by_customer_id(customer["id"])
            if company:
                record = await airtable.update_company(company["id"], fields)
                await cache.delete(cache_keys.company_by_customer(customer["id"]))
            else:
                record = await airtable.create_company(customer["id"], fields)
        except AirtableError as e:
            raise HTTPException(status_code=502, detail=f"failed to save company: {e}")

        # cached copies of the info endpoint are keyed by query hash
        await cache.delete_pattern(cache_keys.api_response("/api/company/info", "*"))
        return {"success": True, "companyId": record["id"]}

    @app.patch("/api/companies/{company_id}", tags=["company"])
    @invalidate_cache("company")
    async def update_company(
        company_id: str,
        body: CompanyUpdateRequest,
        airtable: AirtableService = Depends(get_airtable),
        cache: CacheManager = Depends(get_cache_manager)
    ):
        """partial update of a company record by id"""
        fields = _company_fields(body.company_info)
        if not fields:
            raise HTTPException(status_code=400, detail="no known company fields given")
        try:
            record = await airtable.update_company(company_id, fields)
        except AirtableError as e:
            raise HTTPException(status_code=502, detail=f"failed to update company: {e}")

        await cache.delete_pattern(cache_keys.api_response("/api/company/info", "*"))
        return {"success": True, "companyId": record["id"]}

    @app.get("/api/expenses", tags=["expenses"])
    @cache_response(ttl=CacheTTL.SHORT)
    async def load_expenses(email: str, airtable: AirtableService = Depends(get_airtable)):
        """wages and expenses already entered for the customer's company"""
        customer = await _require_customer(airtable, email)
        try:
            company = await airtable.get_company_by_customer_id(customer["id"])
            if not company:
                return {"companyId": None, "wages": [], "expenses": []}
            data = await airtable.get_expenses_by_company(company["id"])
        except AirtableError as e:
            raise HTTPException(status_code=502, detail=f"failed to load expenses: {e}")
        return {"companyId": company["id"], **data}

    @app.post("/api/expenses/save", tags=["expenses"])
    @invalidate_cache("expenses")
    async def save_expenses(
        body: SaveExpensesRequest,
        airtable: AirtableService = Depends(get_airtable),
        cache: CacheManager = Depends(get_cache_manager)
    ):
        """store wage and expense rows (cached wages/expenses for the company are cleared)"""
        try:
            wages = await airtable.create_records(
                "Wages", [{**row, "company_id": body.company_id} for row in body.wages]
            )
            expenses = await airtable.create_records(
                "Expenses", [{**row, "company_id": body.company_id} for row in body.expenses]
            )
        except AirtableError as e:
            raise HTTPException(status_code=502, detail=f"failed to save expenses: {e}")

        await cache.delete_pattern(cache_keys.api_response("/api/expenses", "*"))
        return {"success": True, "wagesCreated": len(wages), "expensesCreated": len(expenses)}

    @app.get("/api/documents/status", tags=["documents"])
    async def document_status(email: str, airtable: AirtableService = Depends(get_airtable)):
        """generated documents and their status for a customer"""
        customer = await _require_customer(airtable, email)
        try:
            documents = await airtable.get_document_status(customer["id"])
        except AirtableError as e:
            raise HTTPException(status_code=502, detail=f"failed to load documents: {e}")
        return {
            "documents": [
                {"id": doc["id"], **doc.get("fields", {})} for doc in documents
            ]
        }

    return app

app = create_app()

if __name__ == "__main__":
    # run with: python -m service.main
    uvicorn.run(
        "service.main:app",
        host=default_settings.api_host,
        port=default_settings.api_port,
        reload=True  # auto-reload on code changes
    )

# endpoint wrappers for response caching and cache invalidation
#
#   @app.get("/api/company/info")
#   @cache_response(ttl=CacheTTL.SHORT)
#   async def company_info(email: str): ...
#
#   @app.post("/api/expenses/save")
#   @invalidate_cache("expenses")
#   async def save_expenses(body: SaveExpensesRequest): ...
#
# both pull the process-wide CacheManager from request.app.state.cache. if the
# endpoint doesn't take Request/Response itself, hidden parameters are added
# to the signature fastapi inspects so the wrapper still receives them.

import functools
import inspect
import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from service import cache_keys
from service.cache import CacheManager
from service.cache_keys import CacheTTL

logger = logging.getLogger(__name__)

CACHE_STATUS_HEADER = "X-Cache"

_REQUEST_PARAM = "__cache_request"
_RESPONSE_PARAM = "__cache_response"

def get_cache_manager(request: Request) -> CacheManager:
    """fastapi dependency: the cache manager opened at startup"""
    return request.app.state.cache

def _find_param(signature: inspect.Signature, annotation) -> Optional[str]:
    for param in signature.parameters.values():
        if param.annotation is annotation:
            return param.name
    return None

def _inject_params(func: Callable) -> Tuple[Callable[[Dict], Request], Callable[[Dict], Response], inspect.Signature]:
    """
    make sure the endpoint receives a Request and a Response

    returns:
        (pop_request, pop_response, new_signature) - the pop helpers take the
        call kwargs, return the object and remove hidden params so the wrapped
        function never sees them
    """
    signature = inspect.signature(func)
    params = list(signature.parameters.values())

    request_name = _find_param(signature, Request)
    response_name = _find_param(signature, Response)

    extra = []
    if request_name is None:
        request_name = _REQUEST_PARAM
        extra.append(inspect.Parameter(_REQUEST_PARAM, inspect.Parameter.KEYWORD_ONLY, annotation=Request))
    if response_name is None:
        response_name = _RESPONSE_PARAM
        extra.append(inspect.Parameter(_RESPONSE_PARAM, inspect.Parameter.KEYWORD_ONLY, annotation=Response))

    if extra:
        # keyword-only params must come before any **kwargs
        var_kw = [p for p in params if p.kind is inspect.Parameter.VAR_KEYWORD]
        params = [p for p in params if p.kind is not inspect.Parameter.VAR_KEYWORD] + extra + var_kw
        signature = signature.replace(parameters=params)

    def take(name: str, hidden: bool):
        def getter(kwargs: Dict):
            return kwargs.pop(name) if hidden else kwargs[name]
        return getter

    return (
        take(request_name, request_name == _REQUEST_PARAM),
        take(response_name, response_name == _RESPONSE_PARAM),
        signature,
    )

def _is_success(status_code: Optional[int]) -> bool:
    # None means the route's default status (2xx unless an exception was raised)
    return status_code is None or 200 <= status_code < 300

def _route_status(request: Request) -> int:
    # status declared on the route, e.g. @app.post(..., status_code=201)
    route = request.scope.get("route")
    return getattr(route, "status_code", None) or 200

async def _read_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")

async def request_hash(request: Request, cache: CacheManager) -> str:
    """hash of the query parameters and body of a request"""
    query = sorted(request.query_params.multi_items())
    body = await _read_body(request)
    return cache.generate_hash({"query": query, "body": body})

async def default_key_builder(request: Request, cache: CacheManager) -> str:
    return cache_keys.api_response(request.url.path, await request_hash(request, cache))

def cache_response(
    ttl: int = CacheTTL.SHORT,
    key_builder: Optional[Callable[[Request, CacheManager], Any]] = None,
    condition: Optional[Callable[[Request], bool]] = None
):
    """
    cache successful GET responses

    args:
        ttl: seconds to keep a cached response
        key_builder: async (request, cache) -> key (default: path + query/body hash)
        condition: extra predicate, the request is only cached when it passes

    hit  → cached json returned with its original status and X-Cache: HIT,
           handler not called
    miss → handler runs, 2xx json results are stored with their status,
           X-Cache: MISS
    """
    build_key = key_builder or default_key_builder

    def decorator(func):
        pop_request, pop_response, signature = _inject_params(func)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            request = pop_request(kwargs)
            response = pop_response(kwargs)

            if request.method != "GET" or (condition is not None and not condition(request)):
                return await func(*args, **kwargs)

            cache = get_cache_manager(request)
            key = await build_key(request, cache)

            cached = await cache.get(key)
            if isinstance(cached, dict) and "body" in cached:
                return JSONResponse(
                    content=cached["body"],
                    status_code=cached["status"],
                    headers={CACHE_STATUS_HEADER: "HIT"}
                )

            result = await func(*args, **kwargs)

            if isinstance(result, Response):
                result.headers[CACHE_STATUS_HEADER] = "MISS"
                if _is_success(result.status_code) and isinstance(result, JSONResponse):
                    entry = {"status": result.status_code, "body": json.loads(result.body)}
                    await cache.set(key, entry, ttl)
                return result

            response.headers[CACHE_STATUS_HEADER] = "MISS"
            if _is_success(response.status_code):
                status = response.status_code or _route_status(request)
                await cache.set(key, {"status": status, "body": jsonable_encoder(result)}, ttl)
            return result

        wrapper.__signature__ = signature
        return wrapper

    return decorator

async def extract_entity_id(request: Request, entity) -> Optional[str]:
    """
    identifying value of the record a mutation touched

    checks the json body, then path params, for the fields registered for
    the entity; emails are lower-cased to match how keys are built
    """
    kind = cache_keys.parse_entity(entity)
    if kind is None:
        return None

    body = await _read_body(request)
    sources = [body if isinstance(body, dict) else {}, request.path_params]

    for field in cache_keys.INVALIDATION_ID_FIELDS[kind]:
        for source in sources:
            value = source.get(field)
            if value:
                value = str(value)
                return cache_keys.normalize_email(value) if field == "email" else value
    return None

def invalidate_cache(entity):
    """
    clear cache entries related to an entity after a successful mutation

    args:
        entity: "customer", "company" or "expenses"

    a request with no identifiable record skips invalidation; the mutation
    result is returned untouched either way
    """
    def decorator(func):
        pop_request, pop_response, signature = _inject_params(func)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            request = pop_request(kwargs)
            response = pop_response(kwargs)

            result = await func(*args, **kwargs)

            status_code = result.status_code if isinstance(result, Response) else response.status_code
            if not _is_success(status_code):
                return result

            entity_id = await extract_entity_id(request, entity)
            if entity_id is None:
                logger.debug("no %s id in %s %s, skipping invalidation", entity, request.method, request.url.path)
                return result

            await get_cache_manager(request).invalidate_related(entity, entity_id)
            return result

        wrapper.__signature__ = signature
        return wrapper

    return decorator

# cache key registry - one place that decides what every cache key looks like
# plus the ttl tiers and which key patterns belong to which entity

from enum import Enum, IntEnum
from typing import Dict, List, Optional, Tuple

KEY_DELIMITER = ":"

class CacheTTL(IntEnum):
    """ttl tiers in seconds - pick by how volatile the underlying record is"""
    SHORT = 300      # 5 minutes (api responses, sessions)
    MEDIUM = 900     # 15 minutes (raw entity records)
    LONG = 1800      # 30 minutes
    HOUR = 3600      # 1 hour
    DAY = 86400      # 24 hours (pure computed results)
    WEEK = 604800    # 7 days

class EntityKind(str, Enum):
    """entities whose mutation fans out into cache invalidation"""
    CUSTOMER = "customer"
    COMPANY = "company"
    EXPENSES = "expenses"

def key_for(namespace: str, *parts) -> str:
    """
    join a namespace and its identifying parts into a cache key

    example:
        key_for("company", "customer", "rec123") → "company:customer:rec123"
    """
    namespace = namespace.rstrip(KEY_DELIMITER)
    return KEY_DELIMITER.join([namespace] + [str(p) for p in parts])

def normalize_email(email: str) -> str:
    # emails are case-insensitive upstream, keys must not be
    return email.strip().lower()

# --- key builders ---

def customer_by_email(email: str) -> str:
    return key_for("customer", "email", normalize_email(email))

def customer_by_id(customer_id: str) -> str:
    return key_for("customer", "id", customer_id)

def company_by_customer(customer_id: str) -> str:
    return key_for("company", "customer", customer_id)

def company_by_id(company_id: str) -> str:
    return key_for("company", "id", company_id)

def expenses_by_company(company_id: str) -> str:
    return key_for("expenses", "company", company_id)

def wages_by_company(company_id: str) -> str:
    return key_for("wages", "company", company_id)

def calculator_result(input_hash: str) -> str:
    return key_for("calc", "result", input_hash)

def session_data(session_id: str) -> str:
    return key_for("session", session_id)

def rate_limit(key: str) -> str:
    return key_for("ratelimit", key)

def api_response(path: str, params_hash: str) -> str:
    return key_for("api", path, params_hash)

def document_status(customer_id: str) -> str:
    return key_for("docs", "status", customer_id)

# --- invalidation registry ---
# entity → glob templates cleared together when that entity's id changes.
# adding a derived namespace means adding a line here, nothing else.
INVALIDATION_PATTERNS: Dict[EntityKind, Tuple[str, ...]] = {
    EntityKind.CUSTOMER: (
        "customer:*:{id}",
        "company:customer:{id}",
        "docs:status:{id}",
    ),
    EntityKind.COMPANY: (
        "company:*:{id}",
        "expenses:company:{id}",
        "wages:company:{id}",
    ),
    EntityKind.EXPENSES: (
        "expenses:company:{id}",
        "wages:company:{id}",
    ),
}

# request fields that identify the touched record, checked in order
# (json body first, then path params)
INVALIDATION_ID_FIELDS: Dict[EntityKind, Tuple[str, ...]] = {
    EntityKind.CUSTOMER: ("customerId", "email", "customer_id", "id"),
    EntityKind.COMPANY: ("companyId", "company_id", "id"),
    EntityKind.EXPENSES: ("companyId", "company_id", "id"),
}

def parse_entity(entity) -> Optional[EntityKind]:
    """map a string or EntityKind to EntityKind, None if unknown"""
    try:
        return EntityKind(entity)
    except ValueError:
        return None

def patterns_for(entity, entity_id: str) -> List[str]:
    """
    render the invalidation patterns for one entity id

    returns:
        list of glob patterns, empty for an unknown entity
    """
    kind = parse_entity(entity)
    if kind is None:
        return []
    return [template.format(id=entity_id) for template in INVALIDATION_PATTERNS[kind]]

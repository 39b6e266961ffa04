# unit tests for the cache key registry

from service import cache_keys
from service.cache_keys import CacheTTL, EntityKind

def test_key_for_joins_with_delimiter():
    """namespace and parts are joined with ':'"""
    assert cache_keys.key_for("company", "customer", "rec1") == "company:customer:rec1"
    assert cache_keys.key_for("session", 42) == "session:42"

def test_key_for_does_not_double_delimiter():
    assert cache_keys.key_for("customer:email:", "a@b.com") == "customer:email:a@b.com"

def test_key_builders_are_deterministic():
    """same input → byte-identical key every time"""
    keys = {cache_keys.company_by_customer("rec9") for _ in range(5)}
    assert keys == {"company:customer:rec9"}

def test_email_keys_are_case_normalized():
    """emails differing only in case/whitespace share one key"""
    expected = "customer:email:jane@example.com"
    assert cache_keys.customer_by_email("Jane@Example.com") == expected
    assert cache_keys.customer_by_email("  JANE@EXAMPLE.COM ") == expected
    assert cache_keys.customer_by_email("jane@example.com") == expected

def test_namespaced_builders():
    assert cache_keys.customer_by_id("rec1") == "customer:id:rec1"
    assert cache_keys.company_by_id("rec2") == "company:id:rec2"
    assert cache_keys.expenses_by_company("rec2") == "expenses:company:rec2"
    assert cache_keys.wages_by_company("rec2") == "wages:company:rec2"
    assert cache_keys.calculator_result("abc") == "calc:result:abc"
    assert cache_keys.api_response("/api/x", "abc") == "api:/api/x:abc"
    assert cache_keys.document_status("rec1") == "docs:status:rec1"
    assert cache_keys.rate_limit("1.2.3.4") == "ratelimit:1.2.3.4"

def test_ttl_tiers():
    """ttl tiers are plain seconds"""
    assert CacheTTL.SHORT == 300
    assert CacheTTL.MEDIUM == 900
    assert CacheTTL.LONG == 1800
    assert CacheTTL.HOUR == 3600
    assert CacheTTL.DAY == 86400
    assert CacheTTL.WEEK == 604800
    assert int(CacheTTL.DAY) + 1 == 86401

def test_patterns_for_company():
    assert cache_keys.patterns_for("company", "X") == [
        "company:*:X",
        "expenses:company:X",
        "wages:company:X",
    ]

def test_patterns_for_accepts_enum_and_string():
    assert cache_keys.patterns_for(EntityKind.CUSTOMER, "c1") == cache_keys.patterns_for("customer", "c1")
    assert "docs:status:c1" in cache_keys.patterns_for("customer", "c1")

def test_patterns_for_unknown_entity_is_empty():
    assert cache_keys.patterns_for("invoice", "X") == []
    assert cache_keys.parse_entity("invoice") is None

def test_every_entity_has_patterns_and_id_fields():
    for kind in EntityKind:
        assert cache_keys.INVALIDATION_PATTERNS[kind]
        assert cache_keys.INVALIDATION_ID_FIELDS[kind]

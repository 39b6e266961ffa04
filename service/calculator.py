# r&d credit estimate + its result cache
# the estimate is a pure function of its input, so a cached result can never
# go stale for that exact input - it only ever expires

import logging
from typing import Any, Callable, Dict, Iterable, Optional

from pydantic import BaseModel, Field

from service import cache_keys
from service.cache import CacheManager
from service.cache_keys import CacheTTL

logger = logging.getLogger(__name__)

# contractor spend only counts at 65% (irs cap)
CONTRACTOR_QRE_RATE = 0.65
# asc method, startup rate
FEDERAL_CREDIT_RATE = 0.06

# (credit ceiling, tier, price) - first ceiling above the credit wins
PRICING_TIERS = [
    (10000, 1, 500),
    (50000, 2, 750),
    (100000, 3, 1000),
]
TOP_TIER = (4, 1500)

class CalculatorInput(BaseModel):
    """calculator form input (amounts in dollars, percentages 0-100)"""
    wages: float = Field(..., ge=0)
    wage_rd_percent: float = Field(..., ge=0, le=100, alias="wageRdPercent")
    contractors: float = Field(0, ge=0)
    contractor_rd_percent: float = Field(0, ge=0, le=100, alias="contractorRdPercent")
    supplies: float = Field(0, ge=0)
    supplies_rd_percent: float = Field(0, ge=0, le=100, alias="suppliesRdPercent")

    class Config:
        populate_by_name = True  # snake_case field names work too
        json_schema_extra = {
            "example": {
                "wages": 500000,
                "wageRdPercent": 80,
                "contractors": 100000,
                "contractorRdPercent": 100,
                "supplies": 50000,
                "suppliesRdPercent": 100
            }
        }

def calculate_credit(data: CalculatorInput) -> Dict[str, Any]:
    """
    estimate qualified research expenses, federal credit and price tier

    returns:
        {"totalQRE", "federalCredit", "tier", "price"}
    """
    qualified_wages = data.wages * (data.wage_rd_percent / 100)
    qualified_contractors = data.contractors * (data.contractor_rd_percent / 100) * CONTRACTOR_QRE_RATE
    qualified_supplies = data.supplies * (data.supplies_rd_percent / 100)

    total_qre = qualified_wages + qualified_contractors + qualified_supplies
    federal_credit = total_qre * FEDERAL_CREDIT_RATE

    tier, price = TOP_TIER
    for ceiling, tier_number, tier_price in PRICING_TIERS:
        if federal_credit < ceiling:
            tier, price = tier_number, tier_price
            break

    return {
        "totalQRE": total_qre,
        "federalCredit": federal_credit,
        "tier": tier,
        "price": price,
    }

# scenarios warmed at startup (most common calculator inputs)
COMMON_SCENARIOS = [
    {"wages": 500000, "wageRdPercent": 80, "contractors": 0, "contractorRdPercent": 0,
     "supplies": 50000, "suppliesRdPercent": 100},
    {"wages": 1000000, "wageRdPercent": 60, "contractors": 200000, "contractorRdPercent": 100,
     "supplies": 100000, "suppliesRdPercent": 100},
    {"wages": 250000, "wageRdPercent": 100, "contractors": 0, "contractorRdPercent": 0,
     "supplies": 25000, "suppliesRdPercent": 100},
]

class CalculationCache:
    """
    memoizes calculate_credit keyed by a hash of the full input
    results live for a day; there is no invalidation path
    """

    def __init__(self, cache: CacheManager, calculate_fn: Callable[[CalculatorInput], Dict[str, Any]] = calculate_credit):
        self.cache = cache
        self.calculate_fn = calculate_fn

    def _key(self, data: CalculatorInput) -> str:
        # hash the normalized model, not the raw request, so 80 and 80.0 match
        return cache_keys.calculator_result(self.cache.generate_hash(data.model_dump(by_alias=True)))

    async def get_cached_result(self, data: CalculatorInput) -> Optional[Dict[str, Any]]:
        return await self.cache.get(self._key(data))

    async def cache_result(self, data: CalculatorInput, result: Dict[str, Any]) -> None:
        await self.cache.set(self._key(data), result, CacheTTL.DAY)

    async def get_or_calculate(self, data: CalculatorInput) -> Dict[str, Any]:
        """cached result if present, else calculate and cache"""
        async def compute():
            return self.calculate_fn(data)

        return await self.cache.get_or_fetch(self._key(data), compute, CacheTTL.DAY)

    async def warm_cache(self, scenarios: Iterable[Dict[str, Any]] = COMMON_SCENARIOS) -> int:
        """
        pre-compute and cache common scenarios

        returns:
            number of scenarios cached
        """
        warmed = 0
        for scenario in scenarios:
            data = CalculatorInput.model_validate(scenario)
            await self.cache_result(data, self.calculate_fn(data))
            warmed += 1
        logger.debug("warmed %d calculator scenarios", warmed)
        return warmed

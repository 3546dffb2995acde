"""
Pricing tests: defaults, cache TTL, admin updates and store fallback.
"""
import pytest
from sqlalchemy.exc import OperationalError

from storefront.core.errors import ValidationError
from storefront.core.retry import run_in_transaction
from storefront.models.system_config import SystemConfig
from storefront.services import pricing_service as prices
from storefront.services.pricing_service import PricingProvider, PricingSnapshot


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _write_row(session_factory, key, value):
    async def _write(db):
        row = await db.get(SystemConfig, key)
        if row:
            row.value = value
        else:
            db.add(SystemConfig(key=key, value=value))

    await run_in_transaction(session_factory, _write)


class TestSnapshot:
    """Tests for PricingProvider.snapshot"""

    @pytest.mark.asyncio
    async def test_defaults_when_table_is_empty(self, pricing):
        snap = await pricing.snapshot()

        assert snap.cost(prices.MAIN_IMAGE_STANDARD_COST) == 199
        assert snap.cost(prices.MAIN_IMAGE_RETRY_COST) == 99
        assert snap.cost(prices.WATERMARK_UNLOCK_COST) == 100
        assert snap.cost(prices.WATERMARK_REMOVE_COST) == 50
        assert snap.fallback is False

    @pytest.mark.asyncio
    async def test_unknown_key_is_a_validation_error(self, pricing):
        snap = await pricing.snapshot()

        with pytest.raises(ValidationError):
            snap.cost("NOT_A_PRICE")

    @pytest.mark.asyncio
    async def test_snapshot_is_cached_until_ttl(self, session_factory):
        clock = FakeClock()
        provider = PricingProvider(session_factory, ttl_seconds=60, clock=clock)

        first = await provider.snapshot()
        await _write_row(session_factory, prices.MAIN_IMAGE_STANDARD_COST, "250")

        clock.now += 30
        cached = await provider.snapshot()
        assert cached is first
        assert cached.cost(prices.MAIN_IMAGE_STANDARD_COST) == 199

        clock.now += 31
        fresh = await provider.snapshot()
        assert fresh.cost(prices.MAIN_IMAGE_STANDARD_COST) == 250
        assert fresh.version > first.version

    @pytest.mark.asyncio
    async def test_snapshot_is_immutable(self, pricing):
        snap = await pricing.snapshot()

        with pytest.raises(TypeError):
            snap.costs[prices.IMAGE_EDIT_COST] = 1

    @pytest.mark.asyncio
    async def test_bad_row_falls_back_to_default(self, session_factory, pricing):
        await _write_row(session_factory, prices.IMAGE_EDIT_COST, "cheap")
        await _write_row(session_factory, prices.DETAIL_PAGE_STANDARD_COST, "150")

        snap = await pricing.snapshot()

        assert snap.cost(prices.IMAGE_EDIT_COST) == 199
        assert snap.cost(prices.DETAIL_PAGE_STANDARD_COST) == 150

    @pytest.mark.asyncio
    async def test_negative_row_falls_back_to_default(self, session_factory, pricing):
        await _write_row(session_factory, prices.MAIN_IMAGE_STANDARD_COST, "-50")

        snap = await pricing.snapshot()

        assert snap.cost(prices.MAIN_IMAGE_STANDARD_COST) == 199

    @pytest.mark.asyncio
    async def test_unreachable_store_uses_defaults(self):
        def broken_factory():
            raise OperationalError("SELECT 1", {}, Exception("database is down"))

        provider = PricingProvider(broken_factory)
        snap = await provider.snapshot()

        assert snap.fallback is True
        assert snap.as_dict() == prices.DEFAULT_COSTS

    def test_build_merges_over_defaults(self):
        snap = PricingSnapshot.build({prices.WATERMARK_ADD_COST: 5}, version=3)

        assert snap.cost(prices.WATERMARK_ADD_COST) == 5
        assert snap.cost(prices.IMAGE_EDIT_COST) == 199
        assert snap.version == 3


class TestAdminPrices:
    """Tests for update_cost, list_costs and seed_costs"""

    @pytest.mark.asyncio
    async def test_update_invalidates_cache(self, pricing):
        before = await pricing.snapshot()
        assert before.cost(prices.MAIN_IMAGE_STANDARD_COST) == 199

        assert await pricing.update_cost(prices.MAIN_IMAGE_STANDARD_COST, "149") == 149

        after = await pricing.snapshot()
        assert after.cost(prices.MAIN_IMAGE_STANDARD_COST) == 149

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [-1, "12.5", "abc", "", True, None])
    async def test_update_rejects_invalid_values(self, pricing, value):
        with pytest.raises(ValidationError):
            await pricing.update_cost(prices.IMAGE_EDIT_COST, value)

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_key(self, pricing):
        with pytest.raises(ValidationError):
            await pricing.update_cost("FREE_LUNCH", 0)

    @pytest.mark.asyncio
    async def test_zero_is_a_valid_price(self, pricing):
        assert await pricing.update_cost(prices.WATERMARK_REMOVE_COST, 0) == 0
        assert (await pricing.snapshot()).cost(prices.WATERMARK_REMOVE_COST) == 0

    @pytest.mark.asyncio
    async def test_seed_keeps_existing_values(self, session_factory, pricing):
        await _write_row(session_factory, prices.IMAGE_EDIT_COST, "300")

        added = await pricing.seed_costs()
        assert added == len(prices.COST_KEYS) - 1
        assert await pricing.seed_costs() == 0

        items = {i["key"]: i for i in await pricing.list_costs()}
        assert items[prices.IMAGE_EDIT_COST]["value"] == "300"
        assert items[prices.MAIN_IMAGE_RETRY_COST]["value"] == "99"
        assert items[prices.MAIN_IMAGE_RETRY_COST]["description"] == prices.COST_DESCRIPTIONS[prices.MAIN_IMAGE_RETRY_COST]

"""
Redemption code tests: single use under concurrency, normalization, minting.
"""
import asyncio

import pytest

from storefront.core.errors import ConflictError, ValidationError
from storefront.core.retry import run_in_transaction
from storefront.models.ledger_entry import LedgerKind
from storefront.models.redemption_code import CodeStatus, RedemptionCode
from storefront.services import redemption_service


async def _mint(session_factory, code="WELCOME2026", paid=500, bonus=100):
    async def _add(db):
        db.add(RedemptionCode(code=code, paid_credits=paid, bonus_credits=bonus, status=CodeStatus.UNUSED))

    await run_in_transaction(session_factory, _add)
    return code


class TestRedeem:
    """Tests for redemption_service.redeem"""

    @pytest.mark.asyncio
    async def test_redeem_credits_both_buckets(self, session_factory, make_account, entries_of, assert_consistent):
        account_id = await make_account()
        await _mint(session_factory)

        result = await redemption_service.redeem(session_factory, account_id, "  welcome2026 ")

        assert result["added"] == {"paid": 500, "bonus": 100}
        assert (result["balance"].paid, result["balance"].bonus) == (500, 100)
        [entry] = await entries_of(account_id)
        assert entry.kind == LedgerKind.RECHARGE
        assert entry.amount == 600
        assert entry.description == "Redeemed code: +500 credits, +100 bonus credits"
        await assert_consistent(account_id)

    @pytest.mark.asyncio
    async def test_used_code_is_a_conflict(self, session_factory, make_account, balance_of):
        first = await make_account()
        second = await make_account()
        await _mint(session_factory)

        await redemption_service.redeem(session_factory, first, "WELCOME2026")
        with pytest.raises(ConflictError):
            await redemption_service.redeem(session_factory, second, "WELCOME2026")

        assert (await balance_of(second)).total == 0

    @pytest.mark.asyncio
    async def test_concurrent_redeems_credit_one_account(self, session_factory, make_account, balance_of):
        accounts = [await make_account() for _ in range(3)]
        await _mint(session_factory, paid=300, bonus=0)

        results = await asyncio.gather(
            *(redemption_service.redeem(session_factory, a, "WELCOME2026") for a in accounts),
            return_exceptions=True,
        )

        assert len([r for r in results if isinstance(r, ConflictError)]) == 2
        totals = [(await balance_of(a)).total for a in accounts]
        assert sorted(totals) == [0, 0, 300]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["", "   ", "NOPE-NOT-A-CODE"])
    async def test_unknown_or_blank_code(self, session_factory, make_account, code):
        account_id = await make_account()

        with pytest.raises(ValidationError):
            await redemption_service.redeem(session_factory, account_id, code)

    def test_describe_recharge_without_bonus(self):
        assert redemption_service.describe_recharge(200, 0) == "Redeemed code: +200 credits"


class TestGenerateCodes:
    """Tests for redemption_service.generate_codes"""

    @pytest.mark.asyncio
    async def test_minted_codes_are_unique_and_redeemable(self, session_factory, make_account, balance_of):
        codes = await redemption_service.generate_codes(session_factory, 20, paid=100, bonus=20, prefix="vip-")

        assert len(codes) == 20
        assert len(set(codes)) == 20
        assert all(c.startswith("VIP-") and len(c) == 4 + redemption_service.CODE_LENGTH for c in codes)

        account_id = await make_account()
        await redemption_service.redeem(session_factory, account_id, codes[0])
        balance = await balance_of(account_id)
        assert (balance.paid, balance.bonus) == (100, 20)

    @pytest.mark.asyncio
    async def test_collisions_are_redrawn(self, session_factory, monkeypatch):
        await _mint(session_factory, code="TAKEN0000000000A")
        drawn = iter(["TAKEN0000000000A", "FRESH0000000000B", "FRESH0000000000B", "FRESH0000000000C"])
        monkeypatch.setattr(redemption_service, "_random_code", lambda prefix: next(drawn))

        codes = await redemption_service.generate_codes(session_factory, 2, paid=100)

        assert codes == ["FRESH0000000000B", "FRESH0000000000C"]

    @pytest.mark.asyncio
    async def test_shortfall_is_reported(self, session_factory, monkeypatch):
        await _mint(session_factory, code="TAKEN0000000000A")
        monkeypatch.setattr(redemption_service, "_random_code", lambda prefix: "TAKEN0000000000A")

        with pytest.raises(ConflictError):
            await redemption_service.generate_codes(session_factory, 1, paid=100)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count,paid,bonus", [(0, 100, 0), (1001, 100, 0), (5, 0, 0), (5, -1, 10)])
    async def test_invalid_mint_requests(self, session_factory, count, paid, bonus):
        with pytest.raises(ValidationError):
            await redemption_service.generate_codes(session_factory, count, paid, bonus)

import uuid
from typing import List, Optional

import pytest
from sqlalchemy import select

from storefront.core.database import build_engine, build_session_factory, init_models
from storefront.core.retry import run_in_transaction
from storefront.models.account import Account, AccountRole
from storefront.models.ledger_entry import LedgerEntry, LedgerKind
from storefront.services import ledger_service
from storefront.services.pricing_service import PricingProvider


# ─────────────────────────────────────────────
# DATABASE
# ─────────────────────────────────────────────

@pytest.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront-test.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def pricing(session_factory):
    return PricingProvider(session_factory)


@pytest.fixture
def make_account(session_factory):
    """Create an account whose starting balance is backed by ledger grants."""
    async def _make(paid: int = 0, bonus: int = 0, role: str = AccountRole.USER, email: Optional[str] = None) -> str:
        account_id = str(uuid.uuid4())

        async def _create(db):
            db.add(Account(
                id=account_id,
                email=email or f"{account_id[:8]}@example.com",
                password_hash="not-a-real-hash",
                name="Test User",
                role=role,
                paid_balance=0,
                bonus_balance=0,
            ))
            await db.flush()
            if paid:
                await ledger_service.grant(db, account_id, paid, 0, LedgerKind.RECHARGE, "Test top-up")
            if bonus:
                await ledger_service.grant(db, account_id, 0, bonus, LedgerKind.SYSTEM_REWARD, "Test bonus")

        await run_in_transaction(session_factory, _create)
        return account_id

    return _make


@pytest.fixture
def balance_of(session_factory):
    async def _balance(account_id: str):
        async with session_factory() as db:
            return await ledger_service.get_balance(db, account_id)
    return _balance


@pytest.fixture
def entries_of(session_factory):
    """Ledger entries for an account, oldest first."""
    async def _entries(account_id: str) -> List[LedgerEntry]:
        async with session_factory() as db:
            rows = await db.execute(
                select(LedgerEntry).where(LedgerEntry.account_id == account_id).order_by(LedgerEntry.id)
            )
            return list(rows.scalars().all())
    return _entries


@pytest.fixture
def assert_consistent(session_factory):
    """Snapshot and ledger agree and both buckets are non-negative."""
    async def _check(account_id: str):
        async with session_factory() as db:
            snapshot, ledger_sum = await ledger_service.verify_account(db, account_id)
            balance = await ledger_service.get_balance(db, account_id)
        assert snapshot == ledger_sum
        assert balance.paid >= 0 and balance.bonus >= 0
    return _check

# FILE: storefront/services/ledger_service.py
"""
Credit ledger: the account balance snapshot plus the append-only entries
that explain it.

Every function here works on a session that is already inside a transaction;
the caller owns commit/rollback. A balance is never changed without a
matching LedgerEntry being written in that same transaction.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.errors import InsufficientFunds, NotFoundError, ValidationError
from storefront.models.account import Account
from storefront.models.ledger_entry import LedgerEntry, LedgerKind

logger = logging.getLogger("storefront.ledger")


@dataclass(frozen=True)
class Balance:
    paid: int
    bonus: int

    @property
    def total(self) -> int:
        return self.paid + self.bonus

    def as_dict(self) -> Dict[str, int]:
        return {"paid": self.paid, "bonus": self.bonus, "total": self.total}


@dataclass(frozen=True)
class ChargeResult:
    paid_portion: int
    bonus_portion: int
    balance: Balance

    @property
    def amount(self) -> int:
        return self.paid_portion + self.bonus_portion


def _balance_of(account: Account) -> Balance:
    return Balance(paid=int(account.paid_balance or 0), bonus=int(account.bonus_balance or 0))


async def lock_account(db: AsyncSession, account_id: str) -> Account:
    """Load the account row with a write lock (FOR UPDATE on server databases)."""
    stmt = (
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    account = (await db.execute(stmt)).scalar_one_or_none()
    if not account:
        raise NotFoundError("Account not found", {"account_id": account_id})
    return account


async def get_balance(db: AsyncSession, account_id: str) -> Balance:
    account = (await db.execute(select(Account).where(Account.id == account_id))).scalar_one_or_none()
    if not account:
        raise NotFoundError("Account not found", {"account_id": account_id})
    return _balance_of(account)


async def _key_exists(db: AsyncSession, key: str) -> bool:
    found = await db.execute(select(LedgerEntry.id).where(LedgerEntry.idempotency_key == key))
    return found.scalar_one_or_none() is not None


async def append_entry(
    db: AsyncSession,
    account: Account,
    paid_delta: int,
    bonus_delta: int,
    kind: str,
    description: str,
    ref_id: Optional[str] = None,
    key: Optional[str] = None,
) -> Optional[LedgerEntry]:
    """
    Write one ledger row and move the account buckets by the given deltas.

    With an idempotency ``key`` the write happens at most once: if the key was
    already used the call changes nothing and returns None. ``account`` must
    have been loaded through :func:`lock_account` in this transaction.
    """
    new_paid = int(account.paid_balance or 0) + paid_delta
    new_bonus = int(account.bonus_balance or 0) + bonus_delta
    if new_paid < 0 or new_bonus < 0:
        raise InsufficientFunds(required=-(paid_delta + bonus_delta), available=_balance_of(account).total)

    if key and await _key_exists(db, key):
        logger.info(f"Ledger key {key} already applied, skipping")
        return None

    entry = LedgerEntry(
        account_id=account.id,
        amount=paid_delta + bonus_delta,
        kind=kind,
        description=description[:255],
        ref_id=ref_id,
        idempotency_key=key,
    )
    try:
        # A concurrent writer with the same key loses here, not at commit.
        async with db.begin_nested():
            db.add(entry)
            await db.flush()
    except IntegrityError:
        logger.info(f"Ledger key {key} applied concurrently, skipping")
        return None

    account.paid_balance = new_paid
    account.bonus_balance = new_bonus
    await db.flush()
    return entry


# ─────────────────────────────────────────────
# CHARGE / REFUND
# ─────────────────────────────────────────────

async def charge(
    db: AsyncSession,
    account_id: str,
    amount: int,
    description: str,
    kind: str = LedgerKind.CONSUME,
    ref_id: Optional[str] = None,
) -> ChargeResult:
    """Debit ``amount`` bonus-first. Raises InsufficientFunds without touching anything."""
    if kind not in LedgerKind.DEBITS:
        raise ValidationError(f"Not a debit kind: {kind}")
    if amount < 0:
        raise ValidationError("Charge amount must not be negative", {"amount": amount})

    account = await lock_account(db, account_id)
    balance = _balance_of(account)

    if balance.total < amount:
        raise InsufficientFunds(required=amount, available=balance.total)

    bonus_portion = min(balance.bonus, amount)
    paid_portion = amount - bonus_portion

    if amount > 0:
        await append_entry(db, account, -paid_portion, -bonus_portion, kind, description, ref_id=ref_id)
        logger.info(
            f"Charged {amount} from {account_id} ({kind}, paid={paid_portion}, bonus={bonus_portion}): {description}"
        )

    return ChargeResult(paid_portion=paid_portion, bonus_portion=bonus_portion, balance=_balance_of(account))


async def refund(
    db: AsyncSession,
    account_id: str,
    paid_portion: int,
    bonus_portion: int,
    description: str,
    key: str,
    ref_id: Optional[str] = None,
) -> bool:
    """Return exactly the given portions. Returns False when ``key`` was already refunded."""
    if paid_portion < 0 or bonus_portion < 0:
        raise ValidationError("Refund portions must not be negative")
    if paid_portion + bonus_portion == 0:
        return False

    account = await lock_account(db, account_id)
    entry = await append_entry(
        db, account, paid_portion, bonus_portion, LedgerKind.REFUND, description, ref_id=ref_id, key=key
    )
    if entry is None:
        return False

    logger.info(f"Refunded {paid_portion + bonus_portion} to {account_id} (paid={paid_portion}, bonus={bonus_portion}) [{key}]")
    return True


async def grant(
    db: AsyncSession,
    account_id: str,
    paid: int,
    bonus: int,
    kind: str,
    description: str,
    key: Optional[str] = None,
    ref_id: Optional[str] = None,
) -> bool:
    """Explicit credit path: recharge, registration / daily / referral rewards."""
    if kind not in LedgerKind.GRANTS:
        raise ValidationError(f"Not a grant kind: {kind}")
    if paid < 0 or bonus < 0 or paid + bonus == 0:
        raise ValidationError("Grant must add a positive amount", {"paid": paid, "bonus": bonus})

    account = await lock_account(db, account_id)
    entry = await append_entry(db, account, paid, bonus, kind, description, ref_id=ref_id, key=key)
    if entry is None:
        return False

    logger.info(f"Granted {paid + bonus} to {account_id} ({kind}, paid={paid}, bonus={bonus})")
    return True


# ─────────────────────────────────────────────
# QUERIES
# ─────────────────────────────────────────────

async def history(
    db: AsyncSession,
    account_id: str,
    page: int = 1,
    limit: int = 20,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, min(limit, 100))

    filters = [LedgerEntry.account_id == account_id]
    if start_date:
        filters.append(LedgerEntry.created_at >= start_date)
    if end_date:
        filters.append(LedgerEntry.created_at <= end_date)

    total = (await db.execute(select(func.count(LedgerEntry.id)).where(*filters))).scalar() or 0
    rows = await db.execute(
        select(LedgerEntry)
        .where(*filters)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return {
        "items": list(rows.scalars().all()),
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


async def verify_account(db: AsyncSession, account_id: str) -> Tuple[int, int]:
    """(snapshot total, sum of ledger amounts); equal for every healthy account."""
    balance = await get_balance(db, account_id)
    ledger_sum = (
        await db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.account_id == account_id)
        )
    ).scalar() or 0
    return balance.total, int(ledger_sum)

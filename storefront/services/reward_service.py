# FILE: storefront/services/reward_service.py
"""Registration bonus and daily check-in rewards (bonus bucket)."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import REGISTRATION_BONUS, DAILY_CHECKIN_REWARD, DAILY_CHECKIN_ENABLED
from storefront.core.database import utcnow
from storefront.core.errors import ConflictError, NotFoundError, ValidationError
from storefront.core.retry import run_in_transaction
from storefront.models.account import Account
from storefront.models.ledger_entry import LedgerKind
from storefront.services import ledger_service

logger = logging.getLogger("storefront.rewards")


async def grant_registration_bonus(db: AsyncSession, account_id: str, amount: int = REGISTRATION_BONUS) -> bool:
    """Runs inside the account-creation transaction."""
    if amount <= 0:
        return False
    return await ledger_service.grant(
        db, account_id, 0, amount, LedgerKind.SYSTEM_REWARD, "Registration bonus",
        key=f"register:{account_id}",
    )


def next_check_in(last: Optional[datetime]) -> Optional[datetime]:
    if not last:
        return None
    return datetime(last.year, last.month, last.day) + timedelta(days=1)


def can_check_in(last: Optional[datetime], now: datetime) -> bool:
    return last is None or last.date() != now.date()


async def checkin_status(session_factory: async_sessionmaker, account_id: str) -> Dict[str, Any]:
    async with session_factory() as db:
        account = await db.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        last = account.last_check_in

    now = utcnow()
    allowed = can_check_in(last, now)
    return {
        "enabled": DAILY_CHECKIN_ENABLED,
        "can_check_in": DAILY_CHECKIN_ENABLED and allowed,
        "last_check_in": last,
        "next_check_in": None if allowed else next_check_in(last),
        "reward": DAILY_CHECKIN_REWARD,
    }


async def check_in(
    session_factory: async_sessionmaker,
    account_id: str,
    enabled: bool = DAILY_CHECKIN_ENABLED,
    reward: int = DAILY_CHECKIN_REWARD,
) -> Dict[str, Any]:
    """Once per UTC calendar day."""
    if not enabled:
        raise ValidationError("Daily check-in is not available")

    async def _check_in(db: AsyncSession) -> Dict[str, Any]:
        now = utcnow()
        account = await ledger_service.lock_account(db, account_id)
        if not can_check_in(account.last_check_in, now):
            raise ConflictError("Already checked in today")

        granted = await ledger_service.grant(
            db, account_id, 0, reward, LedgerKind.DAILY_REWARD, "Daily check-in reward",
            key=f"checkin:{account_id}:{now.date().isoformat()}",
        )
        if not granted:
            raise ConflictError("Already checked in today")
        account.last_check_in = now
        return {"reward": reward, "balance": await ledger_service.get_balance(db, account_id)}

    result = await run_in_transaction(session_factory, _check_in)
    logger.info(f"Daily check-in for {account_id} (+{reward})")
    return result

# FILE: storefront/services/redemption_service.py
import logging
import secrets
import string
from typing import Any, Dict, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.database import utcnow
from storefront.core.errors import ConflictError, ValidationError
from storefront.core.retry import run_in_transaction
from storefront.models.ledger_entry import LedgerKind
from storefront.models.redemption_code import RedemptionCode, CodeStatus
from storefront.services import ledger_service

logger = logging.getLogger("storefront.redemption")

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 16
MINT_ROUNDS = 5


def normalize_code(code: str) -> str:
    return str(code or "").strip().upper()


def describe_recharge(paid: int, bonus: int) -> str:
    if bonus > 0:
        return f"Redeemed code: +{paid} credits, +{bonus} bonus credits"
    return f"Redeemed code: +{paid} credits"


async def redeem(session_factory: async_sessionmaker, account_id: str, code: str) -> Dict[str, Any]:
    """Spend a code: UNUSED -> USED once, credit paid + bonus buckets."""
    code = normalize_code(code)
    if not code:
        raise ValidationError("Please enter a code")

    async def _redeem(db: AsyncSession) -> Dict[str, Any]:
        row = (
            await db.execute(
                select(RedemptionCode)
                .where(RedemptionCode.code == code)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if not row:
            raise ValidationError("Code does not exist")
        if row.status != CodeStatus.UNUSED:
            raise ConflictError("Code has already been used")

        res = await db.execute(
            update(RedemptionCode)
            .where(RedemptionCode.id == row.id, RedemptionCode.status == CodeStatus.UNUSED)
            .values(status=CodeStatus.USED, used_by=account_id, used_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            raise ConflictError("Code has already been used")

        paid = int(row.paid_credits or 0)
        bonus = int(row.bonus_credits or 0)
        granted = await ledger_service.grant(
            db, account_id, paid, bonus, LedgerKind.RECHARGE, describe_recharge(paid, bonus),
            key=f"redeem:{code}", ref_id=str(row.id),
        )
        if not granted:
            raise ConflictError("Code has already been used")

        balance = await ledger_service.get_balance(db, account_id)
        return {"added": {"paid": paid, "bonus": bonus}, "balance": balance}

    result = await run_in_transaction(session_factory, _redeem)
    logger.info(f"Code {code[:4]}**** redeemed by {account_id}: {result['added']}")
    return result


def _random_code(prefix: str = "") -> str:
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    return f"{prefix}{body}"


async def generate_codes(
    session_factory: async_sessionmaker,
    count: int,
    paid: int,
    bonus: int = 0,
    prefix: str = "",
) -> List[str]:
    if count < 1 or count > 1000:
        raise ValidationError("count must be between 1 and 1000")
    if paid < 0 or bonus < 0 or paid + bonus == 0:
        raise ValidationError("A code must carry a positive amount of credits")
    prefix = normalize_code(prefix)

    async def _mint(db: AsyncSession) -> List[str]:
        codes = set()
        for _ in range(MINT_ROUNDS):
            drawn = set()
            while len(drawn) < count - len(codes):
                candidate = _random_code(prefix)
                if candidate not in codes:
                    drawn.add(candidate)
            taken = await db.execute(select(RedemptionCode.code).where(RedemptionCode.code.in_(drawn)))
            codes |= drawn - set(taken.scalars().all())
            if len(codes) == count:
                break
        else:
            raise ConflictError("Could not mint enough unique codes", {"requested": count, "minted": len(codes)})

        for c in sorted(codes):
            db.add(RedemptionCode(code=c, paid_credits=paid, bonus_credits=bonus, status=CodeStatus.UNUSED))
        return sorted(codes)

    codes = await run_in_transaction(session_factory, _mint)
    logger.info(f"Minted {len(codes)} redemption code(s) worth {paid}+{bonus}")
    return codes

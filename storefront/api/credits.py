# /storefront/api/credits.py
"""Credit balance, ledger history, code redemption and daily check-in."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront.api.deps import get_current_user, get_session_factory, get_pricing
from storefront.api.presenters import balance_response, ledger_entry_response, iso
from storefront.schemas.credits import (
    BalanceResponse,
    LedgerHistoryResponse,
    RedeemRequest,
    RedeemResponse,
    RedeemAdded,
    CheckinStatusResponse,
    CheckinResponse,
)
from storefront.services import ledger_service, redemption_service, reward_service

router = APIRouter(prefix="/api/credits", tags=["credits"])
config_router = APIRouter(prefix="/api/config", tags=["config"])


@router.get("/balance", response_model=BalanceResponse)
async def get_credit_balance(user=Depends(get_current_user), session_factory: async_sessionmaker = Depends(get_session_factory)):
    """Get current credit balance for the authenticated user."""
    async with session_factory() as db:
        balance = await ledger_service.get_balance(db, user["id"])
    return balance_response(balance)


@router.get("/history", response_model=LedgerHistoryResponse)
async def get_credit_history(
    page: int = 1,
    limit: int = 20,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user=Depends(get_current_user),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Ledger entries, newest first."""
    if start_date and start_date.tzinfo:
        start_date = start_date.replace(tzinfo=None)
    if end_date and end_date.tzinfo:
        end_date = end_date.replace(tzinfo=None)

    async with session_factory() as db:
        result = await ledger_service.history(db, user["id"], page, limit, start_date, end_date)

    return LedgerHistoryResponse(
        items=[ledger_entry_response(e) for e in result["items"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
        total_pages=result["total_pages"],
    )


@router.post("/redeem", response_model=RedeemResponse)
async def redeem_code(req: RedeemRequest, user=Depends(get_current_user), session_factory: async_sessionmaker = Depends(get_session_factory)):
    result = await redemption_service.redeem(session_factory, user["id"], req.code)
    return RedeemResponse(added=RedeemAdded(**result["added"]), balance=balance_response(result["balance"]))


@router.get("/checkin", response_model=CheckinStatusResponse)
async def get_checkin_status(user=Depends(get_current_user), session_factory: async_sessionmaker = Depends(get_session_factory)):
    status = await reward_service.checkin_status(session_factory, user["id"])
    return CheckinStatusResponse(
        enabled=status["enabled"],
        can_check_in=status["can_check_in"],
        last_check_in=iso(status["last_check_in"]),
        next_check_in=iso(status["next_check_in"]),
        reward=status["reward"],
    )


@router.post("/checkin", response_model=CheckinResponse)
async def daily_checkin(user=Depends(get_current_user), session_factory: async_sessionmaker = Depends(get_session_factory)):
    result = await reward_service.check_in(session_factory, user["id"])
    return CheckinResponse(reward=result["reward"], balance=balance_response(result["balance"]))


# ─────────────────────────────────────────────
# PUBLIC PRICE TABLE
# ─────────────────────────────────────────────

@config_router.get("/costs")
async def get_costs(pricing=Depends(get_pricing)):
    snapshot = await pricing.snapshot()
    return {"costs": snapshot.as_dict(), "version": snapshot.version}

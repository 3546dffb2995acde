# FILE: storefront/api/appeals.py
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront.api.deps import get_current_user, get_session_factory
from storefront.api.presenters import appeal_response
from storefront.models.account import AccountRole
from storefront.schemas.appeals import AppealCreate, AppealResponse
from storefront.services import appeal_service

router = APIRouter(prefix="/api/appeals", tags=["appeals"])


@router.post("", response_model=AppealResponse)
async def file_appeal(req: AppealCreate, user=Depends(get_current_user), session_factory: async_sessionmaker = Depends(get_session_factory)):
    appeal = await appeal_service.file_appeal(session_factory, user["id"], req.job_id, req.reason)
    return appeal_response(appeal)


@router.get("", response_model=List[AppealResponse])
async def list_my_appeals(
    status: Optional[str] = None,
    user=Depends(get_current_user),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    rows = await appeal_service.list_appeals(
        session_factory, user["id"], is_admin=user["role"] == AccountRole.ADMIN, status=status
    )
    return [appeal_response(appeal, job) for appeal, job in rows]

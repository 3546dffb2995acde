# FILE: storefront/api/admin.py
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront.api.deps import require_admin, get_session_factory, get_pricing
from storefront.api.presenters import appeal_response, iso
from storefront.schemas.admin import CostItem, CostUpdate, CodeMintRequest, CodeMintResponse
from storefront.schemas.appeals import AppealResolve, AppealResponse
from storefront.services import appeal_service, redemption_service

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/appeals", response_model=List[AppealResponse])
async def list_appeals(
    status: Optional[str] = None,
    admin=Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    rows = await appeal_service.list_appeals(session_factory, admin["id"], is_admin=True, status=status)
    return [appeal_response(appeal, job) for appeal, job in rows]


@router.post("/appeals/{appeal_id}/resolve", response_model=AppealResponse)
async def resolve_appeal(
    appeal_id: str,
    req: AppealResolve,
    admin=Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    appeal = await appeal_service.resolve_appeal(session_factory, admin["id"], appeal_id, req.action, req.admin_note)
    return appeal_response(appeal)


@router.get("/config/costs", response_model=List[CostItem])
async def list_costs(admin=Depends(require_admin), pricing=Depends(get_pricing)):
    items = await pricing.list_costs()
    return [
        CostItem(key=i["key"], value=i["value"], description=i["description"], updated_at=iso(i["updated_at"]))
        for i in items
    ]


@router.put("/config/costs")
async def update_cost(req: CostUpdate, admin=Depends(require_admin), pricing=Depends(get_pricing)):
    value = await pricing.update_cost(req.key, req.value, req.description)
    return {"success": True, "key": req.key, "value": value}


@router.post("/redemption-codes", response_model=CodeMintResponse)
async def mint_codes(
    req: CodeMintRequest,
    admin=Depends(require_admin),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    codes = await redemption_service.generate_codes(session_factory, req.count, req.paid, req.bonus, req.prefix)
    return CodeMintResponse(codes=codes, paid=req.paid, bonus=req.bonus)

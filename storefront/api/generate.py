# FILE: storefront/api/generate.py
# =========================================================
# Image generation, in-place edit, history, watermark unlock
# =========================================================

from typing import Optional

from fastapi import APIRouter, Depends

from storefront.api.deps import get_current_user, get_job_manager
from storefront.api.presenters import balance_response, job_response
from storefront.schemas.jobs import (
    GenerateRequest,
    EditRequest,
    JobResponse,
    JobResultResponse,
    EditResultResponse,
    HistoryResponse,
    HistoryPage,
    UnlockResponse,
)

router = APIRouter(prefix="/api", tags=["generate"])


@router.post("/generate", response_model=JobResultResponse)
async def generate(req: GenerateRequest, user=Depends(get_current_user), jobs=Depends(get_job_manager)):
    outcome = await jobs.submit(
        owner_id=user["id"],
        kind=req.kind,
        input_refs=req.images,
        product_name=req.product_name,
        product_type=req.product_type,
        prompt=req.prompt,
        retry_of=req.retry_of,
    )
    return JobResultResponse(job=job_response(outcome.job), balance=balance_response(outcome.balance))


@router.post("/generate/edit", response_model=EditResultResponse)
async def edit_image(req: EditRequest, user=Depends(get_current_user), jobs=Depends(get_job_manager)):
    outcome = await jobs.edit(
        owner_id=user["id"],
        job_id=req.job_id,
        target_index=req.image_index,
        prompt=req.prompt,
        original_ref=req.original_image_url,
    )
    return EditResultResponse(
        job_id=outcome.job.id,
        image_index=req.image_index,
        new_image_url=outcome.job.outputs[req.image_index],
        balance=balance_response(outcome.balance),
    )


@router.get("/generate/{job_id}", response_model=JobResponse)
async def get_generation(job_id: str, user=Depends(get_current_user), jobs=Depends(get_job_manager)):
    outcome = await jobs.get_job(user["id"], job_id)
    return job_response(outcome.job, outcome.editing_indexes)


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    q: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    user=Depends(get_current_user),
    jobs=Depends(get_job_manager),
):
    result = await jobs.list_jobs(user["id"], query=q, status=status, limit=limit, offset=offset)
    return HistoryResponse(
        items=[job_response(job, marks) for job, marks in result["items"]],
        page=HistoryPage(**result["page"]),
    )


@router.post("/generate/{job_id}/unlock-watermark", response_model=UnlockResponse)
async def unlock_watermark(job_id: str, user=Depends(get_current_user), jobs=Depends(get_job_manager)):
    result = await jobs.unlock_watermark(user["id"], job_id)
    return UnlockResponse(
        already_unlocked=result["already_unlocked"],
        charged=result["charged"],
        balance=balance_response(result["balance"]),
    )

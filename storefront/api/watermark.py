# FILE: storefront/api/watermark.py
from typing import List

from fastapi import APIRouter, Depends

from storefront.api.deps import get_current_user, get_watermark_queue
from storefront.api.presenters import balance_response, watermark_task_response
from storefront.schemas.watermark import (
    WatermarkSubmitRequest,
    WatermarkSubmitResponse,
    QueueStatusResponse,
    WatermarkTaskResponse,
)

router = APIRouter(prefix="/api/watermark", tags=["watermark"])


@router.post("/submit", response_model=WatermarkSubmitResponse)
async def submit(req: WatermarkSubmitRequest, user=Depends(get_current_user), queue=Depends(get_watermark_queue)):
    result = await queue.submit(user["id"], req.urls)
    return WatermarkSubmitResponse(
        batch_id=result["batch_id"],
        task_ids=result["task_ids"],
        cost=result["cost"],
        balance=balance_response(result["balance"]),
    )


@router.get("/queue-status", response_model=QueueStatusResponse)
async def queue_status(user=Depends(get_current_user), queue=Depends(get_watermark_queue)):
    return QueueStatusResponse(**await queue.queue_status(user["id"]))


@router.get("/history", response_model=List[WatermarkTaskResponse])
async def history(limit: int = 50, user=Depends(get_current_user), queue=Depends(get_watermark_queue)):
    tasks = await queue.history(user["id"], limit=limit)
    return [watermark_task_response(t) for t in tasks]

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from storefront.schemas.credits import BalanceResponse


class WatermarkSubmitRequest(BaseModel):
    urls: List[str] = Field(min_length=1)


class WatermarkSubmitResponse(BaseModel):
    success: bool = True
    batch_id: str
    task_ids: List[int]
    cost: int
    balance: BalanceResponse


class QueueStatusResponse(BaseModel):
    pending_count: int
    processing_count: int
    queue_position: int
    total_waiting: int


class WatermarkTaskResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int
    batch_id: str
    original_url: str
    result_url: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    attempts: int
    refunded: bool = False
    created_at: str
    updated_at: str

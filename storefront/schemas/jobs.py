# =========================================================
# FILE: /storefront/schemas/jobs.py
# =========================================================

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from storefront.schemas.credits import BalanceResponse


class GenerateRequest(BaseModel):
    kind: str = "MAIN_IMAGE"
    product_name: str
    product_type: str
    images: List[str] = Field(min_length=1)
    prompt: Optional[str] = None
    retry_of: Optional[str] = None

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str):
        v = (v or "").upper().strip()
        allowed = {"MAIN_IMAGE", "DETAIL_PAGE"}
        if v not in allowed:
            raise ValueError(f"kind must be one of {sorted(allowed)}")
        return v

    @field_validator("product_name", "product_type")
    @classmethod
    def not_blank(cls, v: str):
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class EditRequest(BaseModel):
    job_id: str
    image_index: int = Field(ge=0)
    prompt: str
    original_image_url: Optional[str] = None

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, value: str):
        if not value or not value.strip():
            raise ValueError("Edit prompt cannot be empty")
        return value.strip()


class JobResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    kind: str
    status: str
    product_name: Optional[str] = None
    product_type: Optional[str] = None
    outputs: List[str] = Field(default_factory=list)
    cost: int
    discounted_retry: bool = False
    retry_used: bool = False
    watermark_unlocked: bool = False
    editing_indexes: List[int] = Field(default_factory=list)
    error_message: Optional[str] = None
    created_at: str


class JobResultResponse(BaseModel):
    success: bool = True
    job: JobResponse
    balance: BalanceResponse


class EditResultResponse(BaseModel):
    success: bool = True
    job_id: str
    image_index: int
    new_image_url: str
    balance: BalanceResponse


class HistoryPage(BaseModel):
    limit: int
    offset: int
    total: int
    has_more: bool


class HistoryResponse(BaseModel):
    items: List[JobResponse]
    page: HistoryPage


class UnlockResponse(BaseModel):
    success: bool = True
    already_unlocked: bool
    charged: int
    balance: BalanceResponse

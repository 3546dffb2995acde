from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class AppealCreate(BaseModel):
    job_id: str = Field(min_length=1)
    reason: Optional[str] = None


class AppealResolve(BaseModel):
    action: str
    admin_note: Optional[str] = None

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str):
        v = (v or "").upper().strip()
        if v not in {"APPROVE", "REJECT"}:
            raise ValueError("action must be APPROVE or REJECT")
        return v


class AppealJobSummary(BaseModel):
    id: str
    kind: str
    product_name: Optional[str] = None
    outputs: List[str] = Field(default_factory=list)
    cost: int


class AppealResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    job_id: str
    owner_id: str
    status: str
    reason: Optional[str] = None
    refund_amount: int
    admin_note: Optional[str] = None
    created_at: str
    resolved_at: Optional[str] = None
    job: Optional[AppealJobSummary] = None

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class BalanceResponse(BaseModel):
    paid: int
    bonus: int
    total: int


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int
    amount: int
    kind: str
    description: str
    ref_id: Optional[str] = None
    created_at: str


class LedgerHistoryResponse(BaseModel):
    items: List[LedgerEntryResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class RedeemRequest(BaseModel):
    code: str = Field(min_length=1)


class RedeemAdded(BaseModel):
    paid: int
    bonus: int


class RedeemResponse(BaseModel):
    success: bool = True
    added: RedeemAdded
    balance: BalanceResponse


class CheckinStatusResponse(BaseModel):
    enabled: bool
    can_check_in: bool
    last_check_in: Optional[str] = None
    next_check_in: Optional[str] = None
    reward: int


class CheckinResponse(BaseModel):
    success: bool = True
    reward: int
    balance: BalanceResponse

from typing import List, Optional, Union
from pydantic import BaseModel, Field


class CostItem(BaseModel):
    key: str
    value: str
    description: str
    updated_at: Optional[str] = None


class CostUpdate(BaseModel):
    key: str
    value: Union[int, str]
    description: Optional[str] = None


class CodeMintRequest(BaseModel):
    count: int = Field(ge=1, le=1000)
    paid: int = Field(ge=0)
    bonus: int = Field(default=0, ge=0)
    prefix: str = ""


class CodeMintResponse(BaseModel):
    codes: List[str]
    paid: int
    bonus: int

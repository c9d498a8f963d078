from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from siteledger.models.money_source import MoneySource


class MoneySourceResponse(BaseModel):
    id: str
    company_id: str
    owner_id: str
    name: str
    description: Optional[str] = None
    is_advance: bool
    is_company_main: bool
    is_active: bool
    created_at: datetime

    @classmethod
    def from_model(cls, source: MoneySource) -> "MoneySourceResponse":
        return cls(**source.model_dump(by_alias=False, exclude={"shared_with", "updated_at"}))


class BalanceResponse(BaseModel):
    money_source_id: str
    balance_cents: int


class SourceAccessResponse(BaseModel):
    user_id: str
    can_view: bool
    can_spend: bool


class MoneySourceWithBalance(MoneySourceResponse):
    """Source as listed to a user: live balance and current grants."""
    balance_cents: int
    shared_with: List[SourceAccessResponse] = []

    @classmethod
    def build(cls, source: MoneySource, balance_cents: int) -> "MoneySourceWithBalance":
        return cls(
            **source.model_dump(by_alias=False, exclude={"shared_with", "updated_at"}),
            balance_cents=balance_cents,
            shared_with=[SourceAccessResponse(**grant.model_dump()) for grant in source.shared_with],
        )


class MoneySourceCreate(BaseModel):
    """Request body for a new cash box or account.

    Advance accounts are provisioned by the advance ledger, so is_advance is
    accepted only to be rejected with a VALIDATION error.
    """
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_company_main: bool = False
    is_advance: bool = False


class MoneySourceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    is_company_main: Optional[bool] = None


class ShareRequest(BaseModel):
    user_id: str
    can_view: bool = True
    can_spend: bool = False

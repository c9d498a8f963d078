from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from siteledger.models.money_source import MoneySource
from siteledger.models.transaction import Transaction
from siteledger.schemas.money_source import MoneySourceResponse
from siteledger.schemas.transaction import TransactionResponse


class AdvanceIssue(BaseModel):
    money_source_id: str          # issuing source
    recipient_user_id: str
    amount_cents: int
    date: Optional[datetime] = None
    category_id: Optional[str] = None  # system "advance issue" category when omitted
    project_id: Optional[str] = None
    comment: Optional[str] = None


class AdvanceReturn(BaseModel):
    advance_source_id: str
    to_money_source_id: str
    amount_cents: Optional[int] = None  # None returns the whole live balance
    date: Optional[datetime] = None
    comment: Optional[str] = None


class AdvanceHistoryFilter(BaseModel):
    recipient_user_id: Optional[str] = None
    issued_by_user_id: Optional[str] = None
    project_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    skip: int = Field(0, ge=0)
    limit: int = Field(50, ge=1, le=500)


class AdvanceIssueResult(BaseModel):
    """transaction is the RECEIVE leg on the recipient's advance account."""
    transaction: Transaction
    issue_transaction: Transaction
    recipient_money_source: MoneySource
    is_new: bool


class AdvanceReturnResult(BaseModel):
    transaction: Transaction
    remaining_balance: int


class AdvanceBalance(BaseModel):
    user_id: str
    user_name: str
    money_source_id: str
    money_source_name: str
    balance_cents: int


class AdvanceIssueResponse(BaseModel):
    transaction: TransactionResponse
    issue_transaction: TransactionResponse
    recipient_money_source: MoneySourceResponse
    is_new: bool

    @classmethod
    def from_result(cls, result: AdvanceIssueResult) -> "AdvanceIssueResponse":
        return cls(
            transaction=TransactionResponse.from_model(result.transaction),
            issue_transaction=TransactionResponse.from_model(result.issue_transaction),
            recipient_money_source=MoneySourceResponse.from_model(result.recipient_money_source),
            is_new=result.is_new,
        )


class AdvanceReturnResponse(BaseModel):
    transaction: TransactionResponse
    remaining_balance: int


class AdvanceHistoryResponse(BaseModel):
    items: List[TransactionResponse]
    total: int

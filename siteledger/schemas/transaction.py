from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from siteledger.models.transaction import AdvanceLeg, ReceiptStatus, Transaction, TransactionType


class TransactionCreate(BaseModel):
    """Request body to record a transaction.

    amount_cents is validated by the service so a non-positive amount is
    reported as a ledger VALIDATION error rather than a schema error.
    """
    type: TransactionType
    amount_cents: int
    money_source_id: str
    to_money_source_id: Optional[str] = None
    category_id: str
    project_id: Optional[str] = None
    payout_user_id: Optional[str] = None
    date: Optional[datetime] = None  # defaults to now
    comment: Optional[str] = None
    receipt_status: ReceiptStatus = ReceiptStatus.NO_RECEIPT
    receipt_url: Optional[str] = None


class TransactionUpdate(BaseModel):
    """Partial update. Only fields sent by the client are applied."""
    amount_cents: Optional[int] = None
    category_id: Optional[str] = None
    date: Optional[datetime] = None
    comment: Optional[str] = None
    receipt_status: Optional[ReceiptStatus] = None
    receipt_url: Optional[str] = None
    project_id: Optional[str] = None
    money_source_id: Optional[str] = None


class TransactionFilter(BaseModel):
    type: Optional[TransactionType] = None
    money_source_id: Optional[str] = None
    category_id: Optional[str] = None
    project_id: Optional[str] = None
    created_by_id: Optional[str] = None
    receipt_status: Optional[ReceiptStatus] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    include_deleted: bool = False
    skip: int = Field(0, ge=0)
    limit: int = Field(50, ge=1, le=500)


class TransactionResponse(BaseModel):
    id: str
    company_id: str
    type: TransactionType
    amount_cents: int
    date: datetime
    money_source_id: str
    to_money_source_id: Optional[str] = None
    category_id: str
    project_id: Optional[str] = None
    payout_user_id: Optional[str] = None
    advance_pair_id: Optional[str] = None
    advance_leg: Optional[AdvanceLeg] = None
    comment: Optional[str] = None
    receipt_status: ReceiptStatus
    receipt_url: Optional[str] = None
    created_by_id: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    deleted_by_id: Optional[str] = None

    @classmethod
    def from_model(cls, tx: Transaction) -> "TransactionResponse":
        return cls(**tx.model_dump(by_alias=False))


class TransactionListResponse(BaseModel):
    items: List[TransactionResponse]
    total: int
    skip: int
    limit: int


class TransactionWithBalance(TransactionResponse):
    """Project ledger row with the project's running balance after it."""
    running_balance_cents: int

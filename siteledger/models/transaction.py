"""
Transaction - the atomic ledger entry.

Design principles:
- amount_cents is a positive integer, the direction comes from `type`
- Immutable history except for a bounded set of editable fields
- Soft delete only: deleted_at is set once and never cleared
- Advance issuance is two rows linked by advance_pair_id (ISSUE + RECEIVE)
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from siteledger.models.base import MongoModel, PyObjectId


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    PAYOUT = "PAYOUT"
    INTERNAL = "INTERNAL"
    ADVANCE = "ADVANCE"


class ReceiptStatus(str, Enum):
    NO_RECEIPT = "NO_RECEIPT"
    PENDING = "PENDING"
    ATTACHED = "ATTACHED"


class AdvanceLeg(str, Enum):
    ISSUE = "ISSUE"      # debit on the issuing source
    RECEIVE = "RECEIVE"  # credit on the recipient's advance account


# Fields an update may touch; everything else is history
EDITABLE_FIELDS = {
    "amount_cents",
    "category_id",
    "date",
    "comment",
    "receipt_status",
    "receipt_url",
    "project_id",
    "money_source_id",
}

# Fields kept identical on both legs of an advance pair
PAIR_SHARED_FIELDS = {"amount_cents", "date", "comment", "project_id", "category_id"}


class Transaction(MongoModel):
    company_id: PyObjectId
    type: TransactionType
    amount_cents: int
    date: datetime

    money_source_id: PyObjectId
    to_money_source_id: Optional[PyObjectId] = None
    category_id: PyObjectId
    project_id: Optional[PyObjectId] = None
    payout_user_id: Optional[PyObjectId] = None

    advance_pair_id: Optional[PyObjectId] = None
    advance_leg: Optional[AdvanceLeg] = None

    comment: Optional[str] = None
    receipt_status: ReceiptStatus = ReceiptStatus.NO_RECEIPT
    receipt_url: Optional[str] = None

    created_by_id: PyObjectId
    deleted_at: Optional[datetime] = None
    deleted_by_id: Optional[PyObjectId] = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    @property
    def is_advance_pair(self) -> bool:
        return self.advance_pair_id is not None

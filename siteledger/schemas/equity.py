from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from siteledger.models.user import Role


class SettlementStatus(str, Enum):
    OK = "OK"                          # two partners, plan computed
    NOT_APPLICABLE = "NOT_APPLICABLE"  # single partner
    UNSUPPORTED = "UNSUPPORTED"        # three or more partners


class PartnerEquity(BaseModel):
    user_id: str
    name: str
    role: Role
    cash_balance_cents: int
    withdrawn_cents: int
    equity_cents: int
    target_share_cents: int
    settlement_cents: int  # positive gives, negative receives


class SettlementSummary(BaseModel):
    from_user_id: str
    from_name: str
    to_user_id: str
    to_name: str
    amount_cents: int


class EquityReport(BaseModel):
    partners: List[PartnerEquity]
    total_company_value_cents: int
    settlement_needed: bool
    settlement_status: SettlementStatus
    settlement_summary: Optional[SettlementSummary] = None

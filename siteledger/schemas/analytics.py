from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel


class AnalyticsFilter(BaseModel):
    """Reporting window. Dates are inclusive days in the company calendar."""
    project_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class Period(str, Enum):
    CURRENT_MONTH = "current_month"
    LAST_MONTH = "last_month"
    CURRENT_QUARTER = "current_quarter"
    CURRENT_YEAR = "current_year"


class PeriodSummary(BaseModel):
    total_income_cents: int
    total_expense_cents: int
    profit_cents: int
    profit_margin: float  # percent
    transaction_count: int


class CategoryBreakdownRow(BaseModel):
    category_id: str
    name: str
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    icon: str = ""
    color: str = ""
    total_cents: int
    count: int
    percentage: float


class ProjectBreakdownRow(BaseModel):
    project_id: str
    name: str
    income_cents: int
    expense_cents: int
    balance_cents: int


class DailyHistoryRow(BaseModel):
    date: date
    income_cents: int
    expense_cents: int


class AnalyticsSummary(BaseModel):
    totals: PeriodSummary
    by_category: List[CategoryBreakdownRow]
    by_project: List[ProjectBreakdownRow]
    history: List[DailyHistoryRow]


class CashFlowPeriod(BaseModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class CashFlowRow(BaseModel):
    category_id: str
    name: str
    monthly: Dict[str, int]  # "YYYY-MM" -> cents
    total: int


class CashFlowSections(BaseModel):
    income: List[CashFlowRow]
    expense: List[CashFlowRow]


class CashFlowTotals(BaseModel):
    income: Dict[str, int]
    expense: Dict[str, int]
    net_flow: Dict[str, int]
    cumulative: Dict[str, int]
    total_income: int
    total_expense: int
    total_net_flow: int


class CashFlowReport(BaseModel):
    period: CashFlowPeriod
    columns: List[str]
    categories: CashFlowSections
    totals: CashFlowTotals


class ProjectBalance(BaseModel):
    project_id: str
    income_cents: int
    expense_cents: int
    balance_cents: int
    generated_at: datetime


class PayoutByUser(BaseModel):
    user_id: str
    name: str
    total_cents: int
    count: int

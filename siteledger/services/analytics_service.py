"""
Analytics Aggregator.

Read-only statistics over active INCOME and EXPENSE rows. Day and month
buckets follow the company's local calendar. Nothing here is cached; every
call recomputes from the ledger.
"""

import calendar
import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from siteledger.core.errors import ValidationError
from siteledger.core.timezone import (
    company_tz,
    days_between,
    end_of_day,
    local_date,
    month_key,
    months_between,
    start_of_day,
)
from siteledger.models.transaction import Transaction, TransactionType
from siteledger.repositories.interface import LedgerStore, TransactionQuery
from siteledger.schemas.analytics import (
    AnalyticsFilter,
    AnalyticsSummary,
    CashFlowPeriod,
    CashFlowReport,
    CashFlowRow,
    CashFlowSections,
    CashFlowTotals,
    CategoryBreakdownRow,
    DailyHistoryRow,
    PayoutByUser,
    Period,
    PeriodSummary,
    ProjectBalance,
    ProjectBreakdownRow,
)
from siteledger.services.lookups import load_company, load_project

logger = logging.getLogger(__name__)

FLOW_TYPES = [TransactionType.INCOME, TransactionType.EXPENSE]


def period_range(period: Period, today: date) -> Tuple[date, date]:
    """Inclusive first and last day of a named reporting period."""
    if period == Period.CURRENT_MONTH:
        start = today.replace(day=1)
        return start, _month_end(start)
    if period == Period.LAST_MONTH:
        this_month = today.replace(day=1)
        start = (this_month.replace(year=this_month.year - 1, month=12) if this_month.month == 1
                 else this_month.replace(month=this_month.month - 1))
        return start, _month_end(start)
    if period == Period.CURRENT_QUARTER:
        start = today.replace(month=(today.month - 1) // 3 * 3 + 1, day=1)
        end_month = start.replace(month=start.month + 2)
        return start, _month_end(end_month)
    if period == Period.CURRENT_YEAR:
        return today.replace(month=1, day=1), today.replace(month=12, day=31)
    raise ValueError(f"Unknown period {period}")


def _month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def summarize(rows: Iterable[Transaction]) -> PeriodSummary:
    income = expense = count = 0
    for tx in rows:
        count += 1
        if tx.type == TransactionType.INCOME:
            income += tx.amount_cents
        elif tx.type == TransactionType.EXPENSE:
            expense += tx.amount_cents
    profit = income - expense
    return PeriodSummary(
        total_income_cents=income,
        total_expense_cents=expense,
        profit_cents=profit,
        profit_margin=percent(profit, income),
        transaction_count=count,
    )


def daily_history(rows: Iterable[Transaction], tz: ZoneInfo) -> List[DailyHistoryRow]:
    """Per-day totals from the first to the last active day; quiet days in between are zeros."""
    income: Dict[date, int] = defaultdict(int)
    expense: Dict[date, int] = defaultdict(int)
    for tx in rows:
        day = local_date(tx.date, tz)
        if tx.type == TransactionType.INCOME:
            income[day] += tx.amount_cents
        elif tx.type == TransactionType.EXPENSE:
            expense[day] += tx.amount_cents
    active = set(income) | set(expense)
    if not active:
        return []
    return [
        DailyHistoryRow(date=day, income_cents=income.get(day, 0), expense_cents=expense.get(day, 0))
        for day in days_between(min(active), max(active))
    ]


class AnalyticsService:
    def __init__(self, store: LedgerStore):
        self.store = store

    async def _company_tz(self, company_id: str) -> ZoneInfo:
        company = await load_company(self.store, company_id)
        return company_tz(company.timezone)

    async def _rows(
        self,
        company_id: str,
        filters: AnalyticsFilter,
        tz: ZoneInfo,
        types: Optional[List[TransactionType]] = None,
    ) -> List[Transaction]:
        return await self.store.find_transactions(TransactionQuery(
            company_id=company_id,
            types=types or FLOW_TYPES,
            project_id=filters.project_id,
            date_from=start_of_day(filters.date_from, tz) if filters.date_from else None,
            date_to=end_of_day(filters.date_to, tz) if filters.date_to else None,
        ))

    async def _category_rows(
        self, company_id: str, rows: List[Transaction], tx_type: TransactionType
    ) -> List[CategoryBreakdownRow]:
        totals: Dict[str, int] = defaultdict(int)
        counts: Dict[str, int] = defaultdict(int)
        for tx in rows:
            if tx.type == tx_type:
                totals[tx.category_id] += tx.amount_cents
                counts[tx.category_id] += 1
        if not totals:
            return []

        categories = {c.id: c for c in await self.store.list_categories(company_id, ids=list(totals))}
        groups = {g.id: g for g in await self.store.list_category_groups(company_id)}
        grand = sum(totals.values())
        result = []
        for category_id, total in totals.items():
            category = categories.get(category_id)
            group = groups.get(category.group_id) if category and category.group_id else None
            result.append(CategoryBreakdownRow(
                category_id=category_id,
                group_id=group.id if group else None,
                group_name=group.name if group else None,
                name=category.name if category else "Unknown",
                icon=category.icon if category else "",
                color=category.color if category else "",
                total_cents=total,
                count=counts[category_id],
                percentage=percent(total, grand),
            ))
        result.sort(key=lambda row: (-row.total_cents, row.name))
        return result

    async def _project_rows(self, company_id: str, rows: List[Transaction]) -> List[ProjectBreakdownRow]:
        income: Dict[str, int] = defaultdict(int)
        expense: Dict[str, int] = defaultdict(int)
        for tx in rows:
            if tx.project_id is None:
                continue
            if tx.type == TransactionType.INCOME:
                income[tx.project_id] += tx.amount_cents
            elif tx.type == TransactionType.EXPENSE:
                expense[tx.project_id] += tx.amount_cents
        ids = list(set(income) | set(expense))
        if not ids:
            return []

        names = {p.id: p.name for p in await self.store.list_projects(company_id, ids=ids)}
        result = [
            ProjectBreakdownRow(
                project_id=project_id,
                name=names.get(project_id, "Unknown"),
                income_cents=income[project_id],
                expense_cents=expense[project_id],
                balance_cents=income[project_id] - expense[project_id],
            )
            for project_id in ids
        ]
        result.sort(key=lambda row: (-row.balance_cents, row.name))
        return result

    # ----- public operations -----

    async def get_period_summary(self, company_id: str, filters: AnalyticsFilter) -> PeriodSummary:
        tz = await self._company_tz(company_id)
        return summarize(await self._rows(company_id, filters, tz))

    async def get_category_breakdown(
        self,
        company_id: str,
        filters: AnalyticsFilter,
        tx_type: TransactionType = TransactionType.EXPENSE,
    ) -> List[CategoryBreakdownRow]:
        if tx_type not in FLOW_TYPES:
            raise ValidationError("Category breakdown covers INCOME or EXPENSE")
        tz = await self._company_tz(company_id)
        rows = await self._rows(company_id, filters, tz, types=[tx_type])
        return await self._category_rows(company_id, rows, tx_type)

    async def get_project_breakdown(self, company_id: str, filters: AnalyticsFilter) -> List[ProjectBreakdownRow]:
        tz = await self._company_tz(company_id)
        return await self._project_rows(company_id, await self._rows(company_id, filters, tz))

    async def get_daily_history(self, company_id: str, filters: AnalyticsFilter) -> List[DailyHistoryRow]:
        tz = await self._company_tz(company_id)
        return daily_history(await self._rows(company_id, filters, tz), tz)

    async def get_analytics_summary(self, company_id: str, filters: AnalyticsFilter) -> AnalyticsSummary:
        tz = await self._company_tz(company_id)
        rows = await self._rows(company_id, filters, tz)
        return AnalyticsSummary(
            totals=summarize(rows),
            by_category=await self._category_rows(company_id, rows, TransactionType.EXPENSE),
            by_project=await self._project_rows(company_id, rows),
            history=daily_history(rows, tz),
        )

    async def get_cash_flow_report(self, company_id: str, filters: AnalyticsFilter) -> CashFlowReport:
        """Category x month matrix with every cell present.

        Columns cover each calendar month of the window. An open side of the
        window is closed by the earliest or latest row in the data.
        """
        tz = await self._company_tz(company_id)
        rows = await self._rows(company_id, filters, tz)

        days = [local_date(tx.date, tz) for tx in rows]
        start = filters.date_from or (min(days) if days else filters.date_to)
        end = filters.date_to or (max(days) if days else filters.date_from)
        columns = months_between(start, end) if start and end else []
        logger.debug("Cash flow for %s: %d rows over %d months", company_id, len(rows), len(columns))

        cells: Dict[TransactionType, Dict[str, Dict[str, int]]] = {
            t: defaultdict(lambda: {m: 0 for m in columns}) for t in FLOW_TYPES
        }
        for tx in rows:
            month = month_key(tx.date, tz)
            cells[tx.type][tx.category_id][month] += tx.amount_cents

        category_ids = set(cells[TransactionType.INCOME]) | set(cells[TransactionType.EXPENSE])
        categories = {
            c.id: c for c in await self.store.list_categories(company_id, ids=list(category_ids))
        } if category_ids else {}

        def section(tx_type: TransactionType) -> List[CashFlowRow]:
            section_rows = [
                CashFlowRow(
                    category_id=category_id,
                    name=categories[category_id].name if category_id in categories else "Unknown",
                    monthly=dict(monthly),
                    total=sum(monthly.values()),
                )
                for category_id, monthly in cells[tx_type].items()
            ]
            section_rows.sort(key=lambda row: (-row.total, row.name))
            return section_rows

        income_rows = section(TransactionType.INCOME)
        expense_rows = section(TransactionType.EXPENSE)

        income_totals = {m: sum(r.monthly[m] for r in income_rows) for m in columns}
        expense_totals = {m: sum(r.monthly[m] for r in expense_rows) for m in columns}
        net_flow = {m: income_totals[m] - expense_totals[m] for m in columns}
        cumulative = {}
        running = 0
        for m in columns:
            running += net_flow[m]
            cumulative[m] = running

        return CashFlowReport(
            period=CashFlowPeriod(date_from=start, date_to=end),
            columns=columns,
            categories=CashFlowSections(income=income_rows, expense=expense_rows),
            totals=CashFlowTotals(
                income=income_totals,
                expense=expense_totals,
                net_flow=net_flow,
                cumulative=cumulative,
                total_income=sum(income_totals.values()),
                total_expense=sum(expense_totals.values()),
                total_net_flow=sum(net_flow.values()),
            ),
        )

    async def get_project_balance(self, company_id: str, project_id: str) -> ProjectBalance:
        """All-time income minus expense of one project, used when closing it."""
        await load_project(self.store, company_id, project_id)
        rows = await self.store.find_transactions(TransactionQuery(
            company_id=company_id, project_id=project_id, types=FLOW_TYPES,
        ))
        totals = summarize(rows)
        return ProjectBalance(
            project_id=project_id,
            income_cents=totals.total_income_cents,
            expense_cents=totals.total_expense_cents,
            balance_cents=totals.profit_cents,
            generated_at=datetime.now(timezone.utc),
        )

    async def get_payouts_by_user(self, company_id: str, filters: AnalyticsFilter) -> List[PayoutByUser]:
        tz = await self._company_tz(company_id)
        rows = await self._rows(company_id, filters, tz, types=[TransactionType.PAYOUT])
        totals: Dict[str, int] = defaultdict(int)
        counts: Dict[str, int] = defaultdict(int)
        for tx in rows:
            if tx.payout_user_id:
                totals[tx.payout_user_id] += tx.amount_cents
                counts[tx.payout_user_id] += 1

        result = []
        for user_id, total in totals.items():
            user = await self.store.get_user(user_id)
            result.append(PayoutByUser(
                user_id=user_id,
                name=user.name if user else "Unknown",
                total_cents=total,
                count=counts[user_id],
            ))
        result.sort(key=lambda row: -row.total_cents)
        return result

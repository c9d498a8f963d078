"""
Equity & Settlement Engine.

Partner equity is the cash a partner holds on sources they own plus what they
already took out as payouts. The company policy is an even split between
exactly two partners; other partner counts are reported with a degraded
settlement status instead of a transfer plan.
"""

import logging
from typing import Dict, List, Optional

from siteledger.core.config import settings
from siteledger.core.errors import NotFoundError
from siteledger.models.transaction import TransactionType
from siteledger.models.user import PARTNER_ROLES, User
from siteledger.repositories.interface import LedgerStore, TransactionQuery
from siteledger.schemas.equity import EquityReport, PartnerEquity, SettlementStatus, SettlementSummary
from siteledger.services.balance_service import BalanceCalculator

logger = logging.getLogger(__name__)


def round_div(total: int, n: int) -> int:
    """Integer division rounded half up."""
    return (2 * total + n) // (2 * n)


class EquityService:
    def __init__(self, store: LedgerStore, deadband_cents: Optional[int] = None):
        self.store = store
        self.balances = BalanceCalculator(store)
        self.deadband_cents = settings.SETTLEMENT_DEADBAND_CENTS if deadband_cents is None else deadband_cents

    async def _partner_positions(self, company_id: str, partners: List[User]) -> Dict[str, tuple]:
        """user_id -> (cash_balance_cents, withdrawn_cents)."""
        sources = await self.store.list_money_sources(company_id)
        balances = await self.balances.get_balances([s.id for s in sources])
        payouts = await self.store.find_transactions(
            TransactionQuery(company_id=company_id, types=[TransactionType.PAYOUT])
        )

        positions = {}
        for partner in partners:
            cash = sum(balances[s.id] for s in sources if s.owner_id == partner.id)
            withdrawn = sum(tx.amount_cents for tx in payouts if tx.payout_user_id == partner.id)
            positions[partner.id] = (cash, withdrawn)
        return positions

    async def get_equity_report(self, company_id: str) -> EquityReport:
        partners = await self.store.list_users(company_id, roles=list(PARTNER_ROLES))
        if not partners:
            raise NotFoundError("Company has no partners")

        positions = await self._partner_positions(company_id, partners)
        equities = {p.id: sum(positions[p.id]) for p in partners}
        total = sum(equities.values())
        n = len(partners)

        if n == 2:
            # Symmetric split: the giver hands over half the gap, an odd cent stays with the giver
            first, second = partners
            gap = equities[first.id] - equities[second.id]
            transfer = abs(gap) // 2
            sign = 1 if gap > 0 else -1
            settlements = {first.id: sign * transfer, second.id: -sign * transfer}
            target = total // 2
            status = SettlementStatus.OK
        elif n == 1:
            target = total
            settlements = {partners[0].id: 0}
            status = SettlementStatus.NOT_APPLICABLE
        else:
            target = round_div(total, n)
            settlements = {p.id: equities[p.id] - target for p in partners}
            status = SettlementStatus.UNSUPPORTED

        rows = [
            PartnerEquity(
                user_id=p.id,
                name=p.name,
                role=p.role,
                cash_balance_cents=positions[p.id][0],
                withdrawn_cents=positions[p.id][1],
                equity_cents=equities[p.id],
                target_share_cents=target,
                settlement_cents=settlements[p.id],
            )
            for p in partners
        ]

        settlement_needed = any(abs(row.settlement_cents) > self.deadband_cents for row in rows)

        summary = None
        if settlement_needed and status == SettlementStatus.OK:
            giver = next(row for row in rows if row.settlement_cents > 0)
            receiver = next(row for row in rows if row.settlement_cents < 0)
            summary = SettlementSummary(
                from_user_id=giver.user_id,
                from_name=giver.name,
                to_user_id=receiver.user_id,
                to_name=receiver.name,
                amount_cents=abs(receiver.settlement_cents),
            )

        if status != SettlementStatus.OK:
            logger.info("Equity report for %s: %d partners, settlement %s", company_id, n, status.value)

        return EquityReport(
            partners=rows,
            total_company_value_cents=total,
            settlement_needed=settlement_needed,
            settlement_status=status,
            settlement_summary=summary,
        )

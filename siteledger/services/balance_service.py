"""
Balance Calculator.

A money source balance is never stored. It is the signed sum of every active
transaction touching the source, recomputed on each call.
"""

import logging
from typing import Any, Dict, Iterable, List, Tuple

from siteledger.models.transaction import AdvanceLeg, Transaction, TransactionType
from siteledger.repositories.interface import LedgerStore, TransactionQuery

logger = logging.getLogger(__name__)


def signed_effects(tx: Transaction) -> List[Tuple[str, int]]:
    """(source_id, signed cents) pairs a transaction contributes.

    ADVANCE rows are two legs of one issuance: ISSUE debits the issuing
    source and only references the advance account, RECEIVE credits the
    advance account. Each side is therefore counted once.
    """
    amount = tx.amount_cents
    if tx.type == TransactionType.INCOME:
        return [(tx.money_source_id, amount)]
    if tx.type in (TransactionType.EXPENSE, TransactionType.PAYOUT):
        return [(tx.money_source_id, -amount)]
    if tx.type == TransactionType.INTERNAL:
        effects = [(tx.money_source_id, -amount)]
        if tx.to_money_source_id:
            effects.append((tx.to_money_source_id, amount))
        return effects
    if tx.type == TransactionType.ADVANCE:
        if tx.advance_leg == AdvanceLeg.RECEIVE:
            return [(tx.money_source_id, amount)]
        return [(tx.money_source_id, -amount)]
    return []


def sum_effects(transactions: Iterable[Transaction], source_ids: Iterable[str]) -> Dict[str, int]:
    """Fold signed effects into per-source totals for the given ids."""
    totals = {source_id: 0 for source_id in source_ids}
    for tx in transactions:
        if not tx.is_active:
            continue
        for source_id, cents in signed_effects(tx):
            if source_id in totals:
                totals[source_id] += cents
    return totals


class BalanceCalculator:
    def __init__(self, store: LedgerStore):
        self.store = store

    async def get_balance(self, money_source_id: str, session: Any = None) -> int:
        balances = await self.get_balances([money_source_id], session=session)
        return balances[money_source_id]

    async def get_balances(self, money_source_ids: Iterable[str], session: Any = None) -> Dict[str, int]:
        """Balances keyed by id. Pass the unit-of-work session when the result gates a write."""
        ids = list(dict.fromkeys(money_source_ids))
        if not ids:
            return {}
        rows = await self.store.find_transactions(TransactionQuery(touching_source_ids=ids), session=session)
        balances = sum_effects(rows, ids)
        logger.debug("Computed balances for %d sources from %d rows", len(ids), len(rows))
        return balances

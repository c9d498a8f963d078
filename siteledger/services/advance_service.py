"""
Advance Sub-Ledger.

Petty cash handed to an employee lives on a personal advance account
(`MoneySource.is_advance`) that is provisioned on first issuance. Issuance is
one unit of work: the optional new account, the optional system category and
both transaction legs are written together or not at all.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from siteledger.core.config import settings
from siteledger.core.errors import ForbiddenError, InsufficientFundsError, ValidationError
from siteledger.core.events import DomainEvent, EventBus, EventType
from siteledger.core.locks import KeyedLock
from siteledger.core.timezone import ensure_aware
from siteledger.models.base import new_object_id
from siteledger.models.category import ADVANCE_ISSUE_KEY, ADVANCE_RETURN_KEY, Category
from siteledger.models.money_source import MoneySource
from siteledger.models.transaction import AdvanceLeg, Transaction, TransactionType
from siteledger.models.user import Actor
from siteledger.repositories.interface import LedgerStore, TransactionQuery
from siteledger.schemas.advance import (
    AdvanceBalance,
    AdvanceHistoryFilter,
    AdvanceIssue,
    AdvanceIssueResult,
    AdvanceReturn,
    AdvanceReturnResult,
)
from siteledger.services.access import require_spend, require_view
from siteledger.services.balance_service import BalanceCalculator
from siteledger.services.lookups import load_category, load_money_source, load_project, load_user
from siteledger.services.transaction_service import event_payload

logger = logging.getLogger(__name__)

SYSTEM_CATEGORIES = {
    ADVANCE_ISSUE_KEY: ("Advance issued", [TransactionType.ADVANCE]),
    ADVANCE_RETURN_KEY: ("Advance return", [TransactionType.INTERNAL]),
}


def advance_source_name(user_name: str) -> str:
    return f"{settings.ADVANCE_SOURCE_PREFIX}: {user_name}"


def system_category_key(system_key: str) -> str:
    """Lock key guarding on-demand provisioning of a system category."""
    return f"category:{system_key}"


class AdvanceService:
    def __init__(
        self,
        store: LedgerStore,
        bus: Optional[EventBus] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.store = store
        self.bus = bus or EventBus()
        self.locks = locks or KeyedLock()
        self.balances = BalanceCalculator(store)

    async def _system_category(self, system_key: str) -> Tuple[Category, bool]:
        """Existing system category or an unsaved new one (second item True)."""
        category = await self.store.find_system_category(system_key)
        if category is not None:
            return category, False
        name, allowed = SYSTEM_CATEGORIES[system_key]
        return Category(
            name=name,
            allowed_types=allowed,
            is_system=True,
            system_key=system_key,
            icon="wallet",
        ), True

    async def get_advance_source(self, company_id: str, user_id: str) -> Optional[MoneySource]:
        sources = await self.store.list_money_sources(company_id, owner_id=user_id, is_advance=True)
        return sources[0] if sources else None

    # ----- issue -----

    async def issue_advance(self, actor: Actor, data: AdvanceIssue) -> AdvanceIssueResult:
        if not actor.is_manager:
            raise ForbiddenError("Only the owner or an accountant can issue advances")
        if data.amount_cents <= 0:
            raise ValidationError("Amount must be a positive number of cents")

        source = await load_money_source(self.store, actor.company_id, data.money_source_id)
        require_spend(actor, source)
        recipient = await load_user(self.store, actor.company_id, data.recipient_user_id)
        if not recipient.is_active:
            raise ValidationError("Recipient is deactivated")
        await load_project(self.store, actor.company_id, data.project_id)

        category = None
        category_is_new = False
        if data.category_id:
            category = await load_category(self.store, actor.company_id, data.category_id)
            if not category.allows(TransactionType.ADVANCE):
                raise ValidationError(f"Category '{category.name}' cannot be used for ADVANCE")

        # Provisioning key keeps two first issuances to one user from creating two accounts
        provisioning_key = f"advance:{actor.company_id}:{recipient.id}"
        known = await self.get_advance_source(actor.company_id, recipient.id)
        lock_keys = [provisioning_key, source.id, known.id if known else None]
        if category is None and await self.store.find_system_category(ADVANCE_ISSUE_KEY) is None:
            lock_keys.append(system_category_key(ADVANCE_ISSUE_KEY))
        async with self.locks.hold(lock_keys):
            if category is None:
                category, category_is_new = await self._system_category(ADVANCE_ISSUE_KEY)
            advance = await self.get_advance_source(actor.company_id, recipient.id)
            is_new = advance is None
            if is_new:
                advance = MoneySource(
                    company_id=actor.company_id,
                    owner_id=recipient.id,
                    name=advance_source_name(recipient.name),
                    description=f"Advance account of {recipient.name}",
                    is_advance=True,
                )
            if advance.id == source.id:
                raise ValidationError("An advance cannot be issued from the recipient's own advance account")

            pair_id = new_object_id()
            common = dict(
                company_id=actor.company_id,
                type=TransactionType.ADVANCE,
                amount_cents=data.amount_cents,
                date=ensure_aware(data.date) if data.date else datetime.now(timezone.utc),
                category_id=category.id,
                project_id=data.project_id,
                payout_user_id=recipient.id,
                comment=data.comment,
                created_by_id=actor.user_id,
                advance_pair_id=pair_id,
            )
            issue_leg = Transaction(
                money_source_id=source.id,
                to_money_source_id=advance.id,
                advance_leg=AdvanceLeg.ISSUE,
                **common,
            )
            receive_leg = Transaction(
                money_source_id=advance.id,
                advance_leg=AdvanceLeg.RECEIVE,
                **common,
            )

            async with self.store.unit_of_work() as session:
                await self.store.claim_money_sources([source.id], session)
                available = await self.balances.get_balance(source.id, session=session)
                if data.amount_cents > available:
                    raise InsufficientFundsError(
                        f"Insufficient funds: available {available}, requested {data.amount_cents}",
                        available_cents=available,
                        requested_cents=data.amount_cents,
                    )
                if is_new:
                    await self.store.insert_money_source(advance, session=session)
                if category_is_new:
                    await self.store.insert_category(category, session=session)
                await self.store.insert_transactions([issue_leg, receive_leg], session=session)

        logger.info(
            "Advance %s: %d cents from %s to %s (new account: %s)",
            pair_id, data.amount_cents, source.id, advance.id, is_new,
        )
        if is_new:
            await self.bus.publish(DomainEvent(
                event_type=EventType.MONEY_SOURCE_CREATED,
                company_id=actor.company_id,
                entity_id=advance.id,
                actor_id=actor.user_id,
                payload={"owner_id": recipient.id, "is_advance": True},
            ))
        await self.bus.publish(DomainEvent(
            event_type=EventType.ADVANCE_REFILLED,
            company_id=actor.company_id,
            entity_id=receive_leg.id,
            actor_id=actor.user_id,
            payload={**event_payload(receive_leg), "is_new": is_new, "recipient_user_id": recipient.id},
        ))
        return AdvanceIssueResult(
            transaction=receive_leg,
            issue_transaction=issue_leg,
            recipient_money_source=advance,
            is_new=is_new,
        )

    # ----- return -----

    async def return_advance(self, actor: Actor, data: AdvanceReturn) -> AdvanceReturnResult:
        advance = await load_money_source(self.store, actor.company_id, data.advance_source_id)
        if not advance.is_advance:
            raise ValidationError("Money source is not an advance account")
        if not actor.is_manager and advance.owner_id != actor.user_id:
            raise ForbiddenError("Only the holder, the owner or an accountant can return this advance")
        if data.to_money_source_id == advance.id:
            raise ValidationError("Advance cannot be returned to itself")
        destination = await load_money_source(self.store, actor.company_id, data.to_money_source_id)
        require_view(actor, destination)
        if data.amount_cents is not None and data.amount_cents <= 0:
            raise ValidationError("Amount must be a positive number of cents")

        lock_keys = [advance.id, destination.id]
        if await self.store.find_system_category(ADVANCE_RETURN_KEY) is None:
            lock_keys.append(system_category_key(ADVANCE_RETURN_KEY))
        async with self.locks.hold(lock_keys):
            category, category_is_new = await self._system_category(ADVANCE_RETURN_KEY)
            async with self.store.unit_of_work() as session:
                await self.store.claim_money_sources([advance.id], session)
                # "Return all" is resolved here, under the claim, from the live balance
                balance = await self.balances.get_balance(advance.id, session=session)
                amount = balance if data.amount_cents is None else data.amount_cents
                if amount <= 0 or amount > balance:
                    raise InsufficientFundsError(
                        f"Advance balance is {balance}, cannot return {amount}",
                        available_cents=balance,
                        requested_cents=amount,
                    )

                tx = Transaction(
                    company_id=actor.company_id,
                    type=TransactionType.INTERNAL,
                    amount_cents=amount,
                    date=ensure_aware(data.date) if data.date else datetime.now(timezone.utc),
                    money_source_id=advance.id,
                    to_money_source_id=destination.id,
                    category_id=category.id,
                    comment=data.comment,
                    created_by_id=actor.user_id,
                )
                if category_is_new:
                    await self.store.insert_category(category, session=session)
                await self.store.insert_transactions([tx], session=session)
            remaining = balance - amount

        logger.info("Advance return %s: %d cents from %s to %s, %d left", tx.id, amount, advance.id, destination.id, remaining)
        await self.bus.publish(DomainEvent(
            event_type=EventType.ADVANCE_RETURNED,
            company_id=actor.company_id,
            entity_id=tx.id,
            actor_id=actor.user_id,
            payload={**event_payload(tx), "remaining_balance": remaining},
        ))
        return AdvanceReturnResult(transaction=tx, remaining_balance=remaining)

    # ----- reads -----

    async def list_advance_balances(self, company_id: str, user_id: Optional[str] = None) -> List[AdvanceBalance]:
        sources = await self.store.list_money_sources(company_id, owner_id=user_id, is_advance=True)
        if not sources:
            return []
        balances = await self.balances.get_balances([s.id for s in sources])
        rows = []
        for source in sources:
            holder = await self.store.get_user(source.owner_id)
            rows.append(AdvanceBalance(
                user_id=source.owner_id,
                user_name=holder.name if holder else "",
                money_source_id=source.id,
                money_source_name=source.name,
                balance_cents=balances[source.id],
            ))
        return rows

    async def advance_history(self, company_id: str, filters: AdvanceHistoryFilter) -> Tuple[List[Transaction], int]:
        """Issued advances, one row per issuance (the RECEIVE leg), newest first."""
        query = TransactionQuery(
            company_id=company_id,
            types=[TransactionType.ADVANCE],
            advance_leg=AdvanceLeg.RECEIVE,
            payout_user_id=filters.recipient_user_id,
            created_by_id=filters.issued_by_user_id,
            project_id=filters.project_id,
            date_from=ensure_aware(filters.date_from) if filters.date_from else None,
            date_to=ensure_aware(filters.date_to) if filters.date_to else None,
            newest_first=True,
            skip=filters.skip,
            limit=filters.limit,
        )
        items = await self.store.find_transactions(query)
        total = await self.store.count_transactions(query.model_copy(update={"skip": 0, "limit": None}))
        return items, total

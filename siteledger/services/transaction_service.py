"""
Transaction State Machine.

ACTIVE -> (EDITED)* -> DELETED. DELETED is terminal. Every operation is
validated completely before the first write, and all writes of one operation
share a single unit of work, so a rejected call leaves nothing behind.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from siteledger.core.errors import (
    ConflictError,
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from siteledger.core.events import DomainEvent, EventBus, EventType
from siteledger.core.locks import KeyedLock
from siteledger.core.timezone import ensure_aware
from siteledger.models.transaction import (
    EDITABLE_FIELDS,
    PAIR_SHARED_FIELDS,
    AdvanceLeg,
    Transaction,
    TransactionType,
)
from siteledger.models.user import Actor, Role
from siteledger.repositories.interface import LedgerStore, TransactionQuery
from siteledger.schemas.transaction import (
    TransactionCreate,
    TransactionFilter,
    TransactionUpdate,
    TransactionWithBalance,
)
from siteledger.services.access import check_money_source_access, require_spend, require_view
from siteledger.services.balance_service import BalanceCalculator
from siteledger.services.lookups import (
    load_category,
    load_money_source,
    load_project,
    load_user,
)

logger = logging.getLogger(__name__)

# Editable fields that may be cleared by sending null
NULLABLE_FIELDS = {"comment", "receipt_url", "project_id"}

# Effect of each type on a project's running balance
PROJECT_SIGN = {
    TransactionType.INCOME: 1,
    TransactionType.EXPENSE: -1,
}


def event_payload(tx: Transaction) -> Dict[str, Any]:
    return tx.model_dump(
        mode="json",
        include={
            "type",
            "amount_cents",
            "money_source_id",
            "to_money_source_id",
            "category_id",
            "project_id",
            "payout_user_id",
            "advance_pair_id",
        },
    )


class TransactionService:
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

    async def _publish(self, event_type: str, actor: Actor, tx: Transaction, **extra: Any) -> None:
        await self.bus.publish(DomainEvent(
            event_type=event_type,
            company_id=tx.company_id,
            entity_id=tx.id,
            actor_id=actor.user_id,
            payload={**event_payload(tx), **extra},
        ))

    async def _require_funds(
        self,
        source_id: str,
        amount_cents: int,
        credit_back: int = 0,
        session: Any = None,
    ) -> None:
        """Reject when amount exceeds the live balance (plus what the edited row already took).

        Called inside a unit of work after the source has been claimed.
        """
        available = await self.balances.get_balance(source_id, session=session) + credit_back
        if amount_cents > available:
            raise InsufficientFundsError(
                f"Insufficient funds: available {available}, requested {amount_cents}",
                available_cents=available,
                requested_cents=amount_cents,
            )

    async def _load_active(self, actor: Actor, transaction_id: str, session: Any = None) -> Transaction:
        tx = await self.store.get_transaction(transaction_id, session=session)
        if tx is None or tx.company_id != actor.company_id or not tx.is_active:
            raise NotFoundError("Transaction not found")
        return tx

    async def _pair_sibling(self, tx: Transaction, session: Any = None) -> Transaction:
        """Other leg of an advance pair. Missing or deleted siblings are a conflict."""
        legs = await self.store.find_transactions(
            TransactionQuery(advance_pair_id=tx.advance_pair_id, include_deleted=True),
            session=session,
        )
        siblings = [leg for leg in legs if leg.id != tx.id]
        if len(siblings) != 1 or not siblings[0].is_active:
            raise ConflictError("Advance pair is incomplete; the linked leg is missing or deleted")
        return siblings[0]

    @staticmethod
    def _require_author(actor: Actor, tx: Transaction) -> None:
        if actor.role != Role.OWNER and tx.created_by_id != actor.user_id:
            raise ForbiddenError("Only the owner or the author can change this transaction")

    # ----- create -----

    async def create_transaction(self, actor: Actor, data: TransactionCreate) -> Transaction:
        if data.amount_cents <= 0:
            raise ValidationError("Amount must be a positive number of cents")
        if data.type == TransactionType.ADVANCE:
            raise ValidationError("Advances are issued through the advance endpoint")

        category = await load_category(self.store, actor.company_id, data.category_id)
        if not category.allows(data.type):
            raise ValidationError(f"Category '{category.name}' cannot be used for {data.type.value}")

        source = await load_money_source(self.store, actor.company_id, data.money_source_id)
        require_spend(actor, source)

        destination = None
        if data.type == TransactionType.INTERNAL:
            if not data.to_money_source_id:
                raise ValidationError("Internal transfer requires a destination source")
            if data.to_money_source_id == data.money_source_id:
                raise ValidationError("Source and destination must differ")
            destination = await load_money_source(self.store, actor.company_id, data.to_money_source_id)
            require_view(actor, destination)
        elif data.to_money_source_id:
            raise ValidationError("Only internal transfers have a destination source")

        if data.type == TransactionType.PAYOUT:
            if not data.payout_user_id:
                raise ValidationError("Payout requires a recipient user")
            await load_user(self.store, actor.company_id, data.payout_user_id)
        elif data.payout_user_id:
            raise ValidationError("Only payouts have a recipient user")

        await load_project(self.store, actor.company_id, data.project_id)

        tx = Transaction(
            company_id=actor.company_id,
            type=data.type,
            amount_cents=data.amount_cents,
            date=ensure_aware(data.date) if data.date else datetime.now(timezone.utc),
            money_source_id=source.id,
            to_money_source_id=destination.id if destination else None,
            category_id=category.id,
            project_id=data.project_id,
            payout_user_id=data.payout_user_id,
            comment=data.comment,
            receipt_status=data.receipt_status,
            receipt_url=data.receipt_url,
            created_by_id=actor.user_id,
        )

        async with self.locks.hold([tx.money_source_id, tx.to_money_source_id]):
            async with self.store.unit_of_work() as session:
                if tx.type == TransactionType.INTERNAL:
                    await self.store.claim_money_sources([tx.money_source_id], session)
                    await self._require_funds(tx.money_source_id, tx.amount_cents, session=session)
                await self.store.insert_transactions([tx], session=session)

        logger.info(
            "Transaction %s created: %s %d cents on %s by %s",
            tx.id, tx.type.value, tx.amount_cents, tx.money_source_id, actor.user_id,
        )
        await self._publish(EventType.TRANSACTION_CREATED, actor, tx)
        return tx

    # ----- update -----

    async def _validate_changes(self, actor: Actor, tx: Transaction, changes: Dict[str, Any]) -> None:
        if "amount_cents" in changes and changes["amount_cents"] <= 0:
            raise ValidationError("Amount must be a positive number of cents")
        if "category_id" in changes:
            category = await load_category(self.store, actor.company_id, changes["category_id"])
            if not category.allows(tx.type):
                raise ValidationError(f"Category '{category.name}' cannot be used for {tx.type.value}")
        if changes.get("project_id") is not None:
            await load_project(self.store, actor.company_id, changes["project_id"])
        if "money_source_id" in changes:
            if tx.is_advance_pair:
                raise ConflictError("The source of an advance leg cannot be changed")
            new_source = await load_money_source(self.store, actor.company_id, changes["money_source_id"])
            require_spend(actor, new_source)
            if tx.type == TransactionType.INTERNAL and new_source.id == tx.to_money_source_id:
                raise ValidationError("Source and destination must differ")

    @staticmethod
    def _requested_changes(tx: Transaction, data: TransactionUpdate) -> Dict[str, Any]:
        """Fields the client sent that differ from the stored row."""
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if key in EDITABLE_FIELDS and (value is not None or key in NULLABLE_FIELDS)
        }
        if "date" in changes:
            changes["date"] = ensure_aware(changes["date"])
        return {key: value for key, value in changes.items() if getattr(tx, key) != value}

    async def update_transaction(self, actor: Actor, transaction_id: str, data: TransactionUpdate) -> Transaction:
        seen = await self._load_active(actor, transaction_id)
        self._require_author(actor, seen)
        if not self._requested_changes(seen, data):
            return seen

        # Lock keys come from the first read. Everything below works on the
        # row read again under the locks and inside the unit of work.
        lock_keys = [seen.money_source_id, seen.to_money_source_id, data.money_source_id]
        claims = [seen.money_source_id, data.money_source_id]
        if seen.is_advance_pair:
            seen_sibling = await self._pair_sibling(seen)
            lock_keys += [seen_sibling.money_source_id, seen_sibling.to_money_source_id]
            claims.append(seen_sibling.money_source_id)
        needs_claim = seen.type == TransactionType.INTERNAL or seen.is_advance_pair

        async with self.locks.hold(lock_keys):
            async with self.store.unit_of_work() as session:
                if needs_claim:
                    await self.store.claim_money_sources([key for key in claims if key], session)
                tx = await self._load_active(actor, transaction_id, session=session)
                if (tx.money_source_id, tx.to_money_source_id) != (seen.money_source_id, seen.to_money_source_id):
                    raise ConflictError("Transaction was moved to another source meanwhile, retry the operation")
                changes = self._requested_changes(tx, data)
                if not changes:
                    return tx

                if tx.type != TransactionType.ADVANCE:
                    current = await load_money_source(
                        self.store, actor.company_id, tx.money_source_id, active_only=False
                    )
                    require_spend(actor, current)
                await self._validate_changes(actor, tx, changes)

                sibling = await self._pair_sibling(tx, session=session) if tx.is_advance_pair else None
                pair_changes = {k: v for k, v in changes.items() if k in PAIR_SHARED_FIELDS}

                debited = changes.get("money_source_id", tx.money_source_id)
                new_amount = changes.get("amount_cents", tx.amount_cents)
                if tx.type == TransactionType.INTERNAL and (
                    debited != tx.money_source_id or new_amount > tx.amount_cents
                ):
                    credit_back = tx.amount_cents if debited == tx.money_source_id else 0
                    await self._require_funds(debited, new_amount, credit_back=credit_back, session=session)
                if sibling is not None and new_amount > tx.amount_cents:
                    issue_leg = tx if tx.advance_leg == AdvanceLeg.ISSUE else sibling
                    await self._require_funds(
                        issue_leg.money_source_id, new_amount, credit_back=tx.amount_cents, session=session
                    )

                updated = await self.store.update_transaction(tx.id, changes, session=session)
                if updated is None:
                    raise NotFoundError("Transaction not found")
                if sibling is not None and pair_changes:
                    linked = await self.store.update_transaction(sibling.id, pair_changes, session=session)
                    if linked is None:
                        raise ConflictError("Advance pair is incomplete; the linked leg is missing or deleted")

        logger.info("Transaction %s updated by %s: %s", tx.id, actor.user_id, sorted(changes))
        await self._publish(EventType.TRANSACTION_UPDATED, actor, updated, changed=sorted(changes))
        return updated

    # ----- delete -----

    async def soft_delete_transaction(self, actor: Actor, transaction_id: str) -> None:
        tx = await self.store.get_transaction(transaction_id)
        if tx is None or tx.company_id != actor.company_id:
            raise NotFoundError("Transaction not found")
        self._require_author(actor, tx)
        if not tx.is_active:
            return

        if tx.type != TransactionType.ADVANCE:
            source = await load_money_source(self.store, actor.company_id, tx.money_source_id, active_only=False)
            require_spend(actor, source)

        ids = [tx.id]
        lock_keys = [tx.money_source_id, tx.to_money_source_id]
        if tx.is_advance_pair:
            legs = await self.store.find_transactions(TransactionQuery(advance_pair_id=tx.advance_pair_id))
            for leg in legs:
                if leg.id != tx.id:
                    ids.append(leg.id)
                    lock_keys += [leg.money_source_id, leg.to_money_source_id]

        async with self.locks.hold(lock_keys):
            async with self.store.unit_of_work() as session:
                changed = await self.store.soft_delete_transactions(
                    ids,
                    deleted_at=datetime.now(timezone.utc),
                    deleted_by_id=actor.user_id,
                    session=session,
                )

        if changed:
            logger.info("Transaction %s deleted by %s (%d rows)", tx.id, actor.user_id, changed)
            await self._publish(EventType.TRANSACTION_DELETED, actor, tx)

    # ----- reads -----

    async def get_transaction(self, actor: Actor, transaction_id: str) -> Transaction:
        tx = await self.store.get_transaction(transaction_id)
        if tx is None or tx.company_id != actor.company_id:
            raise NotFoundError("Transaction not found")
        if not actor.is_manager:
            visible = [tx.money_source_id, tx.to_money_source_id]
            for source_id in filter(None, visible):
                source = await self.store.get_money_source(source_id)
                if source and check_money_source_access(actor, source).can_view:
                    return tx
            raise ForbiddenError("No access to this transaction")
        return tx

    async def list_transactions(self, actor: Actor, filters: TransactionFilter) -> Tuple[List[Transaction], int]:
        """Newest first page of the transactions the actor can see, with the total count."""
        touching = None
        if filters.money_source_id:
            source = await load_money_source(self.store, actor.company_id, filters.money_source_id, active_only=False)
            require_view(actor, source)
            touching = [source.id]
        elif not actor.is_manager:
            sources = await self.store.list_money_sources(actor.company_id, active_only=False)
            touching = [s.id for s in sources if check_money_source_access(actor, s).can_view]

        query = TransactionQuery(
            company_id=actor.company_id,
            touching_source_ids=touching,
            types=[filters.type] if filters.type else None,
            category_id=filters.category_id,
            project_id=filters.project_id,
            created_by_id=filters.created_by_id,
            receipt_status=filters.receipt_status,
            date_from=ensure_aware(filters.date_from) if filters.date_from else None,
            date_to=ensure_aware(filters.date_to) if filters.date_to else None,
            include_deleted=filters.include_deleted,
            newest_first=True,
            skip=filters.skip,
            limit=filters.limit,
        )
        items = await self.store.find_transactions(query)
        total = await self.store.count_transactions(query.model_copy(update={"skip": 0, "limit": None}))
        return items, total

    async def get_project_transactions_with_running_balance(
        self, actor: Actor, project_id: str
    ) -> List[TransactionWithBalance]:
        """Project ledger in date order. INCOME adds, EXPENSE subtracts, the rest carry the balance."""
        await load_project(self.store, actor.company_id, project_id)
        rows = await self.store.find_transactions(
            TransactionQuery(company_id=actor.company_id, project_id=project_id)
        )
        running = 0
        result = []
        for tx in rows:
            running += PROJECT_SIGN.get(tx.type, 0) * tx.amount_cents
            result.append(TransactionWithBalance(
                **tx.model_dump(by_alias=False),
                running_balance_cents=running,
            ))
        return result

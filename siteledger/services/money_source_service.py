"""
Money source management.

Cash boxes and accounts are created, renamed, shared and archived here.
Advance accounts are provisioned by the advance ledger only, and at most one
source per company carries the company-main flag.
"""

import logging
from typing import Any, Dict, List, Optional

from siteledger.core.errors import ForbiddenError, ValidationError
from siteledger.core.events import DomainEvent, EventBus, EventType
from siteledger.core.locks import KeyedLock
from siteledger.models.money_source import MoneySource, SourceAccess
from siteledger.models.user import Actor, Role
from siteledger.repositories.interface import LedgerStore
from siteledger.schemas.money_source import (
    MoneySourceCreate,
    MoneySourceUpdate,
    MoneySourceWithBalance,
    ShareRequest,
)
from siteledger.services.access import check_money_source_access, require_view
from siteledger.services.balance_service import BalanceCalculator
from siteledger.services.lookups import load_money_source, load_user

logger = logging.getLogger(__name__)


def company_main_key(company_id: str) -> str:
    return f"company-main:{company_id}"


class MoneySourceService:
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

    async def _publish(self, event_type: str, actor: Actor, source: MoneySource, **payload: Any) -> None:
        await self.bus.publish(DomainEvent(
            event_type=event_type,
            company_id=source.company_id,
            entity_id=source.id,
            actor_id=actor.user_id,
            payload={"owner_id": source.owner_id, "is_advance": source.is_advance, **payload},
        ))

    @staticmethod
    def _require_manage(actor: Actor, source: MoneySource) -> None:
        """Managers and the source's owner may rename and share it."""
        require_view(actor, source)
        if not actor.is_manager and source.owner_id != actor.user_id:
            raise ForbiddenError("Only the owner of this money source can manage it")

    async def _unflag_company_main(self, company_id: str, keep_id: str, session: Any) -> None:
        for other in await self.store.list_money_sources(company_id, active_only=False):
            if other.is_company_main and other.id != keep_id:
                await self.store.update_money_source(other.id, {"is_company_main": False}, session=session)

    # ----- reads -----

    async def list_money_sources(self, actor: Actor, include_inactive: bool = False) -> List[MoneySourceWithBalance]:
        """Sources the actor can see with live balances, company main first."""
        sources = await self.store.list_money_sources(actor.company_id, active_only=not include_inactive)
        visible = [s for s in sources if check_money_source_access(actor, s).can_view]
        balances = await self.balances.get_balances([s.id for s in visible])
        visible.sort(key=lambda s: (not s.is_company_main, s.name.lower()))
        return [MoneySourceWithBalance.build(s, balances[s.id]) for s in visible]

    async def get_money_source(self, actor: Actor, money_source_id: str) -> MoneySourceWithBalance:
        source = await load_money_source(self.store, actor.company_id, money_source_id, active_only=False)
        require_view(actor, source)
        return MoneySourceWithBalance.build(source, await self.balances.get_balance(source.id))

    # ----- writes -----

    async def create_money_source(self, actor: Actor, data: MoneySourceCreate) -> MoneySourceWithBalance:
        if data.is_advance:
            raise ValidationError("Advance accounts are created by issuing an advance")
        if actor.role == Role.VIEWER:
            raise ForbiddenError("Viewers cannot create money sources")
        if data.is_company_main and actor.role != Role.OWNER:
            raise ForbiddenError("Only the owner can set the company main source")

        source = MoneySource(
            company_id=actor.company_id,
            owner_id=actor.user_id,
            name=data.name,
            description=data.description,
            is_company_main=data.is_company_main,
        )
        async with self.locks.hold([company_main_key(actor.company_id) if source.is_company_main else None]):
            async with self.store.unit_of_work() as session:
                if source.is_company_main:
                    await self._unflag_company_main(actor.company_id, source.id, session)
                await self.store.insert_money_source(source, session=session)

        logger.info("Money source %s '%s' created by %s", source.id, source.name, actor.user_id)
        await self._publish(EventType.MONEY_SOURCE_CREATED, actor, source)
        return MoneySourceWithBalance.build(source, 0)

    async def update_money_source(
        self, actor: Actor, money_source_id: str, data: MoneySourceUpdate
    ) -> MoneySourceWithBalance:
        source = await load_money_source(self.store, actor.company_id, money_source_id)
        self._require_manage(actor, source)
        changes: Dict[str, Any] = {
            key: value for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key == "description"
        }
        if "is_company_main" in changes:
            if actor.role != Role.OWNER:
                raise ForbiddenError("Only the owner can change the company main source")
            if source.is_advance and changes["is_company_main"]:
                raise ValidationError("An advance account cannot be the company main source")
        changes = {key: value for key, value in changes.items() if getattr(source, key) != value}
        if not changes:
            return await self.get_money_source(actor, source.id)

        promote = changes.get("is_company_main") is True
        async with self.locks.hold([source.id, company_main_key(actor.company_id) if promote else None]):
            async with self.store.unit_of_work() as session:
                if promote:
                    await self._unflag_company_main(actor.company_id, source.id, session)
                updated = await self.store.update_money_source(source.id, changes, session=session)

        logger.info("Money source %s updated by %s: %s", source.id, actor.user_id, sorted(changes))
        await self._publish(EventType.MONEY_SOURCE_UPDATED, actor, updated, changed=sorted(changes))
        return MoneySourceWithBalance.build(updated, await self.balances.get_balance(updated.id))

    async def deactivate_money_source(self, actor: Actor, money_source_id: str) -> None:
        """Archive a source. Archived sources keep their history but take no new rows."""
        if actor.role != Role.OWNER:
            raise ForbiddenError("Only the owner can deactivate money sources")
        source = await load_money_source(self.store, actor.company_id, money_source_id, active_only=False)
        if not source.is_active:
            return
        if source.is_company_main:
            raise ForbiddenError("The company main source cannot be deactivated")
        if source.is_advance:
            raise ValidationError("Advance accounts are closed by returning their balance")

        async with self.locks.hold([source.id]):
            async with self.store.unit_of_work() as session:
                await self.store.claim_money_sources([source.id], session)
                balance = await self.balances.get_balance(source.id, session=session)
                if balance != 0:
                    raise ValidationError(f"Move the remaining balance of {balance} cents before deactivating")
                updated = await self.store.update_money_source(source.id, {"is_active": False}, session=session)

        logger.info("Money source %s deactivated by %s", source.id, actor.user_id)
        await self._publish(EventType.MONEY_SOURCE_UPDATED, actor, updated, changed=["is_active"])

    async def share_money_source(self, actor: Actor, money_source_id: str, data: ShareRequest) -> MoneySourceWithBalance:
        """Grant or replace a user's access on the source."""
        source = await load_money_source(self.store, actor.company_id, money_source_id)
        self._require_manage(actor, source)
        if source.is_advance:
            raise ValidationError("Advance accounts cannot be shared")
        grantee = await load_user(self.store, actor.company_id, data.user_id)
        if grantee.id == source.owner_id:
            raise ValidationError("The owner already has full access")

        async with self.locks.hold([source.id]):
            current = await load_money_source(self.store, actor.company_id, money_source_id)
            grants = [g for g in current.shared_with if g.user_id != grantee.id]
            grants.append(SourceAccess(user_id=grantee.id, can_view=data.can_view, can_spend=data.can_spend))
            async with self.store.unit_of_work() as session:
                updated = await self.store.update_money_source(
                    source.id, {"shared_with": grants}, session=session
                )

        logger.info(
            "Money source %s shared with %s by %s (view=%s, spend=%s)",
            source.id, grantee.id, actor.user_id, data.can_view, data.can_spend,
        )
        await self._publish(EventType.MONEY_SOURCE_UPDATED, actor, updated, changed=["shared_with"])
        return MoneySourceWithBalance.build(updated, await self.balances.get_balance(updated.id))

    async def unshare_money_source(self, actor: Actor, money_source_id: str, user_id: str) -> None:
        """Drop a user's grant. Removing a grant that does not exist is a no-op."""
        source = await load_money_source(self.store, actor.company_id, money_source_id, active_only=False)
        self._require_manage(actor, source)

        async with self.locks.hold([source.id]):
            current = await load_money_source(self.store, actor.company_id, money_source_id, active_only=False)
            grants = [g for g in current.shared_with if g.user_id != user_id]
            if len(grants) == len(current.shared_with):
                return
            async with self.store.unit_of_work() as session:
                updated = await self.store.update_money_source(
                    source.id, {"shared_with": grants}, session=session
                )

        logger.info("Money source %s unshared from %s by %s", source.id, user_id, actor.user_id)
        await self._publish(EventType.MONEY_SOURCE_UPDATED, actor, updated, changed=["shared_with"])

from typing import Callable

from fastapi import Depends, Request

from siteledger.core.auth import get_current_actor
from siteledger.core.errors import ForbiddenError
from siteledger.core.events import EventBus
from siteledger.core.locks import KeyedLock
from siteledger.db.session import get_store
from siteledger.models.user import Actor, Role
from siteledger.repositories.interface import LedgerStore
from siteledger.services.advance_service import AdvanceService
from siteledger.services.analytics_service import AnalyticsService
from siteledger.services.balance_service import BalanceCalculator
from siteledger.services.category_service import CategoryService
from siteledger.services.equity_service import EquityService
from siteledger.services.money_source_service import MoneySourceService
from siteledger.services.transaction_service import TransactionService

# Roles allowed to read company-wide reports
REPORT_ROLES = (Role.OWNER, Role.PARTNER, Role.ACCOUNTANT)


def get_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_locks(request: Request) -> KeyedLock:
    return request.app.state.locks


def get_transaction_service(
    store: LedgerStore = Depends(get_store),
    bus: EventBus = Depends(get_bus),
    locks: KeyedLock = Depends(get_locks),
) -> TransactionService:
    return TransactionService(store, bus, locks)


def get_advance_service(
    store: LedgerStore = Depends(get_store),
    bus: EventBus = Depends(get_bus),
    locks: KeyedLock = Depends(get_locks),
) -> AdvanceService:
    return AdvanceService(store, bus, locks)


def get_money_source_service(
    store: LedgerStore = Depends(get_store),
    bus: EventBus = Depends(get_bus),
    locks: KeyedLock = Depends(get_locks),
) -> MoneySourceService:
    return MoneySourceService(store, bus, locks)


def get_balance_calculator(store: LedgerStore = Depends(get_store)) -> BalanceCalculator:
    return BalanceCalculator(store)


def get_category_service(store: LedgerStore = Depends(get_store)) -> CategoryService:
    return CategoryService(store)


def get_equity_service(store: LedgerStore = Depends(get_store)) -> EquityService:
    return EquityService(store)


def get_analytics_service(store: LedgerStore = Depends(get_store)) -> AnalyticsService:
    return AnalyticsService(store)


def require_roles(*roles: Role) -> Callable:
    """Dependency that admits only actors holding one of the roles."""

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise ForbiddenError("Your role cannot access this resource")
        return actor

    return dependency

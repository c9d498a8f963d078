from typing import List

from fastapi import APIRouter, Depends, Query, Response, status

from siteledger.api.deps import get_balance_calculator, get_money_source_service
from siteledger.core.auth import get_current_actor
from siteledger.db.session import get_store
from siteledger.models.user import Actor
from siteledger.repositories.interface import LedgerStore
from siteledger.schemas.money_source import (
    BalanceResponse,
    MoneySourceCreate,
    MoneySourceUpdate,
    MoneySourceWithBalance,
    ShareRequest,
)
from siteledger.services.access import require_view
from siteledger.services.balance_service import BalanceCalculator
from siteledger.services.lookups import load_money_source
from siteledger.services.money_source_service import MoneySourceService

router = APIRouter(prefix="/money-sources", tags=["money-sources"])


@router.get("", response_model=List[MoneySourceWithBalance])
async def list_money_sources(
    include_inactive: bool = Query(False),
    actor: Actor = Depends(get_current_actor),
    service: MoneySourceService = Depends(get_money_source_service)
):
    """Sources visible to the current user, with live balances."""
    return await service.list_money_sources(actor, include_inactive=include_inactive)


@router.post("", response_model=MoneySourceWithBalance, status_code=status.HTTP_201_CREATED)
async def create_money_source(
    data: MoneySourceCreate,
    actor: Actor = Depends(get_current_actor),
    service: MoneySourceService = Depends(get_money_source_service)
):
    return await service.create_money_source(actor, data)


@router.get("/{money_source_id}", response_model=MoneySourceWithBalance)
async def get_money_source(
    money_source_id: str,
    actor: Actor = Depends(get_current_actor),
    service: MoneySourceService = Depends(get_money_source_service)
):
    return await service.get_money_source(actor, money_source_id)


@router.patch("/{money_source_id}", response_model=MoneySourceWithBalance)
async def update_money_source(
    money_source_id: str,
    data: MoneySourceUpdate,
    actor: Actor = Depends(get_current_actor),
    service: MoneySourceService = Depends(get_money_source_service)
):
    """Rename, describe or promote a source to company main."""
    return await service.update_money_source(actor, money_source_id, data)


@router.delete("/{money_source_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_money_source(
    money_source_id: str,
    actor: Actor = Depends(get_current_actor),
    service: MoneySourceService = Depends(get_money_source_service)
):
    """Archive a source with a zero balance. History is kept."""
    await service.deactivate_money_source(actor, money_source_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{money_source_id}/share", response_model=MoneySourceWithBalance)
async def share_money_source(
    money_source_id: str,
    data: ShareRequest,
    actor: Actor = Depends(get_current_actor),
    service: MoneySourceService = Depends(get_money_source_service)
):
    return await service.share_money_source(actor, money_source_id, data)


@router.delete("/{money_source_id}/share/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unshare_money_source(
    money_source_id: str,
    user_id: str,
    actor: Actor = Depends(get_current_actor),
    service: MoneySourceService = Depends(get_money_source_service)
):
    await service.unshare_money_source(actor, money_source_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{money_source_id}/balance", response_model=BalanceResponse)
async def get_balance(
    money_source_id: str,
    actor: Actor = Depends(get_current_actor),
    store: LedgerStore = Depends(get_store),
    calculator: BalanceCalculator = Depends(get_balance_calculator)
):
    """Live balance derived from the source's transaction history."""
    source = await load_money_source(store, actor.company_id, money_source_id, active_only=False)
    require_view(actor, source)
    balance = await calculator.get_balance(source.id)
    return BalanceResponse(money_source_id=source.id, balance_cents=balance)

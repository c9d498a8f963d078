from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from siteledger.api.deps import get_advance_service
from siteledger.core.auth import get_current_actor
from siteledger.models.user import Actor
from siteledger.schemas.advance import (
    AdvanceBalance,
    AdvanceHistoryFilter,
    AdvanceHistoryResponse,
    AdvanceIssue,
    AdvanceIssueResponse,
    AdvanceReturn,
    AdvanceReturnResponse,
)
from siteledger.schemas.transaction import TransactionResponse
from siteledger.services.advance_service import AdvanceService

router = APIRouter(prefix="/advances", tags=["advances"])


@router.post("", response_model=AdvanceIssueResponse, status_code=status.HTTP_201_CREATED)
async def issue_advance(
    data: AdvanceIssue,
    actor: Actor = Depends(get_current_actor),
    service: AdvanceService = Depends(get_advance_service)
):
    """Hand cash to an employee. Creates their advance account on first use."""
    result = await service.issue_advance(actor, data)
    return AdvanceIssueResponse.from_result(result)


@router.post("/return", response_model=AdvanceReturnResponse)
async def return_advance(
    data: AdvanceReturn,
    actor: Actor = Depends(get_current_actor),
    service: AdvanceService = Depends(get_advance_service)
):
    """Return part of an advance, or all of it when amount_cents is omitted."""
    result = await service.return_advance(actor, data)
    return AdvanceReturnResponse(
        transaction=TransactionResponse.from_model(result.transaction),
        remaining_balance=result.remaining_balance,
    )


@router.get("", response_model=AdvanceHistoryResponse)
async def advance_history(
    recipient_user_id: Optional[str] = Query(None),
    issued_by_user_id: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
    service: AdvanceService = Depends(get_advance_service)
):
    """Issued advances. Employees only see their own."""
    if not actor.is_manager:
        recipient_user_id = actor.user_id
    filters = AdvanceHistoryFilter(
        recipient_user_id=recipient_user_id,
        issued_by_user_id=issued_by_user_id,
        project_id=project_id,
        date_from=date_from,
        date_to=date_to,
        skip=skip,
        limit=limit,
    )
    items, total = await service.advance_history(actor.company_id, filters)
    return AdvanceHistoryResponse(items=[TransactionResponse.from_model(tx) for tx in items], total=total)


@router.get("/balances", response_model=List[AdvanceBalance])
async def advance_balances(
    actor: Actor = Depends(get_current_actor),
    service: AdvanceService = Depends(get_advance_service)
):
    user_id = None if actor.is_manager else actor.user_id
    return await service.list_advance_balances(actor.company_id, user_id=user_id)

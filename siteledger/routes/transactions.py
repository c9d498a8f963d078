from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from siteledger.api.deps import get_transaction_service
from siteledger.core.auth import get_current_actor
from siteledger.models.transaction import ReceiptStatus, TransactionType
from siteledger.models.user import Actor
from siteledger.schemas.transaction import (
    TransactionCreate,
    TransactionFilter,
    TransactionListResponse,
    TransactionResponse,
    TransactionUpdate,
    TransactionWithBalance,
)
from siteledger.services.transaction_service import TransactionService

router = APIRouter(tags=["transactions"])


@router.post("/transactions", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def create_transaction(
    data: TransactionCreate,
    actor: Actor = Depends(get_current_actor),
    service: TransactionService = Depends(get_transaction_service)
):
    """Record an INCOME, EXPENSE, PAYOUT or INTERNAL transaction."""
    tx = await service.create_transaction(actor, data)
    return TransactionResponse.from_model(tx)


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    type: Optional[TransactionType] = Query(None),
    money_source_id: Optional[str] = Query(None),
    category_id: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    created_by_id: Optional[str] = Query(None),
    receipt_status: Optional[ReceiptStatus] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    include_deleted: bool = Query(False),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
    service: TransactionService = Depends(get_transaction_service)
):
    """List transactions on the sources the current user can see, newest first."""
    filters = TransactionFilter(
        type=type,
        money_source_id=money_source_id,
        category_id=category_id,
        project_id=project_id,
        created_by_id=created_by_id,
        receipt_status=receipt_status,
        date_from=date_from,
        date_to=date_to,
        include_deleted=include_deleted,
        skip=skip,
        limit=limit,
    )
    items, total = await service.list_transactions(actor, filters)
    return TransactionListResponse(
        items=[TransactionResponse.from_model(tx) for tx in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: str,
    actor: Actor = Depends(get_current_actor),
    service: TransactionService = Depends(get_transaction_service)
):
    tx = await service.get_transaction(actor, transaction_id)
    return TransactionResponse.from_model(tx)


@router.patch("/transactions/{transaction_id}", response_model=TransactionResponse)
async def update_transaction(
    transaction_id: str,
    data: TransactionUpdate,
    actor: Actor = Depends(get_current_actor),
    service: TransactionService = Depends(get_transaction_service)
):
    """Edit the editable fields of a transaction. Advance pairs change together."""
    tx = await service.update_transaction(actor, transaction_id, data)
    return TransactionResponse.from_model(tx)


@router.delete("/transactions/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_transaction(
    transaction_id: str,
    actor: Actor = Depends(get_current_actor),
    service: TransactionService = Depends(get_transaction_service)
):
    """Soft delete. Deleting an already deleted transaction is a no-op."""
    await service.soft_delete_transaction(actor, transaction_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/projects/{project_id}/transactions", response_model=List[TransactionWithBalance])
async def project_transactions(
    project_id: str,
    actor: Actor = Depends(get_current_actor),
    service: TransactionService = Depends(get_transaction_service)
):
    """Project ledger in date order with the running project balance."""
    return await service.get_project_transactions_with_running_balance(actor, project_id)

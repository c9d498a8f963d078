from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from siteledger.api.deps import get_category_service
from siteledger.core.auth import get_current_actor
from siteledger.models.transaction import TransactionType
from siteledger.models.user import Actor
from siteledger.schemas.category import CategoryCatalog, CategoryGroupCreate, CategoryGroupView
from siteledger.services.category_service import CategoryService

router = APIRouter(tags=["categories"])


@router.get("/categories", response_model=CategoryCatalog)
async def list_categories(
    type: Optional[TransactionType] = Query(None, description="Only categories allowed for this type"),
    actor: Actor = Depends(get_current_actor),
    service: CategoryService = Depends(get_category_service)
):
    return await service.get_catalog(actor.company_id, type)


@router.post("/category-groups", response_model=CategoryGroupView, status_code=status.HTTP_201_CREATED)
async def create_category_group(
    data: CategoryGroupCreate,
    actor: Actor = Depends(get_current_actor),
    service: CategoryService = Depends(get_category_service)
):
    group = await service.create_group(actor, data)
    return CategoryGroupView(id=group.id, name=group.name)

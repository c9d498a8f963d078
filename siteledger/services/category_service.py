"""Category catalog: system and company categories arranged by group."""

import logging
from typing import Optional

from siteledger.core.errors import ForbiddenError
from siteledger.models.category import CategoryGroup
from siteledger.models.transaction import TransactionType
from siteledger.models.user import Actor
from siteledger.repositories.interface import LedgerStore
from siteledger.schemas.category import (
    CategoryCatalog,
    CategoryGroupCreate,
    CategoryGroupView,
    CategoryResponse,
)

logger = logging.getLogger(__name__)


class CategoryService:
    def __init__(self, store: LedgerStore):
        self.store = store

    async def get_catalog(self, company_id: str, tx_type: Optional[TransactionType] = None) -> CategoryCatalog:
        """Groups in their sort order, each with its categories; a category whose
        group is unknown to the company is listed as ungrouped."""
        categories = await self.store.list_categories(company_id)
        if tx_type is not None:
            categories = [c for c in categories if c.allows(tx_type)]
        categories.sort(key=lambda c: (c.sort_order, c.name))

        groups = await self.store.list_category_groups(company_id)
        views = {g.id: CategoryGroupView(id=g.id, name=g.name) for g in groups}
        ungrouped = []
        for category in categories:
            view = views.get(category.group_id) if category.group_id else None
            if view is None:
                ungrouped.append(CategoryResponse.from_model(category))
            else:
                view.categories.append(CategoryResponse.from_model(category))

        return CategoryCatalog(
            groups=[views[g.id] for g in groups if views[g.id].categories],
            ungrouped=ungrouped,
        )

    async def create_group(self, actor: Actor, data: CategoryGroupCreate) -> CategoryGroup:
        if not actor.is_manager:
            raise ForbiddenError("Only the owner or an accountant can manage category groups")
        group = CategoryGroup(company_id=actor.company_id, name=data.name, sort_order=data.sort_order)
        await self.store.insert_category_group(group)
        logger.info("Category group %s '%s' created by %s", group.id, group.name, actor.user_id)
        return group

"""Company-scoped entity loaders shared by the write-side services.

An entity that is missing or belongs to another company is reported the same
way (NotFoundError) so ids from other tenants are not disclosed.
"""

from typing import Optional

from siteledger.core.errors import NotFoundError
from siteledger.models.category import Category
from siteledger.models.company import Company
from siteledger.models.money_source import MoneySource
from siteledger.models.project import Project
from siteledger.models.user import User
from siteledger.repositories.interface import LedgerStore


async def load_company(store: LedgerStore, company_id: str) -> Company:
    company = await store.get_company(company_id)
    if company is None:
        raise NotFoundError("Company not found")
    return company


async def load_money_source(
    store: LedgerStore,
    company_id: str,
    money_source_id: str,
    active_only: bool = True,
) -> MoneySource:
    source = await store.get_money_source(money_source_id)
    if source is None or source.company_id != company_id:
        raise NotFoundError("Money source not found")
    if active_only and not source.is_active:
        raise NotFoundError("Money source is archived")
    return source


async def load_category(store: LedgerStore, company_id: str, category_id: str) -> Category:
    category = await store.get_category(category_id)
    if category is None or not category.visible_to(company_id):
        raise NotFoundError("Category not found")
    return category


async def load_project(store: LedgerStore, company_id: str, project_id: Optional[str]) -> Optional[Project]:
    if project_id is None:
        return None
    project = await store.get_project(project_id)
    if project is None or project.company_id != company_id:
        raise NotFoundError("Project not found")
    return project


async def load_user(store: LedgerStore, company_id: str, user_id: str) -> User:
    user = await store.get_user(user_id)
    if user is None or user.company_id != company_id:
        raise NotFoundError("User not found")
    return user

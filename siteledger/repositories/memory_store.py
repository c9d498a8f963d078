"""
In-memory Ledger Store.

Backs the service tests and local scripts. Units of work are serialized by a
single writer lock; a unit of work snapshots every table on entry and puts the
snapshot back if the block raises, so a failed multi-row write leaves nothing
behind.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from siteledger.models.category import Category, CategoryGroup
from siteledger.models.company import Company
from siteledger.models.money_source import MoneySource
from siteledger.models.project import Project
from siteledger.models.transaction import Transaction
from siteledger.models.user import Role, User
from siteledger.repositories.interface import LedgerStore, TransactionQuery

_TABLES = (
    "companies", "users", "projects", "money_sources", "source_versions",
    "category_groups", "categories", "transactions",
)


class InMemoryLedgerStore(LedgerStore):
    """Dict-backed store; models are copied in and out so callers never alias rows."""

    def __init__(self):
        self.companies: Dict[str, Company] = {}
        self.users: Dict[str, User] = {}
        self.projects: Dict[str, Project] = {}
        self.money_sources: Dict[str, MoneySource] = {}
        self.source_versions: Dict[str, int] = {}
        self.category_groups: Dict[str, CategoryGroup] = {}
        self.categories: Dict[str, Category] = {}
        self.transactions: Dict[str, Transaction] = {}
        self._writer = asyncio.Lock()
        self.commits = 0

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[Any]:
        async with self._writer:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
            try:
                yield self
            except BaseException:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                raise
            self.commits += 1

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    # ----- companies -----

    async def get_company(self, company_id: str) -> Optional[Company]:
        return self._copy(self.companies.get(company_id))

    async def insert_company(self, company: Company, session: Any = None) -> Company:
        self.companies[company.id] = self._copy(company)
        return company

    # ----- users -----

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._copy(self.users.get(user_id))

    async def list_users(
        self,
        company_id: str,
        roles: Optional[List[Role]] = None,
        active_only: bool = True,
    ) -> List[User]:
        result = []
        for user in self.users.values():
            if user.company_id != company_id:
                continue
            if roles is not None and user.role not in roles:
                continue
            if active_only and not user.is_active:
                continue
            result.append(self._copy(user))
        return sorted(result, key=lambda u: u.created_at)

    async def insert_user(self, user: User, session: Any = None) -> User:
        self.users[user.id] = self._copy(user)
        return user

    # ----- projects -----

    async def get_project(self, project_id: str) -> Optional[Project]:
        return self._copy(self.projects.get(project_id))

    async def list_projects(self, company_id: str, ids: Optional[List[str]] = None) -> List[Project]:
        return [
            self._copy(p) for p in self.projects.values()
            if p.company_id == company_id and (ids is None or p.id in ids)
        ]

    async def insert_project(self, project: Project, session: Any = None) -> Project:
        self.projects[project.id] = self._copy(project)
        return project

    # ----- money sources -----

    async def get_money_source(self, money_source_id: str) -> Optional[MoneySource]:
        return self._copy(self.money_sources.get(money_source_id))

    async def list_money_sources(
        self,
        company_id: str,
        owner_id: Optional[str] = None,
        is_advance: Optional[bool] = None,
        active_only: bool = True,
    ) -> List[MoneySource]:
        result = []
        for source in self.money_sources.values():
            if source.company_id != company_id:
                continue
            if owner_id is not None and source.owner_id != owner_id:
                continue
            if is_advance is not None and source.is_advance != is_advance:
                continue
            if active_only and not source.is_active:
                continue
            result.append(self._copy(source))
        return sorted(result, key=lambda s: s.created_at)

    async def insert_money_source(self, source: MoneySource, session: Any = None) -> MoneySource:
        self.money_sources[source.id] = self._copy(source)
        return source

    async def update_money_source(
        self,
        money_source_id: str,
        fields: Dict[str, Any],
        session: Any = None,
    ) -> Optional[MoneySource]:
        current = self.money_sources.get(money_source_id)
        if current is None:
            return None
        updated = current.model_copy(
            update={**fields, "updated_at": datetime.now(timezone.utc)},
            deep=True,
        )
        self.money_sources[money_source_id] = updated
        return self._copy(updated)

    async def claim_money_sources(self, money_source_ids: List[str], session: Any) -> None:
        # The writer lock already serializes units of work; the counter
        # mirrors the version bump the Mongo store makes.
        for source_id in money_source_ids:
            self.source_versions[source_id] = self.source_versions.get(source_id, 0) + 1

    # ----- categories -----

    async def get_category(self, category_id: str) -> Optional[Category]:
        return self._copy(self.categories.get(category_id))

    async def list_categories(self, company_id: str, ids: Optional[List[str]] = None) -> List[Category]:
        return [
            self._copy(c) for c in self.categories.values()
            if c.visible_to(company_id) and (ids is None or c.id in ids)
        ]

    async def find_system_category(self, system_key: str) -> Optional[Category]:
        for category in self.categories.values():
            if category.is_system and category.system_key == system_key:
                return self._copy(category)
        return None

    async def insert_category(self, category: Category, session: Any = None) -> Category:
        self.categories[category.id] = self._copy(category)
        return category

    async def list_category_groups(self, company_id: str) -> List[CategoryGroup]:
        groups = [self._copy(g) for g in self.category_groups.values() if g.visible_to(company_id)]
        return sorted(groups, key=lambda g: (g.sort_order, g.name))

    async def insert_category_group(self, group: CategoryGroup, session: Any = None) -> CategoryGroup:
        self.category_groups[group.id] = self._copy(group)
        return group

    # ----- transactions -----

    async def insert_transactions(self, transactions: List[Transaction], session: Any = None) -> List[Transaction]:
        for tx in transactions:
            self.transactions[tx.id] = self._copy(tx)
        return transactions

    async def get_transaction(self, transaction_id: str, session: Any = None) -> Optional[Transaction]:
        return self._copy(self.transactions.get(transaction_id))

    async def update_transaction(
        self,
        transaction_id: str,
        fields: Dict[str, Any],
        session: Any = None,
    ) -> Optional[Transaction]:
        current = self.transactions.get(transaction_id)
        if current is None or not current.is_active:
            return None
        updated = current.model_copy(
            update={**fields, "updated_at": datetime.now(timezone.utc)},
            deep=True,
        )
        self.transactions[transaction_id] = updated
        return self._copy(updated)

    async def soft_delete_transactions(
        self,
        transaction_ids: List[str],
        deleted_at: datetime,
        deleted_by_id: Optional[str],
        session: Any = None,
    ) -> int:
        changed = 0
        for tx_id in transaction_ids:
            current = self.transactions.get(tx_id)
            if current is None or not current.is_active:
                continue
            self.transactions[tx_id] = current.model_copy(update={
                "deleted_at": deleted_at,
                "deleted_by_id": deleted_by_id,
                "updated_at": deleted_at,
            })
            changed += 1
        return changed

    def _matches(self, tx: Transaction, query: TransactionQuery) -> bool:
        if not query.include_deleted and not tx.is_active:
            return False
        if query.company_id is not None and tx.company_id != query.company_id:
            return False
        if query.touching_source_ids is not None and not (
            tx.money_source_id in query.touching_source_ids
            or tx.to_money_source_id in query.touching_source_ids
        ):
            return False
        if query.money_source_ids is not None and tx.money_source_id not in query.money_source_ids:
            return False
        if query.types is not None and tx.type not in query.types:
            return False
        if query.category_id is not None and tx.category_id != query.category_id:
            return False
        if query.project_id is not None and tx.project_id != query.project_id:
            return False
        if query.created_by_id is not None and tx.created_by_id != query.created_by_id:
            return False
        if query.payout_user_id is not None and tx.payout_user_id != query.payout_user_id:
            return False
        if query.receipt_status is not None and tx.receipt_status != query.receipt_status:
            return False
        if query.advance_pair_id is not None and tx.advance_pair_id != query.advance_pair_id:
            return False
        if query.advance_leg is not None and tx.advance_leg != query.advance_leg:
            return False
        if query.date_from is not None and tx.date < query.date_from:
            return False
        if query.date_to is not None and tx.date > query.date_to:
            return False
        return True

    async def find_transactions(self, query: TransactionQuery, session: Any = None) -> List[Transaction]:
        rows = [tx for tx in self.transactions.values() if self._matches(tx, query)]
        rows.sort(key=lambda tx: (tx.date, tx.created_at), reverse=query.newest_first)
        rows = rows[query.skip:]
        if query.limit is not None:
            rows = rows[:query.limit]
        return [self._copy(tx) for tx in rows]

    async def count_transactions(self, query: TransactionQuery, session: Any = None) -> int:
        return sum(1 for tx in self.transactions.values() if self._matches(tx, query))

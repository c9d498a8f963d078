"""
Ledger Store interface.

The engine needs durable, queryable record storage with per-record soft
delete and atomic multi-record writes. Anything that implements this class
can back the services: MongoDB in production, the in-memory store in tests
and scripts.

Every write method takes an optional `session` obtained from
`unit_of_work()`. Writes made with a session become visible together or not
at all. Reads that feed a funds check also take the session, and run after
`claim_money_sources()` has claimed the debited sources, so two units of work
can never approve spending against the same balance at once.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from siteledger.models.category import Category, CategoryGroup
from siteledger.models.company import Company
from siteledger.models.money_source import MoneySource
from siteledger.models.project import Project
from siteledger.models.transaction import AdvanceLeg, ReceiptStatus, Transaction, TransactionType
from siteledger.models.user import Role, User


class TransactionQuery(BaseModel):
    """Filter for transaction reads.

    Deleted rows are excluded unless include_deleted is set. This is the one
    place the active-row predicate is decided for every read path.
    """
    company_id: Optional[str] = None
    touching_source_ids: Optional[List[str]] = None  # primary or destination side
    money_source_ids: Optional[List[str]] = None     # primary side only
    types: Optional[List[TransactionType]] = None
    category_id: Optional[str] = None
    project_id: Optional[str] = None
    created_by_id: Optional[str] = None
    payout_user_id: Optional[str] = None
    receipt_status: Optional[ReceiptStatus] = None
    advance_pair_id: Optional[str] = None
    advance_leg: Optional[AdvanceLeg] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    include_deleted: bool = False
    newest_first: bool = False
    skip: int = 0
    limit: Optional[int] = None


class LedgerStore(ABC):
    """Abstract record store used by every engine component."""

    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[Any]:
        """Atomic scope. Yields a session to pass to write methods."""

    # ----- companies -----

    @abstractmethod
    async def get_company(self, company_id: str) -> Optional[Company]:
        pass

    @abstractmethod
    async def insert_company(self, company: Company, session: Any = None) -> Company:
        pass

    # ----- users -----

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def list_users(
        self,
        company_id: str,
        roles: Optional[List[Role]] = None,
        active_only: bool = True,
    ) -> List[User]:
        pass

    @abstractmethod
    async def insert_user(self, user: User, session: Any = None) -> User:
        pass

    # ----- projects -----

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        pass

    @abstractmethod
    async def list_projects(self, company_id: str, ids: Optional[List[str]] = None) -> List[Project]:
        pass

    @abstractmethod
    async def insert_project(self, project: Project, session: Any = None) -> Project:
        pass

    # ----- money sources -----

    @abstractmethod
    async def get_money_source(self, money_source_id: str) -> Optional[MoneySource]:
        pass

    @abstractmethod
    async def list_money_sources(
        self,
        company_id: str,
        owner_id: Optional[str] = None,
        is_advance: Optional[bool] = None,
        active_only: bool = True,
    ) -> List[MoneySource]:
        pass

    @abstractmethod
    async def insert_money_source(self, source: MoneySource, session: Any = None) -> MoneySource:
        pass

    @abstractmethod
    async def update_money_source(
        self,
        money_source_id: str,
        fields: Dict[str, Any],
        session: Any = None,
    ) -> Optional[MoneySource]:
        """Set fields on a money source. Returns None when it does not exist."""

    @abstractmethod
    async def claim_money_sources(self, money_source_ids: List[str], session: Any) -> None:
        """Take a write claim on money sources inside a unit of work.

        Two units of work that claim the same source cannot both commit: the
        later one waits or fails with ConflictError.
        """

    # ----- categories -----

    @abstractmethod
    async def get_category(self, category_id: str) -> Optional[Category]:
        pass

    @abstractmethod
    async def list_categories(self, company_id: str, ids: Optional[List[str]] = None) -> List[Category]:
        """System categories plus the company's own."""

    @abstractmethod
    async def find_system_category(self, system_key: str) -> Optional[Category]:
        pass

    @abstractmethod
    async def insert_category(self, category: Category, session: Any = None) -> Category:
        pass

    @abstractmethod
    async def list_category_groups(self, company_id: str) -> List[CategoryGroup]:
        """System groups plus the company's own."""

    @abstractmethod
    async def insert_category_group(self, group: CategoryGroup, session: Any = None) -> CategoryGroup:
        pass

    # ----- transactions -----

    @abstractmethod
    async def insert_transactions(self, transactions: List[Transaction], session: Any = None) -> List[Transaction]:
        pass

    @abstractmethod
    async def get_transaction(self, transaction_id: str, session: Any = None) -> Optional[Transaction]:
        """Fetch by id, deleted or not."""

    @abstractmethod
    async def update_transaction(
        self,
        transaction_id: str,
        fields: Dict[str, Any],
        session: Any = None,
    ) -> Optional[Transaction]:
        """Set fields on an active row. Returns None when no active row matched."""

    @abstractmethod
    async def soft_delete_transactions(
        self,
        transaction_ids: List[str],
        deleted_at: datetime,
        deleted_by_id: Optional[str],
        session: Any = None,
    ) -> int:
        """Mark active rows deleted. Returns how many rows changed."""

    @abstractmethod
    async def find_transactions(self, query: TransactionQuery, session: Any = None) -> List[Transaction]:
        pass

    @abstractmethod
    async def count_transactions(self, query: TransactionQuery, session: Any = None) -> int:
        pass

"""
MongoDB Ledger Store (Motor).

Collections: companies, users, projects, money_sources, category_groups,
categories, transactions. Ids are stored as 24-hex strings in `_id` and in every
reference field.

Multi-document writes run inside a client session transaction, which needs
a replica set (a single-node replica set is enough for development). Funds
checks claim the debited money sources by bumping their `version` inside the
transaction; a second transaction touching the same source hits a write
conflict and surfaces as ConflictError instead of committing on a stale
balance.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from siteledger.core.errors import ConflictError
from siteledger.models.category import Category, CategoryGroup
from siteledger.models.company import Company
from siteledger.models.money_source import MoneySource
from siteledger.models.project import Project
from siteledger.models.transaction import Transaction
from siteledger.models.user import Role, User
from siteledger.repositories.interface import LedgerStore, TransactionQuery

logger = logging.getLogger(__name__)

# Shared predicate for "not soft-deleted"
ACTIVE_FILTER = {"deleted_at": None}


def to_bson_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Dump embedded models (e.g. money source grants) for a $set."""
    def dump(value: Any) -> Any:
        if isinstance(value, BaseModel):
            return value.model_dump()
        if isinstance(value, list):
            return [dump(item) for item in value]
        return value

    return {key: dump(value) for key, value in fields.items()}


def build_transaction_filter(query: TransactionQuery) -> Dict[str, Any]:
    """Translate a TransactionQuery into a Mongo filter document."""
    flt: Dict[str, Any] = {}
    if not query.include_deleted:
        flt.update(ACTIVE_FILTER)
    if query.company_id is not None:
        flt["company_id"] = query.company_id
    if query.touching_source_ids is not None:
        flt["$or"] = [
            {"money_source_id": {"$in": query.touching_source_ids}},
            {"to_money_source_id": {"$in": query.touching_source_ids}},
        ]
    if query.money_source_ids is not None:
        flt["money_source_id"] = {"$in": query.money_source_ids}
    if query.types is not None:
        flt["type"] = {"$in": [t.value for t in query.types]}
    for field in ("category_id", "project_id", "created_by_id", "payout_user_id", "advance_pair_id"):
        value = getattr(query, field)
        if value is not None:
            flt[field] = value
    if query.receipt_status is not None:
        flt["receipt_status"] = query.receipt_status.value
    if query.advance_leg is not None:
        flt["advance_leg"] = query.advance_leg.value
    if query.date_from is not None or query.date_to is not None:
        flt["date"] = {}
        if query.date_from is not None:
            flt["date"]["$gte"] = query.date_from
        if query.date_to is not None:
            flt["date"]["$lte"] = query.date_to
    return flt


class MongoLedgerStore(LedgerStore):
    """Ledger store backed by a Motor database."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.companies = db["companies"]
        self.users = db["users"]
        self.projects = db["projects"]
        self.money_sources = db["money_sources"]
        self.category_groups = db["category_groups"]
        self.categories = db["categories"]
        self.transactions = db["transactions"]

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[Any]:
        try:
            async with await self.db.client.start_session() as session:
                async with session.start_transaction():
                    yield session
        except DuplicateKeyError as exc:
            logger.info("Unit of work hit a duplicate key: %s", exc)
            raise ConflictError("A concurrent request created the same record, retry the operation") from exc
        except PyMongoError as exc:
            if exc.has_error_label("TransientTransactionError"):
                logger.info("Unit of work aborted by a concurrent write: %s", exc)
                raise ConflictError("A concurrent request changed the same money source, retry the operation") from exc
            raise

    # ----- companies -----

    async def get_company(self, company_id: str) -> Optional[Company]:
        doc = await self.companies.find_one({"_id": company_id})
        return Company(**doc) if doc else None

    async def insert_company(self, company: Company, session: Any = None) -> Company:
        await self.companies.insert_one(company.to_document(), session=session)
        return company

    # ----- users -----

    async def get_user(self, user_id: str) -> Optional[User]:
        doc = await self.users.find_one({"_id": user_id})
        return User(**doc) if doc else None

    async def list_users(
        self,
        company_id: str,
        roles: Optional[List[Role]] = None,
        active_only: bool = True,
    ) -> List[User]:
        flt: Dict[str, Any] = {"company_id": company_id}
        if roles is not None:
            flt["role"] = {"$in": [r.value for r in roles]}
        if active_only:
            flt["is_active"] = True
        docs = await self.users.find(flt).sort("created_at", ASCENDING).to_list(None)
        return [User(**doc) for doc in docs]

    async def insert_user(self, user: User, session: Any = None) -> User:
        await self.users.insert_one(user.to_document(), session=session)
        return user

    # ----- projects -----

    async def get_project(self, project_id: str) -> Optional[Project]:
        doc = await self.projects.find_one({"_id": project_id})
        return Project(**doc) if doc else None

    async def list_projects(self, company_id: str, ids: Optional[List[str]] = None) -> List[Project]:
        flt: Dict[str, Any] = {"company_id": company_id}
        if ids is not None:
            flt["_id"] = {"$in": ids}
        docs = await self.projects.find(flt).to_list(None)
        return [Project(**doc) for doc in docs]

    async def insert_project(self, project: Project, session: Any = None) -> Project:
        await self.projects.insert_one(project.to_document(), session=session)
        return project

    # ----- money sources -----

    async def get_money_source(self, money_source_id: str) -> Optional[MoneySource]:
        doc = await self.money_sources.find_one({"_id": money_source_id})
        return MoneySource(**doc) if doc else None

    async def list_money_sources(
        self,
        company_id: str,
        owner_id: Optional[str] = None,
        is_advance: Optional[bool] = None,
        active_only: bool = True,
    ) -> List[MoneySource]:
        flt: Dict[str, Any] = {"company_id": company_id}
        if owner_id is not None:
            flt["owner_id"] = owner_id
        if is_advance is not None:
            flt["is_advance"] = is_advance
        if active_only:
            flt["is_active"] = True
        docs = await self.money_sources.find(flt).sort("created_at", ASCENDING).to_list(None)
        return [MoneySource(**doc) for doc in docs]

    async def insert_money_source(self, source: MoneySource, session: Any = None) -> MoneySource:
        await self.money_sources.insert_one(source.to_document(), session=session)
        return source

    async def update_money_source(
        self,
        money_source_id: str,
        fields: Dict[str, Any],
        session: Any = None,
    ) -> Optional[MoneySource]:
        result = await self.money_sources.find_one_and_update(
            {"_id": money_source_id},
            {"$set": {**to_bson_fields(fields), "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return MoneySource(**result) if result else None

    async def claim_money_sources(self, money_source_ids: List[str], session: Any) -> None:
        for source_id in sorted(set(money_source_ids)):
            await self.money_sources.update_one(
                {"_id": source_id},
                {"$inc": {"version": 1}},
                session=session,
            )

    # ----- categories -----

    async def get_category(self, category_id: str) -> Optional[Category]:
        doc = await self.categories.find_one({"_id": category_id})
        return Category(**doc) if doc else None

    async def list_categories(self, company_id: str, ids: Optional[List[str]] = None) -> List[Category]:
        flt: Dict[str, Any] = {"$or": [{"company_id": company_id}, {"company_id": None}]}
        if ids is not None:
            flt["_id"] = {"$in": ids}
        docs = await self.categories.find(flt).to_list(None)
        return [Category(**doc) for doc in docs]

    async def find_system_category(self, system_key: str) -> Optional[Category]:
        doc = await self.categories.find_one({"is_system": True, "system_key": system_key})
        return Category(**doc) if doc else None

    async def insert_category(self, category: Category, session: Any = None) -> Category:
        await self.categories.insert_one(category.to_document(), session=session)
        return category

    async def list_category_groups(self, company_id: str) -> List[CategoryGroup]:
        docs = await self.category_groups.find(
            {"$or": [{"company_id": company_id}, {"company_id": None}]}
        ).sort([("sort_order", ASCENDING), ("name", ASCENDING)]).to_list(None)
        return [CategoryGroup(**doc) for doc in docs]

    async def insert_category_group(self, group: CategoryGroup, session: Any = None) -> CategoryGroup:
        await self.category_groups.insert_one(group.to_document(), session=session)
        return group

    # ----- transactions -----

    async def insert_transactions(self, transactions: List[Transaction], session: Any = None) -> List[Transaction]:
        if transactions:
            await self.transactions.insert_many(
                [tx.to_document() for tx in transactions],
                session=session,
            )
        return transactions

    async def get_transaction(self, transaction_id: str, session: Any = None) -> Optional[Transaction]:
        doc = await self.transactions.find_one({"_id": transaction_id}, session=session)
        return Transaction(**doc) if doc else None

    async def update_transaction(
        self,
        transaction_id: str,
        fields: Dict[str, Any],
        session: Any = None,
    ) -> Optional[Transaction]:
        result = await self.transactions.find_one_and_update(
            {"_id": transaction_id, **ACTIVE_FILTER},
            {"$set": {**fields, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return Transaction(**result) if result else None

    async def soft_delete_transactions(
        self,
        transaction_ids: List[str],
        deleted_at: datetime,
        deleted_by_id: Optional[str],
        session: Any = None,
    ) -> int:
        result = await self.transactions.update_many(
            {"_id": {"$in": transaction_ids}, **ACTIVE_FILTER},
            {"$set": {
                "deleted_at": deleted_at,
                "deleted_by_id": deleted_by_id,
                "updated_at": deleted_at,
            }},
            session=session,
        )
        return result.modified_count

    async def find_transactions(self, query: TransactionQuery, session: Any = None) -> List[Transaction]:
        direction = DESCENDING if query.newest_first else ASCENDING
        cursor = self.transactions.find(build_transaction_filter(query), session=session).sort(
            [("date", direction), ("created_at", direction)]
        )
        if query.skip:
            cursor = cursor.skip(query.skip)
        if query.limit is not None:
            cursor = cursor.limit(query.limit)
        docs = await cursor.to_list(None)
        return [Transaction(**doc) for doc in docs]

    async def count_transactions(self, query: TransactionQuery, session: Any = None) -> int:
        return await self.transactions.count_documents(build_transaction_filter(query), session=session)

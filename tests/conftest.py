import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from siteledger.core.auth import create_access_token
from siteledger.core.events import EventBus, EventType
from siteledger.core.locks import KeyedLock
from siteledger.main import create_app
from siteledger.models.category import Category
from siteledger.models.company import Company
from siteledger.models.money_source import MoneySource, SourceAccess
from siteledger.models.project import Project
from siteledger.models.transaction import TransactionType
from siteledger.models.user import Actor, Role, User
from siteledger.repositories.memory_store import InMemoryLedgerStore
from siteledger.schemas.transaction import TransactionCreate
from siteledger.services.advance_service import AdvanceService
from siteledger.services.analytics_service import AnalyticsService
from siteledger.services.balance_service import BalanceCalculator
from siteledger.services.equity_service import EquityService
from siteledger.services.money_source_service import MoneySourceService
from siteledger.services.transaction_service import TransactionService


MARCH_5 = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)


class YieldingLedgerStore(InMemoryLedgerStore):
    """In-memory store whose reads give up the event loop before answering.

    A real database read suspends the caller; without that, coroutines
    started together with asyncio.gather run one after another and races
    between them never show up in tests.
    """

    async def get_company(self, company_id):
        await asyncio.sleep(0)
        return await super().get_company(company_id)

    async def get_user(self, user_id):
        await asyncio.sleep(0)
        return await super().get_user(user_id)

    async def list_users(self, company_id, roles=None, active_only=True):
        await asyncio.sleep(0)
        return await super().list_users(company_id, roles=roles, active_only=active_only)

    async def get_project(self, project_id):
        await asyncio.sleep(0)
        return await super().get_project(project_id)

    async def get_money_source(self, money_source_id):
        await asyncio.sleep(0)
        return await super().get_money_source(money_source_id)

    async def list_money_sources(self, company_id, owner_id=None, is_advance=None, active_only=True):
        await asyncio.sleep(0)
        return await super().list_money_sources(
            company_id, owner_id=owner_id, is_advance=is_advance, active_only=active_only
        )

    async def get_category(self, category_id):
        await asyncio.sleep(0)
        return await super().get_category(category_id)

    async def find_system_category(self, system_key):
        await asyncio.sleep(0)
        return await super().find_system_category(system_key)

    async def get_transaction(self, transaction_id, session=None):
        await asyncio.sleep(0)
        return await super().get_transaction(transaction_id, session=session)

    async def find_transactions(self, query, session=None):
        await asyncio.sleep(0)
        return await super().find_transactions(query, session=session)

    async def count_transactions(self, query, session=None):
        await asyncio.sleep(0)
        return await super().count_transactions(query, session=session)


@pytest.fixture
def store():
    """Fresh in-memory ledger store for every test."""
    return YieldingLedgerStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def captured_events(bus):
    """Every event published on the bus, in order."""
    events = []
    for event_type in (
        EventType.TRANSACTION_CREATED,
        EventType.TRANSACTION_UPDATED,
        EventType.TRANSACTION_DELETED,
        EventType.ADVANCE_REFILLED,
        EventType.ADVANCE_RETURNED,
        EventType.MONEY_SOURCE_CREATED,
    ):
        bus.subscribe(event_type, events.append)
    return events


@pytest_asyncio.fixture
async def company(store):
    company = Company(name="Acme Build", timezone="UTC")
    await store.insert_company(company)
    return company


@pytest_asyncio.fixture
async def other_company(store):
    company = Company(name="Rival Works", timezone="UTC")
    await store.insert_company(company)
    return company


@pytest_asyncio.fixture
async def users(store, company):
    """One user per role: owner, partner, accountant, foreman, viewer."""
    seeded = {
        "owner": User(company_id=company.id, name="Olga", email="olga@acme.test", role=Role.OWNER),
        "partner": User(company_id=company.id, name="Pavel", email="pavel@acme.test", role=Role.PARTNER),
        "accountant": User(company_id=company.id, name="Anna", email="anna@acme.test", role=Role.ACCOUNTANT),
        "foreman": User(company_id=company.id, name="Fedor", email="fedor@acme.test", role=Role.FOREMAN),
        "viewer": User(company_id=company.id, name="Vera", email="vera@acme.test", role=Role.VIEWER),
    }
    for user in seeded.values():
        await store.insert_user(user)
    return seeded


@pytest.fixture
def actors(users):
    return {key: Actor.from_user(user) for key, user in users.items()}


@pytest_asyncio.fixture
async def sources(store, company, users):
    """main: company cash box of the owner; partner: partner's card; shared: owner's bank
    account the foreman may spend from; private: accountant's box nobody else sees."""
    seeded = {
        "main": MoneySource(
            company_id=company.id, owner_id=users["owner"].id, name="Main cash", is_company_main=True,
        ),
        "partner": MoneySource(company_id=company.id, owner_id=users["partner"].id, name="Pavel card"),
        "shared": MoneySource(
            company_id=company.id,
            owner_id=users["owner"].id,
            name="Bank",
            shared_with=[SourceAccess(user_id=users["foreman"].id, can_view=True, can_spend=True)],
        ),
        "private": MoneySource(company_id=company.id, owner_id=users["accountant"].id, name="Office box"),
    }
    for source in seeded.values():
        await store.insert_money_source(source)
    return seeded


@pytest_asyncio.fixture
async def categories(store, company):
    seeded = {
        "sales": Category(company_id=company.id, name="Client payment", allowed_types=[TransactionType.INCOME]),
        "materials": Category(company_id=company.id, name="Materials", allowed_types=[TransactionType.EXPENSE]),
        "fuel": Category(company_id=company.id, name="Fuel", allowed_types=[TransactionType.EXPENSE]),
        "transfer": Category(name="Transfer", allowed_types=[TransactionType.INTERNAL], is_system=True),
        "dividends": Category(company_id=company.id, name="Dividends", allowed_types=[TransactionType.PAYOUT]),
        "advance": Category(company_id=company.id, name="Site advance", allowed_types=[TransactionType.ADVANCE]),
    }
    for category in seeded.values():
        await store.insert_category(category)
    return seeded


@pytest_asyncio.fixture
async def project(store, company):
    project = Project(company_id=company.id, name="Lenina 12 renovation", budget_cents=5_000_000)
    await store.insert_project(project)
    return project


@pytest.fixture
def tx_service(store, bus, locks):
    return TransactionService(store, bus, locks)


@pytest.fixture
def advance_service(store, bus, locks):
    return AdvanceService(store, bus, locks)


@pytest.fixture
def source_service(store, bus, locks):
    return MoneySourceService(store, bus, locks)


@pytest.fixture
def calculator(store):
    return BalanceCalculator(store)


@pytest.fixture
def equity_service(store):
    return EquityService(store)


@pytest.fixture
def analytics_service(store):
    return AnalyticsService(store)


@pytest.fixture
def record(tx_service, actors, categories):
    """Shortcut to record a transaction as the owner.

    Usage: await record(TransactionType.INCOME, 10000, source_id, date=..., category=...)
    """
    default_category = {
        TransactionType.INCOME: "sales",
        TransactionType.EXPENSE: "materials",
        TransactionType.PAYOUT: "dividends",
        TransactionType.INTERNAL: "transfer",
    }

    async def _record(tx_type, amount_cents, money_source_id, actor=None, category=None, **fields):
        fields.setdefault("date", MARCH_5)
        data = TransactionCreate(
            type=tx_type,
            amount_cents=amount_cents,
            money_source_id=money_source_id,
            category_id=categories[category or default_category[tx_type]].id,
            **fields,
        )
        return await tx_service.create_transaction(actor or actors["owner"], data)

    return _record


@pytest.fixture
def test_client(store, bus):
    """API client over the in-memory store."""
    app = create_app(store=store, bus=bus)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers(users):
    """role key -> Authorization header for that user."""
    return {
        key: {"Authorization": f"Bearer {create_access_token(user.id)}"}
        for key, user in users.items()
    }

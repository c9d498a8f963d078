import asyncio

import pytest
import pytest_asyncio

from siteledger.core.errors import ForbiddenError, InsufficientFundsError, ValidationError
from siteledger.core.events import EventType
from siteledger.models.category import ADVANCE_ISSUE_KEY, ADVANCE_RETURN_KEY
from siteledger.models.transaction import AdvanceLeg, TransactionType
from siteledger.repositories.interface import TransactionQuery
from siteledger.schemas.advance import AdvanceHistoryFilter, AdvanceIssue, AdvanceReturn


@pytest.fixture
def issue(advance_service, actors, sources, users):
    async def _issue(amount_cents, recipient="foreman", actor="owner", **fields):
        return await advance_service.issue_advance(actors[actor], AdvanceIssue(
            money_source_id=fields.pop("money_source_id", sources["main"].id),
            recipient_user_id=users[recipient].id,
            amount_cents=amount_cents,
            **fields,
        ))
    return _issue


@pytest_asyncio.fixture
async def funded(record, sources):
    await record(TransactionType.INCOME, 200_000, sources["main"].id)


@pytest.mark.asyncio
async def test_first_issue_creates_advance_account_then_reuses_it(
    issue, funded, calculator, sources, store, users, captured_events
):
    first = await issue(50_000)

    assert first.is_new is True
    assert first.recipient_money_source.name == "Advance: Fedor"
    assert first.recipient_money_source.owner_id == users["foreman"].id
    assert first.recipient_money_source.is_advance
    advance_id = first.recipient_money_source.id
    assert await calculator.get_balance(advance_id) == 50_000
    assert await calculator.get_balance(sources["main"].id) == 150_000

    second = await issue(20_000)

    assert second.is_new is False
    assert second.recipient_money_source.id == advance_id
    assert await calculator.get_balance(advance_id) == 70_000
    advance_accounts = await store.list_money_sources(users["foreman"].company_id, is_advance=True)
    assert len(advance_accounts) == 1

    created = [e.event_type for e in captured_events if e.event_type == EventType.MONEY_SOURCE_CREATED]
    refilled = [e for e in captured_events if e.event_type == EventType.ADVANCE_REFILLED]
    assert len(created) == 1
    assert [e.payload["is_new"] for e in refilled] == [True, False]


@pytest.mark.asyncio
async def test_issue_writes_two_linked_legs(issue, funded, store):
    result = await issue(50_000)

    legs = await store.find_transactions(TransactionQuery(advance_pair_id=result.transaction.advance_pair_id))
    assert len(legs) == 2
    by_leg = {leg.advance_leg: leg for leg in legs}
    assert by_leg[AdvanceLeg.ISSUE].money_source_id == result.issue_transaction.money_source_id
    assert by_leg[AdvanceLeg.ISSUE].to_money_source_id == result.recipient_money_source.id
    assert by_leg[AdvanceLeg.RECEIVE].money_source_id == result.recipient_money_source.id
    assert all(leg.type == TransactionType.ADVANCE for leg in legs)


@pytest.mark.asyncio
async def test_failed_issue_leaves_no_partial_state(issue, funded, store, monkeypatch):
    before = dict(store.transactions)

    async def broken_insert(transactions, session=None):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "insert_transactions", broken_insert)

    with pytest.raises(RuntimeError):
        await issue(50_000)

    assert store.transactions == before
    assert [s for s in store.money_sources.values() if s.is_advance] == []


@pytest.mark.asyncio
async def test_only_managers_issue_advances(issue, funded):
    with pytest.raises(ForbiddenError):
        await issue(1000, actor="foreman")
    with pytest.raises(ForbiddenError):
        await issue(1000, actor="partner")

    result = await issue(1000, actor="accountant")
    assert result.transaction.created_by_id


@pytest.mark.asyncio
async def test_issue_checks_funds_on_issuing_source(issue, funded, store):
    with pytest.raises(InsufficientFundsError):
        await issue(200_001)
    assert [s for s in store.money_sources.values() if s.is_advance] == []


@pytest.mark.asyncio
async def test_issue_validates_category(issue, funded, categories):
    with pytest.raises(ValidationError):
        await issue(1000, category_id=categories["materials"].id)

    result = await issue(1000, category_id=categories["advance"].id)
    assert result.transaction.category_id == categories["advance"].id


@pytest.mark.asyncio
async def test_concurrent_first_issues_create_one_account(issue, funded, store, users):
    results = await asyncio.gather(issue(10_000), issue(15_000))

    assert sorted(r.is_new for r in results) == [False, True]
    assert results[0].recipient_money_source.id == results[1].recipient_money_source.id
    assert len(await store.list_money_sources(users["foreman"].company_id, is_advance=True)) == 1


@pytest.mark.asyncio
async def test_concurrent_issues_cannot_overdraw_source(issue, funded, calculator, sources, store):
    outcomes = await asyncio.gather(
        issue(150_000),
        issue(150_000, recipient="viewer"),
        return_exceptions=True,
    )

    assert sum(isinstance(o, InsufficientFundsError) for o in outcomes) == 1
    assert await calculator.get_balance(sources["main"].id) == 50_000
    issue_categories = [c for c in store.categories.values() if c.system_key == ADVANCE_ISSUE_KEY]
    assert len(issue_categories) == 1


@pytest.mark.asyncio
async def test_return_all_empties_advance(issue, funded, advance_service, actors, sources, calculator):
    await issue(50_000)
    second = await issue(20_000)
    advance_id = second.recipient_money_source.id

    result = await advance_service.return_advance(actors["foreman"], AdvanceReturn(
        advance_source_id=advance_id, to_money_source_id=sources["main"].id,
    ))

    assert result.remaining_balance == 0
    assert result.transaction.amount_cents == 70_000
    assert result.transaction.type == TransactionType.INTERNAL
    assert await calculator.get_balance(advance_id) == 0
    assert await calculator.get_balance(sources["main"].id) == 200_000


@pytest.mark.asyncio
async def test_partial_return_uses_system_category(issue, funded, advance_service, actors, sources, store):
    advance_id = (await issue(50_000)).recipient_money_source.id

    result = await advance_service.return_advance(actors["owner"], AdvanceReturn(
        advance_source_id=advance_id, to_money_source_id=sources["shared"].id, amount_cents=12_000,
    ))

    assert result.remaining_balance == 38_000
    category = await store.get_category(result.transaction.category_id)
    assert category.system_key == ADVANCE_RETURN_KEY
    assert category.allows(TransactionType.INTERNAL)


@pytest.mark.asyncio
async def test_return_over_balance_performs_zero_writes(issue, funded, advance_service, actors, sources, store):
    advance_id = (await issue(50_000)).recipient_money_source.id
    rows_before = len(store.transactions)
    commits_before = store.commits

    with pytest.raises(InsufficientFundsError) as exc:
        await advance_service.return_advance(actors["foreman"], AdvanceReturn(
            advance_source_id=advance_id, to_money_source_id=sources["main"].id, amount_cents=50_001,
        ))

    assert exc.value.available_cents == 50_000
    assert len(store.transactions) == rows_before
    assert store.commits == commits_before


@pytest.mark.asyncio
async def test_return_of_empty_advance_is_rejected(issue, funded, advance_service, actors, sources):
    advance_id = (await issue(1_000)).recipient_money_source.id
    await advance_service.return_advance(actors["foreman"], AdvanceReturn(
        advance_source_id=advance_id, to_money_source_id=sources["main"].id,
    ))

    with pytest.raises(InsufficientFundsError):
        await advance_service.return_advance(actors["foreman"], AdvanceReturn(
            advance_source_id=advance_id, to_money_source_id=sources["main"].id,
        ))


@pytest.mark.asyncio
async def test_return_rights(issue, funded, advance_service, actors, sources):
    advance_id = (await issue(5_000)).recipient_money_source.id

    with pytest.raises(ForbiddenError):
        await advance_service.return_advance(actors["viewer"], AdvanceReturn(
            advance_source_id=advance_id, to_money_source_id=sources["main"].id,
        ))
    with pytest.raises(ValidationError):
        await advance_service.return_advance(actors["owner"], AdvanceReturn(
            advance_source_id=sources["main"].id, to_money_source_id=sources["shared"].id,
        ))
    with pytest.raises(ValidationError):
        await advance_service.return_advance(actors["owner"], AdvanceReturn(
            advance_source_id=advance_id, to_money_source_id=advance_id,
        ))


@pytest.mark.asyncio
async def test_concurrent_return_all_cannot_double_spend(issue, funded, advance_service, actors, sources, calculator):
    advance_id = (await issue(30_000)).recipient_money_source.id
    request = AdvanceReturn(advance_source_id=advance_id, to_money_source_id=sources["main"].id)

    outcomes = await asyncio.gather(
        advance_service.return_advance(actors["foreman"], request),
        advance_service.return_advance(actors["owner"], request),
        return_exceptions=True,
    )

    succeeded = [o for o in outcomes if not isinstance(o, Exception)]
    failed = [o for o in outcomes if isinstance(o, InsufficientFundsError)]
    assert len(succeeded) == 1 and len(failed) == 1
    assert succeeded[0].transaction.amount_cents == 30_000
    assert await calculator.get_balance(advance_id) == 0


@pytest.mark.asyncio
async def test_advance_balances_and_history(issue, funded, advance_service, actors, sources, users, company):
    await issue(10_000)
    await issue(4_000, recipient="viewer")
    await issue(6_000)

    balances = await advance_service.list_advance_balances(company.id)
    assert {b.user_name: b.balance_cents for b in balances} == {"Fedor": 16_000, "Vera": 4_000}

    own = await advance_service.list_advance_balances(company.id, user_id=users["viewer"].id)
    assert [b.balance_cents for b in own] == [4_000]

    items, total = await advance_service.advance_history(
        company.id, AdvanceHistoryFilter(recipient_user_id=users["foreman"].id)
    )
    assert total == 2
    assert all(tx.advance_leg == AdvanceLeg.RECEIVE for tx in items)

    assert (await advance_service.get_advance_source(company.id, users["partner"].id)) is None

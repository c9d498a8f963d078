import asyncio
from datetime import datetime, timezone

import pytest

from siteledger.core.errors import (
    ConflictError,
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from siteledger.core.events import EventType
from siteledger.models.category import Category
from siteledger.models.money_source import MoneySource
from siteledger.models.project import Project
from siteledger.models.transaction import TransactionType
from siteledger.schemas.advance import AdvanceIssue
from siteledger.schemas.transaction import TransactionCreate, TransactionFilter, TransactionUpdate


# ----- create -----

@pytest.mark.asyncio
async def test_create_income_records_row_and_publishes_event(record, store, sources, captured_events):
    tx = await record(TransactionType.INCOME, 100_000, sources["main"].id, comment="Advance from client")

    stored = await store.get_transaction(tx.id)
    assert stored.amount_cents == 100_000
    assert stored.is_active
    assert [e.event_type for e in captured_events] == [EventType.TRANSACTION_CREATED]
    assert captured_events[0].payload["amount_cents"] == 100_000


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -500])
async def test_create_rejects_non_positive_amount(record, store, sources, amount):
    with pytest.raises(ValidationError):
        await record(TransactionType.EXPENSE, amount, sources["main"].id)
    assert store.transactions == {}


@pytest.mark.asyncio
async def test_create_rejects_category_of_wrong_type(record, sources):
    with pytest.raises(ValidationError, match="cannot be used for EXPENSE"):
        await record(TransactionType.EXPENSE, 1000, sources["main"].id, category="sales")


@pytest.mark.asyncio
async def test_create_rejects_category_of_another_company(tx_service, store, actors, sources, other_company):
    foreign = Category(company_id=other_company.id, name="Theirs", allowed_types=[TransactionType.EXPENSE])
    await store.insert_category(foreign)

    with pytest.raises(NotFoundError):
        await tx_service.create_transaction(actors["owner"], TransactionCreate(
            type=TransactionType.EXPENSE,
            amount_cents=1000,
            money_source_id=sources["main"].id,
            category_id=foreign.id,
        ))


@pytest.mark.asyncio
async def test_create_rejects_source_of_another_company(record, store, users, other_company):
    foreign = MoneySource(company_id=other_company.id, owner_id=users["owner"].id, name="Elsewhere")
    await store.insert_money_source(foreign)

    with pytest.raises(NotFoundError):
        await record(TransactionType.INCOME, 1000, foreign.id)


@pytest.mark.asyncio
async def test_create_rejects_archived_source(record, store, company, users):
    archived = MoneySource(company_id=company.id, owner_id=users["owner"].id, name="Old", is_active=False)
    await store.insert_money_source(archived)

    with pytest.raises(NotFoundError):
        await record(TransactionType.INCOME, 1000, archived.id)


@pytest.mark.asyncio
async def test_create_rejects_project_of_another_company(record, store, sources, other_company):
    foreign = Project(company_id=other_company.id, name="Not ours")
    await store.insert_project(foreign)

    with pytest.raises(NotFoundError):
        await record(TransactionType.EXPENSE, 1000, sources["main"].id, project_id=foreign.id)


@pytest.mark.asyncio
async def test_foreman_spends_only_where_granted(record, actors, sources):
    tx = await record(TransactionType.EXPENSE, 2500, sources["shared"].id, actor=actors["foreman"])
    assert tx.created_by_id == actors["foreman"].user_id

    with pytest.raises(ForbiddenError):
        await record(TransactionType.EXPENSE, 2500, sources["private"].id, actor=actors["foreman"])
    # Main source is visible to everyone but not spendable
    with pytest.raises(ForbiddenError):
        await record(TransactionType.EXPENSE, 2500, sources["main"].id, actor=actors["viewer"])


@pytest.mark.asyncio
async def test_internal_requires_distinct_destination(record, sources):
    with pytest.raises(ValidationError, match="destination"):
        await record(TransactionType.INTERNAL, 1000, sources["main"].id)
    with pytest.raises(ValidationError, match="differ"):
        await record(TransactionType.INTERNAL, 1000, sources["main"].id, to_money_source_id=sources["main"].id)


@pytest.mark.asyncio
async def test_destination_only_allowed_on_internal(record, sources):
    with pytest.raises(ValidationError):
        await record(TransactionType.INCOME, 1000, sources["main"].id, to_money_source_id=sources["partner"].id)


@pytest.mark.asyncio
async def test_internal_transfer_rejected_over_balance_without_writes(record, store, sources):
    await record(TransactionType.INCOME, 5000, sources["main"].id)

    with pytest.raises(InsufficientFundsError) as exc:
        await record(TransactionType.INTERNAL, 5001, sources["main"].id, to_money_source_id=sources["partner"].id)

    assert exc.value.available_cents == 5000
    assert exc.value.requested_cents == 5001
    assert len(store.transactions) == 1


@pytest.mark.asyncio
async def test_internal_transfer_moves_money(record, calculator, sources):
    await record(TransactionType.INCOME, 5000, sources["main"].id)
    await record(TransactionType.INTERNAL, 3000, sources["main"].id, to_money_source_id=sources["partner"].id)

    assert await calculator.get_balance(sources["main"].id) == 2000
    assert await calculator.get_balance(sources["partner"].id) == 3000


@pytest.mark.asyncio
async def test_payout_requires_company_recipient(record, sources, users, actors):
    with pytest.raises(ValidationError):
        await record(TransactionType.PAYOUT, 1000, sources["main"].id)
    with pytest.raises(NotFoundError):
        await record(TransactionType.PAYOUT, 1000, sources["main"].id, payout_user_id="5" * 24)

    tx = await record(TransactionType.PAYOUT, 1000, sources["main"].id, payout_user_id=users["partner"].id)
    assert tx.payout_user_id == users["partner"].id


@pytest.mark.asyncio
async def test_advance_cannot_be_created_directly(record, sources):
    with pytest.raises(ValidationError, match="advance"):
        await record(TransactionType.ADVANCE, 1000, sources["main"].id, category="advance")


@pytest.mark.asyncio
async def test_category_and_project_are_not_cross_validated(record, store, company, sources):
    closed = Project(company_id=company.id, name="Finished job", status="COMPLETED")
    await store.insert_project(closed)

    tx = await record(TransactionType.EXPENSE, 1000, sources["main"].id, project_id=closed.id)
    assert tx.project_id == closed.id


# ----- update -----

@pytest.mark.asyncio
async def test_update_changes_editable_fields(record, tx_service, actors, sources, project):
    tx = await record(TransactionType.EXPENSE, 1000, sources["main"].id)
    new_date = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)

    updated = await tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(
        amount_cents=1500, date=new_date, comment="Cement", project_id=project.id,
    ))

    assert updated.amount_cents == 1500
    assert updated.date == new_date
    assert updated.comment == "Cement"
    assert updated.project_id == project.id


@pytest.mark.asyncio
async def test_update_with_explicit_null_clears_project(record, tx_service, actors, sources, project):
    tx = await record(TransactionType.EXPENSE, 1000, sources["main"].id, project_id=project.id)

    updated = await tx_service.update_transaction(
        actors["owner"], tx.id, TransactionUpdate.model_validate({"project_id": None})
    )

    assert updated.project_id is None


@pytest.mark.asyncio
async def test_only_owner_or_author_may_update(record, tx_service, actors, sources):
    tx = await record(TransactionType.EXPENSE, 1000, sources["shared"].id, actor=actors["foreman"])

    with pytest.raises(ForbiddenError):
        await tx_service.update_transaction(actors["accountant"], tx.id, TransactionUpdate(comment="x"))

    by_author = await tx_service.update_transaction(actors["foreman"], tx.id, TransactionUpdate(comment="Nails"))
    by_owner = await tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(comment="Screws"))
    assert by_author.comment == "Nails"
    assert by_owner.comment == "Screws"


@pytest.mark.asyncio
async def test_update_of_deleted_transaction_is_not_found(record, tx_service, actors, sources):
    tx = await record(TransactionType.EXPENSE, 1000, sources["main"].id)
    await tx_service.soft_delete_transaction(actors["owner"], tx.id)

    with pytest.raises(NotFoundError):
        await tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(amount_cents=5))


@pytest.mark.asyncio
async def test_update_rechecks_funds_on_internal_increase(record, tx_service, actors, sources, calculator):
    await record(TransactionType.INCOME, 10_000, sources["main"].id)
    tx = await record(TransactionType.INTERNAL, 6000, sources["main"].id, to_money_source_id=sources["partner"].id)

    # 4000 left plus the 6000 already moved
    ok = await tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(amount_cents=10_000))
    assert ok.amount_cents == 10_000

    with pytest.raises(InsufficientFundsError):
        await tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(amount_cents=10_001))
    assert await calculator.get_balance(sources["main"].id) == 0


@pytest.mark.asyncio
async def test_update_without_changes_returns_row_untouched(record, tx_service, actors, sources, captured_events):
    tx = await record(TransactionType.EXPENSE, 1000, sources["main"].id)

    same = await tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(amount_cents=1000))

    assert same.updated_at == tx.updated_at
    assert EventType.TRANSACTION_UPDATED not in [e.event_type for e in captured_events]


# ----- concurrent writes -----

def _split(outcomes):
    succeeded = [o for o in outcomes if not isinstance(o, Exception)]
    failed = [o for o in outcomes if isinstance(o, InsufficientFundsError)]
    return succeeded, failed


@pytest.mark.asyncio
async def test_concurrent_transfers_cannot_overdraw(record, calculator, sources):
    await record(TransactionType.INCOME, 100, sources["main"].id)

    outcomes = await asyncio.gather(
        record(TransactionType.INTERNAL, 80, sources["main"].id, to_money_source_id=sources["partner"].id),
        record(TransactionType.INTERNAL, 80, sources["main"].id, to_money_source_id=sources["shared"].id),
        return_exceptions=True,
    )

    succeeded, failed = _split(outcomes)
    assert len(succeeded) == 1 and len(failed) == 1
    assert await calculator.get_balance(sources["main"].id) == 20


@pytest.mark.asyncio
async def test_concurrent_updates_use_the_latest_amount(record, tx_service, actors, sources, calculator):
    await record(TransactionType.INCOME, 100, sources["main"].id)
    tx = await record(TransactionType.INTERNAL, 100, sources["main"].id, to_money_source_id=sources["partner"].id)

    outcomes = await asyncio.gather(
        tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(amount_cents=10)),
        tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(amount_cents=190)),
        return_exceptions=True,
    )

    succeeded, failed = _split(outcomes)
    assert len(succeeded) == 1 and len(failed) == 1
    assert succeeded[0].amount_cents == 10
    assert await calculator.get_balance(sources["main"].id) == 90


@pytest.mark.asyncio
async def test_transfer_and_update_race_keeps_source_solvent(record, tx_service, actors, sources, calculator):
    await record(TransactionType.INCOME, 100, sources["main"].id)
    tx = await record(TransactionType.INTERNAL, 50, sources["main"].id, to_money_source_id=sources["partner"].id)

    outcomes = await asyncio.gather(
        tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(amount_cents=100)),
        record(TransactionType.INTERNAL, 50, sources["main"].id, to_money_source_id=sources["shared"].id),
        return_exceptions=True,
    )

    succeeded, failed = _split(outcomes)
    assert len(succeeded) == 1 and len(failed) == 1
    assert await calculator.get_balance(sources["main"].id) == 0


@pytest.mark.asyncio
async def test_update_refused_when_row_moved_meanwhile(record, tx_service, actors, sources, calculator):
    await record(TransactionType.INCOME, 1000, sources["main"].id)
    await record(TransactionType.INCOME, 1000, sources["shared"].id)
    tx = await record(TransactionType.INTERNAL, 500, sources["main"].id, to_money_source_id=sources["partner"].id)

    outcomes = await asyncio.gather(
        tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(money_source_id=sources["shared"].id)),
        tx_service.update_transaction(actors["owner"], tx.id, TransactionUpdate(amount_cents=900)),
        return_exceptions=True,
    )

    assert not isinstance(outcomes[0], Exception)
    assert isinstance(outcomes[1], ConflictError)
    assert await calculator.get_balance(sources["main"].id) == 1000
    assert await calculator.get_balance(sources["shared"].id) == 500


# ----- advance pairs -----

async def _issue(advance_service, record, actors, sources, users, amount=50_000):
    await record(TransactionType.INCOME, 200_000, sources["main"].id)
    return await advance_service.issue_advance(actors["owner"], AdvanceIssue(
        money_source_id=sources["main"].id,
        recipient_user_id=users["foreman"].id,
        amount_cents=amount,
    ))


@pytest.mark.asyncio
async def test_pair_edit_applies_to_both_legs(advance_service, tx_service, record, actors, sources, users, store, calculator):
    result = await _issue(advance_service, record, actors, sources, users)

    await tx_service.update_transaction(
        actors["owner"], result.issue_transaction.id, TransactionUpdate(amount_cents=30_000, comment="Tiles"),
    )

    receive = await store.get_transaction(result.transaction.id)
    assert receive.amount_cents == 30_000
    assert receive.comment == "Tiles"
    assert await calculator.get_balance(sources["main"].id) == 170_000
    assert await calculator.get_balance(result.recipient_money_source.id) == 30_000


@pytest.mark.asyncio
async def test_pair_source_change_is_conflict(advance_service, tx_service, record, actors, sources, users):
    result = await _issue(advance_service, record, actors, sources, users)

    with pytest.raises(ConflictError):
        await tx_service.update_transaction(
            actors["owner"], result.issue_transaction.id, TransactionUpdate(money_source_id=sources["partner"].id),
        )


@pytest.mark.asyncio
async def test_pair_with_deleted_sibling_is_conflict(advance_service, tx_service, record, actors, sources, users, store):
    result = await _issue(advance_service, record, actors, sources, users)
    # Damage the pair behind the engine's back
    await store.soft_delete_transactions(
        [result.transaction.id], deleted_at=datetime.now(timezone.utc), deleted_by_id=None,
    )

    with pytest.raises(ConflictError):
        await tx_service.update_transaction(
            actors["owner"], result.issue_transaction.id, TransactionUpdate(amount_cents=10_000),
        )


@pytest.mark.asyncio
async def test_deleting_one_leg_deletes_the_pair(advance_service, tx_service, record, actors, sources, users, store, calculator):
    result = await _issue(advance_service, record, actors, sources, users)

    await tx_service.soft_delete_transaction(actors["owner"], result.transaction.id)

    for leg_id in (result.transaction.id, result.issue_transaction.id):
        assert not (await store.get_transaction(leg_id)).is_active
    assert await calculator.get_balance(sources["main"].id) == 200_000
    assert await calculator.get_balance(result.recipient_money_source.id) == 0


# ----- delete -----

@pytest.mark.asyncio
async def test_soft_delete_is_idempotent(record, tx_service, actors, sources, store, captured_events):
    tx = await record(TransactionType.EXPENSE, 1000, sources["main"].id)

    await tx_service.soft_delete_transaction(actors["owner"], tx.id)
    first = await store.get_transaction(tx.id)
    await tx_service.soft_delete_transaction(actors["owner"], tx.id)
    second = await store.get_transaction(tx.id)

    assert first.deleted_at is not None
    assert second.deleted_at == first.deleted_at
    assert second.deleted_by_id == actors["owner"].user_id
    deleted_events = [e for e in captured_events if e.event_type == EventType.TRANSACTION_DELETED]
    assert len(deleted_events) == 1


@pytest.mark.asyncio
async def test_delete_requires_owner_or_author(record, tx_service, actors, sources):
    tx = await record(TransactionType.EXPENSE, 1000, sources["main"].id)

    with pytest.raises(ForbiddenError):
        await tx_service.soft_delete_transaction(actors["accountant"], tx.id)


@pytest.mark.asyncio
async def test_delete_unknown_transaction_is_not_found(tx_service, actors):
    with pytest.raises(NotFoundError):
        await tx_service.soft_delete_transaction(actors["owner"], "0" * 24)


# ----- reads -----

@pytest.mark.asyncio
async def test_list_is_limited_to_visible_sources(record, tx_service, actors, sources):
    await record(TransactionType.INCOME, 1000, sources["main"].id)
    await record(TransactionType.INCOME, 2000, sources["shared"].id)
    await record(TransactionType.INCOME, 3000, sources["private"].id)
    await record(TransactionType.INCOME, 4000, sources["partner"].id)

    items, total = await tx_service.list_transactions(actors["foreman"], TransactionFilter())
    assert total == 2
    assert {tx.amount_cents for tx in items} == {1000, 2000}

    items, total = await tx_service.list_transactions(actors["accountant"], TransactionFilter())
    assert total == 4

    with pytest.raises(ForbiddenError):
        await tx_service.list_transactions(
            actors["foreman"], TransactionFilter(money_source_id=sources["private"].id)
        )


@pytest.mark.asyncio
async def test_list_pages_newest_first_and_hides_deleted(record, tx_service, actors, sources):
    created = []
    for day in range(1, 6):
        created.append(await record(
            TransactionType.INCOME, day * 100, sources["main"].id,
            date=datetime(2024, 3, day, tzinfo=timezone.utc),
        ))
    await tx_service.soft_delete_transaction(actors["owner"], created[0].id)

    items, total = await tx_service.list_transactions(actors["owner"], TransactionFilter(skip=1, limit=2))
    assert total == 4
    assert [tx.amount_cents for tx in items] == [400, 300]

    _, with_deleted = await tx_service.list_transactions(actors["owner"], TransactionFilter(include_deleted=True))
    assert with_deleted == 5


@pytest.mark.asyncio
async def test_get_transaction_checks_visibility(record, tx_service, actors, sources):
    tx = await record(TransactionType.INCOME, 1000, sources["private"].id)

    assert (await tx_service.get_transaction(actors["accountant"], tx.id)).id == tx.id
    with pytest.raises(ForbiddenError):
        await tx_service.get_transaction(actors["foreman"], tx.id)


@pytest.mark.asyncio
async def test_project_running_balance(record, tx_service, actors, sources, project):
    await record(TransactionType.INCOME, 100_000, sources["main"].id, project_id=project.id,
                 date=datetime(2024, 3, 1, tzinfo=timezone.utc))
    await record(TransactionType.EXPENSE, 30_000, sources["main"].id, project_id=project.id,
                 date=datetime(2024, 3, 2, tzinfo=timezone.utc))
    await record(TransactionType.PAYOUT, 5_000, sources["main"].id, project_id=project.id,
                 payout_user_id=actors["partner"].user_id, date=datetime(2024, 3, 3, tzinfo=timezone.utc))
    await record(TransactionType.EXPENSE, 20_000, sources["main"].id, project_id=project.id,
                 date=datetime(2024, 3, 4, tzinfo=timezone.utc))

    rows = await tx_service.get_project_transactions_with_running_balance(actors["owner"], project.id)

    assert [row.running_balance_cents for row in rows] == [100_000, 70_000, 70_000, 50_000]
    assert rows[2].advance_leg is None


import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import DBAPIError

from app.core.money import to_money
from app.db.unit_of_work import unit_of_work
from app.exceptions import (
    AccountNotFoundError,
    ConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerImmutableError,
    UserNotFoundError,
)
from app.models import Transaction, TransactionStatus, TransactionType, User
from app.services import transfers
from app.services.accounts import AccountService, debit
from app.services.transfers import TransferEngine

async def balance_of(db, user_id) -> Decimal:
    account = await AccountService(db).get_account(user_id)
    return account.balance

async def ledger_count(db) -> int:
    return (await db.execute(select(func.count(Transaction.id)))).scalar_one()

@pytest.mark.asyncio
async def test_transfer_moves_money_and_records_one_entry(db_session, alice, bob):
    engine = TransferEngine(db_session)
    result = await engine.transfer(alice, "bob@example.com", Decimal("1250.50"), "Rent share")

    assert result.reference.startswith("TXN")
    assert result.new_balance == Decimal("3749.50")
    assert await balance_of(db_session, alice.id) == Decimal("3749.50")
    assert await balance_of(db_session, bob.id) == Decimal("6250.50")

    entries = (await db_session.execute(select(Transaction))).scalars().all()
    assert len(entries) == 1
    entry = entries[0]
    alice_account = await AccountService(db_session).get_account(alice.id)
    bob_account = await AccountService(db_session).get_account(bob.id)
    assert entry.status == TransactionStatus.COMPLETED
    assert entry.type == TransactionType.TRANSFER
    assert entry.sender_account_id == alice_account.id
    assert entry.receiver_account_id == bob_account.id
    assert entry.sender_name == "Alice"
    assert entry.receiver_name == "Bob"
    assert entry.amount == Decimal("1250.50")
    assert entry.completed_at is not None

@pytest.mark.asyncio
async def test_transfer_updates_running_counters(db_session, alice, bob):
    engine = TransferEngine(db_session)
    await engine.transfer(alice, "bob@example.com", 100)
    await engine.transfer(alice, "bob@example.com", 50)

    alice_account = await AccountService(db_session).get_account(alice.id)
    bob_account = await AccountService(db_session).get_account(bob.id)
    assert alice_account.total_transactions_count == 2
    assert alice_account.total_transactions_amount == Decimal("150.00")
    assert bob_account.total_transactions_count == 2
    assert bob_account.total_transactions_amount == Decimal("150.00")

@pytest.mark.asyncio
async def test_transfer_exceeding_balance_changes_nothing(db_session, alice, bob):
    engine = TransferEngine(db_session)

    with pytest.raises(InsufficientBalanceError):
        await engine.transfer(alice, "bob@example.com", Decimal("5000.01"))

    assert await balance_of(db_session, alice.id) == Decimal("5000.00")
    assert await balance_of(db_session, bob.id) == Decimal("5000.00")
    assert await ledger_count(db_session) == 0

@pytest.mark.asyncio
async def test_transfer_of_entire_balance_is_allowed(db_session, alice, bob):
    result = await TransferEngine(db_session).transfer(alice, "bob@example.com", Decimal("5000.00"))
    assert result.new_balance == Decimal("0.00")

@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -10, "0.001"])
async def test_transfer_rejects_non_positive_amounts(db_session, alice, bob, amount):
    with pytest.raises(InvalidAmountError):
        await TransferEngine(db_session).transfer(alice, "bob@example.com", amount)
    assert await ledger_count(db_session) == 0

@pytest.mark.asyncio
async def test_transfer_to_unknown_receiver(db_session, alice):
    with pytest.raises(UserNotFoundError):
        await TransferEngine(db_session).transfer(alice, "nobody@example.com", 10)
    assert await balance_of(db_session, alice.id) == Decimal("5000.00")

@pytest.mark.asyncio
async def test_transfer_from_user_without_account(db_session, alice):
    ghost = User(name="Ghost", email="ghost@example.com")
    db_session.add(ghost)
    await db_session.commit()

    with pytest.raises(AccountNotFoundError):
        await TransferEngine(db_session).transfer(ghost, "alice@example.com", 10)

@pytest.mark.asyncio
async def test_receiver_lookup_is_case_insensitive(db_session, alice, bob):
    await TransferEngine(db_session).transfer(alice, "  BOB@Example.com ", 10)
    assert await balance_of(db_session, bob.id) == Decimal("5010.00")

@pytest.mark.asyncio
async def test_idempotent_transfer_moves_money_once(db_session, alice, bob):
    engine = TransferEngine(db_session)
    first = await engine.transfer(alice, "bob@example.com", 300, idempotency_key="pay-bob-1")
    second = await engine.transfer(alice, "bob@example.com", 300, idempotency_key="pay-bob-1")

    assert first.reference == second.reference
    assert second.new_balance == Decimal("4700.00")
    assert await balance_of(db_session, bob.id) == Decimal("5300.00")
    assert await ledger_count(db_session) == 1

@pytest.mark.asyncio
async def test_idempotency_key_is_scoped_to_sender(db_session, register, alice, bob):
    carol = await register("Carol", "carol@example.com")
    engine = TransferEngine(db_session)
    await engine.transfer(alice, "bob@example.com", 300, idempotency_key="k1")
    result = await engine.transfer(carol, "bob@example.com", 999, idempotency_key="k1")

    assert result.transaction.sender_id == carol.id
    assert result.transaction.amount == Decimal("999.00")
    assert result.new_balance == Decimal("4001.00")
    assert await balance_of(db_session, bob.id) == Decimal("6299.00")
    assert await ledger_count(db_session) == 2

@pytest.mark.asyncio
async def test_idempotency_key_reused_for_different_transfer_conflicts(db_session, register, alice, bob):
    await register("Carol", "carol@example.com")
    engine = TransferEngine(db_session)
    await engine.transfer(alice, "bob@example.com", 300, idempotency_key="k1")

    with pytest.raises(ConflictError):
        await engine.transfer(alice, "bob@example.com", 400, idempotency_key="k1")
    with pytest.raises(ConflictError):
        await engine.transfer(alice, "carol@example.com", 300, idempotency_key="k1")

    assert await balance_of(db_session, alice.id) == Decimal("4700.00")
    assert await ledger_count(db_session) == 1

@pytest.mark.asyncio
async def test_debit_matches_no_row_when_balance_is_short(db_session, alice):
    account = await AccountService(db_session).get_account(alice.id)

    with pytest.raises(InsufficientBalanceError):
        await debit(db_session, account.id, account.balance + Decimal("0.01"))
    await db_session.rollback()

    account = await AccountService(db_session).get_account(alice.id)
    assert account.balance == Decimal("5000.00")
    assert account.total_transactions_count == 0

@pytest.mark.asyncio
async def test_opposite_transfers_update_accounts_in_id_order(db_session, alice, bob, monkeypatch):
    touched = []

    def tracking(update_balance):
        async def wrapper(db, account_id, amount):
            touched.append(account_id)
            return await update_balance(db, account_id, amount)
        return wrapper

    monkeypatch.setattr(transfers, "debit", tracking(transfers.debit))
    monkeypatch.setattr(transfers, "credit", tracking(transfers.credit))
    engine = TransferEngine(db_session)

    await engine.transfer(alice, "bob@example.com", 10)
    assert touched == sorted(touched)
    touched.clear()
    await engine.transfer(bob, "alice@example.com", 10)
    assert touched == sorted(touched)
    assert len(touched) == 2

@pytest.mark.asyncio
async def test_database_deadlock_becomes_conflict(db_session):
    class DeadlockDetected(Exception):
        sqlstate = "40P01"

    with pytest.raises(ConflictError):
        async with unit_of_work(db_session):
            raise DBAPIError("UPDATE accounts", None, DeadlockDetected())

    with pytest.raises(DBAPIError):
        async with unit_of_work(db_session):
            raise DBAPIError("UPDATE accounts", None, Exception("connection reset"))

@pytest.mark.asyncio
async def test_concurrent_overspending_transfers_only_one_succeeds(session_factory, alice, bob):
    async def attempt():
        async with session_factory() as session:
            return await TransferEngine(session).transfer(alice, "bob@example.com", Decimal("3000.00"))

    results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert type(failed[0]).__name__ in ("InsufficientBalanceError", "ConflictError")

    async with session_factory() as session:
        assert await balance_of(session, alice.id) == Decimal("2000.00")
        assert await balance_of(session, bob.id) == Decimal("8000.00")
        assert await ledger_count(session) == 1

@pytest.mark.asyncio
async def test_completed_entries_cannot_be_modified(db_session, alice, bob):
    result = await TransferEngine(db_session).transfer(alice, "bob@example.com", 25)
    entry = result.transaction

    entry.description = "tampered"
    with pytest.raises(LedgerImmutableError):
        await db_session.flush()
    await db_session.rollback()

    stored = (await db_session.execute(select(Transaction.description))).scalar_one()
    assert stored == ""

def test_to_money_rounds_half_up():
    assert to_money("10.005") == Decimal("10.01")
    assert to_money(0.1) == Decimal("0.10")
    assert to_money(7) == Decimal("7.00")
    with pytest.raises(ValueError):
        to_money("ten")

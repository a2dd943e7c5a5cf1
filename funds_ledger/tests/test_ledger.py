import asyncio
import pytest
from decimal import Decimal
from sqlalchemy.orm.exc import StaleDataError

from funds_ledger.exceptions import (
    DuplicateRequestError,
    InsufficientFundsError,
    InvalidAmountError,
    VersionConflictError,
)
from funds_ledger.models import LedgerReason
from funds_ledger.services.ledger import LedgerStore

@pytest.mark.asyncio
async def test_credit_is_idempotent(db_session):
    store = LedgerStore(db_session)
    first = await store.atomic(lambda: store.credit("alice", "USDT", Decimal("100"), LedgerReason.DEPOSIT, "dep-1"))
    second = await store.atomic(lambda: store.credit("alice", "USDT", Decimal("100"), LedgerReason.DEPOSIT, "dep-1"))

    assert second.id == first.id
    balance = await store.get_balance("alice", "USDT")
    assert balance.available == Decimal("100")
    assert balance.version == 1
    assert len(await store.list_entries("alice")) == 1

@pytest.mark.asyncio
async def test_version_increments_once_per_mutation(db_session):
    store = LedgerStore(db_session)
    assert (await store.get_balance("alice", "USDT")).version == 0

    await store.atomic(lambda: store.credit("alice", "USDT", Decimal("10"), LedgerReason.DEPOSIT, "a"))
    await store.atomic(lambda: store.credit("alice", "USDT", Decimal("5"), LedgerReason.DEPOSIT, "b"))
    entry = await store.atomic(lambda: store.move("alice", "USDT", Decimal("-3"), Decimal("3"),
                                                  LedgerReason.BET_HOLD, "c"))

    balance = await store.get_balance("alice", "USDT")
    assert balance.version == 3
    assert entry.balance_version == 3
    assert balance.available == Decimal("12")
    assert balance.reserved == Decimal("3")

@pytest.mark.asyncio
async def test_debit_never_goes_negative(db_session):
    store = LedgerStore(db_session)
    await store.atomic(lambda: store.credit("bob", "USDT", Decimal("20"), LedgerReason.DEPOSIT, "dep-bob"))

    with pytest.raises(InsufficientFundsError):
        await store.atomic(lambda: store.debit("bob", "USDT", Decimal("20.01"), LedgerReason.ADJUSTMENT, "adj-1"))

    balance = await store.get_balance("bob", "USDT")
    assert balance.available == Decimal("20")
    assert balance.version == 1
    assert await store.find_entry(LedgerReason.ADJUSTMENT, "adj-1") is None

@pytest.mark.asyncio
async def test_non_positive_amounts_rejected(db_session):
    store = LedgerStore(db_session)
    with pytest.raises(InvalidAmountError):
        await store.atomic(lambda: store.credit("bob", "USDT", Decimal("0"), LedgerReason.DEPOSIT, "zero"))
    with pytest.raises(InvalidAmountError):
        await store.atomic(lambda: store.debit("bob", "USDT", Decimal("-1"), LedgerReason.ADJUSTMENT, "neg"))

@pytest.mark.asyncio
async def test_log_reconstructs_materialized_balance(db_session):
    store = LedgerStore(db_session)
    await store.atomic(lambda: store.credit("carol", "usdt", Decimal("75.5"), LedgerReason.DEPOSIT, "d1"))
    await store.atomic(lambda: store.move("carol", "USDT", Decimal("-25"), Decimal("25"), LedgerReason.BET_HOLD, "h1"))
    await store.atomic(lambda: store.move("carol", "USDT", Decimal("0"), Decimal("-25"), LedgerReason.BET_CAPTURE, "h1"))
    await store.atomic(lambda: store.debit("carol", "USDT", Decimal("0.5"), LedgerReason.ADJUSTMENT, "fee"))

    balance = await store.get_balance("carol", "USDT")
    available, reserved = await store.reconstruct("carol", "USDT")
    assert (available, reserved) == (balance.available, balance.reserved)
    assert balance.available == Decimal("50")
    assert balance.reserved == Decimal("0")

@pytest.mark.asyncio
async def test_atomic_retries_version_conflicts(db_session):
    store = LedgerStore(db_session, max_retries=3)
    attempts = []

    async def work():
        attempts.append(1)
        if len(attempts) == 1:
            raise StaleDataError("row changed")
        return await store.credit("dave", "USDT", Decimal("1"), LedgerReason.DEPOSIT, "retry-me")

    entry = await store.atomic(work)
    assert len(attempts) == 2
    assert entry.balance_after == Decimal("1")

@pytest.mark.asyncio
async def test_atomic_gives_up_after_max_retries(db_session):
    store = LedgerStore(db_session, max_retries=2)
    attempts = []

    async def work():
        attempts.append(1)
        raise VersionConflictError()

    with pytest.raises(VersionConflictError):
        await store.atomic(work)
    assert len(attempts) == 2

@pytest.mark.asyncio
async def test_concurrent_credits_serialize_on_version(session_factory):
    writers = 6

    async def credit_in_own_session(n):
        async with session_factory() as db:
            store = LedgerStore(db, max_retries=writers + 4)
            return await store.atomic(lambda: store.credit("alice", "USDT", Decimal("1"), LedgerReason.DEPOSIT, f"dep-{n}"))

    await asyncio.gather(*(credit_in_own_session(n) for n in range(writers)))

    async with session_factory() as db:
        store = LedgerStore(db)
        balance = await store.get_balance("alice", "USDT")
        assert balance.version == writers
        assert balance.available == Decimal(writers)
        assert balance.reserved == Decimal("0")
        assert len(await store.list_entries("alice")) == writers
        assert await store.reconstruct("alice", "USDT") == (Decimal(writers), Decimal("0"))

@pytest.mark.asyncio
async def test_reference_reused_with_different_terms_is_rejected(db_session):
    store = LedgerStore(db_session)
    await store.atomic(lambda: store.credit("alice", "USDT", Decimal("100"), LedgerReason.DEPOSIT, "pi_1"))

    with pytest.raises(DuplicateRequestError):
        await store.atomic(lambda: store.credit("bob", "USDT", Decimal("100"), LedgerReason.DEPOSIT, "pi_1"))
    with pytest.raises(DuplicateRequestError):
        await store.atomic(lambda: store.credit("alice", "USDT", Decimal("90"), LedgerReason.DEPOSIT, "pi_1"))
    with pytest.raises(DuplicateRequestError):
        await store.atomic(lambda: store.credit("alice", "BTC", Decimal("100"), LedgerReason.DEPOSIT, "pi_1"))

    # same terms, differently written, is still a plain replay
    replay = await store.atomic(lambda: store.credit("alice", "usdt", Decimal("100.00"), LedgerReason.DEPOSIT, "pi_1"))
    assert replay.account_id == "alice"
    assert (await store.get_balance("bob", "USDT")).available == Decimal("0")
    assert (await store.get_balance("alice", "USDT")).available == Decimal("100")

@pytest.mark.asyncio
async def test_list_all_entries_across_accounts(db_session):
    store = LedgerStore(db_session)
    await store.atomic(lambda: store.credit("alice", "USDT", Decimal("10"), LedgerReason.DEPOSIT, "a-1"))
    await store.atomic(lambda: store.credit("bob", "BTC", Decimal("1"), LedgerReason.DEPOSIT, "b-1"))
    await store.atomic(lambda: store.debit("bob", "BTC", Decimal("0.5"), LedgerReason.ADJUSTMENT, "b-2"))

    entries, total = await store.list_all_entries()
    assert total == 3
    assert {e.account_id for e in entries} == {"alice", "bob"}

    entries, total = await store.list_all_entries(account_id="bob", reason=LedgerReason.DEPOSIT)
    assert total == 1
    assert entries[0].reference_id == "b-1"

    entries, total = await store.list_all_entries(asset="btc", limit=1)
    assert total == 2
    assert len(entries) == 1

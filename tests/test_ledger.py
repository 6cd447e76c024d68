"""Balance ledger: idempotency, metering policy and funds checks."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.core.errors import InsufficientFundsError, ValidationError
from app.models import Balance, DeltaKind, LedgerEntry
from app.services.ledger_service import BalanceSnapshot, billable_minutes


@pytest.mark.parametrize(
    "seconds,minutes",
    [(0, 0), (-5, 0), (1, 1), (59, 1), (60, 1), (61, 2), (125, 3), (900, 15)],
)
def test_billable_minutes_round_up(seconds, minutes):
    assert billable_minutes(seconds) == minutes


async def test_apply_delta_is_idempotent(db, ledger):
    first = await ledger.apply_delta(db, 1, DeltaKind.ADJUSTMENT, Decimal("100"), key="topup-1", reason="topup")
    second = await ledger.apply_delta(db, 1, DeltaKind.ADJUSTMENT, Decimal("100"), key="topup-1", reason="topup")

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.balance_after == Decimal("100.00")

    snapshot = await ledger.get_balance(db, 1, use_cache=False)
    assert snapshot.amount == Decimal("100.00")
    entries = await db.scalar(select(func.count(LedgerEntry.id)).where(LedgerEntry.tenant_id == 1))
    assert entries == 1


async def test_apply_delta_requires_key(db, ledger):
    with pytest.raises(ValidationError):
        await ledger.apply_delta(db, 1, DeltaKind.ADJUSTMENT, Decimal("1"), key="", reason="topup")


async def test_preauth_charge_respects_floor(db, ledger):
    await ledger.apply_delta(db, 2, DeltaKind.ADJUSTMENT, Decimal("10"), key="topup", reason="topup")

    with pytest.raises(InsufficientFundsError) as exc_info:
        await ledger.apply_delta(db, 2, DeltaKind.PREAUTH_CHARGE, Decimal("-15"), key="fee", reason="fee")
    assert exc_info.value.status_code == 402

    snapshot = await ledger.get_balance(db, 2, use_cache=False)
    assert snapshot.amount == Decimal("10.00")
    assert await ledger.get_entry(db, "fee") is None


async def test_metering_may_overdraw(db, ledger):
    result = await ledger.meter_call(db, 3, "call-overdraw", 61)

    assert result.billed_minutes == 2
    assert result.cost == Decimal("10.00")
    assert result.balance_after == Decimal("-10.00")
    assert await ledger.get_available_minutes(db, 3) == 0


async def test_free_minutes_are_used_first(db, ledger):
    await ledger.set_minutes_allowance(db, 4, 10, key="plan-1")

    first = await ledger.meter_call(db, 4, "c1", 125)
    assert (first.free_minutes, first.cost) == (3, Decimal("0.00"))

    second = await ledger.meter_call(db, 4, "c2", 900)
    assert second.free_minutes == 7
    assert second.paid_minutes == 8
    assert second.cost == Decimal("40.00")

    snapshot = await ledger.get_balance(db, 4, use_cache=False)
    assert snapshot.amount == Decimal("-40.00")
    assert snapshot.free_minutes_left == 0


async def test_repeated_call_metering_charges_once(db, ledger):
    first = await ledger.meter_call(db, 5, "dup-call", 120)
    again = await ledger.meter_call(db, 5, "dup-call", 120)

    assert again.duplicate is True
    assert again.cost == first.cost == Decimal("10.00")
    snapshot = await ledger.get_balance(db, 5, use_cache=False)
    assert snapshot.amount == Decimal("-10.00")


async def test_balance_matches_sum_of_entries(db, ledger):
    await ledger.apply_delta(db, 6, DeltaKind.ADJUSTMENT, Decimal("50"), key="a", reason="topup")
    await ledger.meter_call(db, 6, "x", 30)
    await ledger.meter_call(db, 6, "y", 190)
    await ledger.apply_delta(db, 6, DeltaKind.ADJUSTMENT, Decimal("-2.5"), key="b", reason="correction")

    total = await db.scalar(select(func.sum(LedgerEntry.amount)).where(LedgerEntry.tenant_id == 6))
    balance = await db.scalar(select(Balance.amount).where(Balance.tenant_id == 6))
    assert Decimal(total) == Decimal(balance) == Decimal("22.50")


async def test_concurrent_deltas_serialize(session_factory, ledger):
    async def top_up(i: int):
        async with session_factory() as session:
            await ledger.apply_delta(session, 7, DeltaKind.ADJUSTMENT, Decimal("1"), key=f"t{i}", reason="topup")

    await asyncio.gather(*(top_up(i) for i in range(10)))

    async with session_factory() as session:
        snapshot = await ledger.get_balance(session, 7, use_cache=False)
    assert snapshot.amount == Decimal("10.00")
    assert snapshot.version == 10


async def test_balance_cache_is_invalidated_by_deltas(db, ledger):
    before = await ledger.get_balance(db, 8)
    assert before.amount == Decimal("0")

    await ledger.apply_delta(db, 8, DeltaKind.ADJUSTMENT, Decimal("25"), key="k", reason="topup")

    after = await ledger.get_balance(db, 8)
    assert after.amount == Decimal("25.00")


def test_available_minutes_never_negative(ledger):
    overdrawn = BalanceSnapshot(tenant_id=1, amount=Decimal("-100"), free_minutes_limit=0, free_minutes_used=0, version=1)
    funded = BalanceSnapshot(tenant_id=1, amount=Decimal("12"), free_minutes_limit=5, free_minutes_used=1, version=1)

    assert ledger.available_minutes(overdrawn) == 0
    assert ledger.available_minutes(funded) == 4 + 2


async def test_minutes_allowance_reset(db, ledger):
    await ledger.set_minutes_allowance(db, 9, 5, key="p1")
    await ledger.meter_call(db, 9, "m1", 180)

    snapshot = await ledger.set_minutes_allowance(db, 9, 20, key="p2", reset_used=True)
    assert snapshot.free_minutes_limit == 20
    assert snapshot.free_minutes_left == 20

    repeated = await ledger.set_minutes_allowance(db, 9, 99, key="p2")
    assert repeated.free_minutes_limit == 20

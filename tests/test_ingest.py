"""Call event ingestion: metering, records, redelivery and dead letters."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.models import ActiveCall, CallRecord, DeadLetterEvent, LedgerEntry
from app.schemas.webhook import CallEndedEvent, CallStartedEvent
from app.services.ingest_service import CallEventIngestor
from app.services.lifecycle_service import NumberOutcome
from app.services.notification_service import NotificationDispatcher

LINE = "+70001112233"
TENANT = 5
STARTED = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def ended(call_id: str, duration: int, **overrides) -> CallEndedEvent:
    data = {
        "call_id": call_id,
        "caller": "+79990000001",
        "callee": LINE,
        "direction": "inbound",
        "started_at": STARTED,
        "duration_seconds": duration,
    }
    data.update(overrides)
    return CallEndedEvent(**data)


@pytest.fixture
def ingestor(ledger, cache, session_factory) -> CallEventIngestor:
    return CallEventIngestor(
        ledger=ledger,
        cache=cache,
        dispatcher=NotificationDispatcher(backoff_seconds=0, attempt_timeout=1),
        session_factory=session_factory,
    )


@pytest.fixture
async def connected_line(db, lifecycle):
    report = await lifecycle.connect(db, TENANT, [LINE])
    assert report.results[0].outcome == NumberOutcome.CONNECTED
    return LINE


async def test_free_minutes_then_overage(db, ledger, ingestor, connected_line):
    await ledger.set_minutes_allowance(db, TENANT, 10, key="plan")
    assert await ledger.get_available_minutes(db, TENANT) == 10

    first = await ingestor.on_call_ended(db, ended("call-1", 125))
    assert first.cost == Decimal("0.00")
    assert first.billed_minutes == 3
    assert first.free_minutes == 3
    assert await ledger.get_available_minutes(db, TENANT) == 7

    second = await ingestor.on_call_ended(db, ended("call-2", 900, started_at=STARTED + timedelta(minutes=5)))
    assert second.billed_minutes == 15
    assert second.free_minutes == 7
    assert second.cost == Decimal("40.00")

    snapshot = await ledger.get_balance(db, TENANT, use_cache=False)
    assert snapshot.amount == Decimal("-40.00")
    assert snapshot.free_minutes_left == 0

    records = (await db.execute(select(CallRecord).order_by(CallRecord.id))).scalars().all()
    assert [r.call_id for r in records] == ["call-1", "call-2"]
    assert [Decimal(r.cost) for r in records] == [Decimal("0.00"), Decimal("40.00")]
    assert all(r.tenant_id == TENANT for r in records)


async def test_redelivered_end_event_changes_nothing(db, ledger, ingestor, connected_line):
    first = await ingestor.on_call_ended(db, ended("call-dup", 61))
    again = await ingestor.on_call_ended(db, ended("call-dup", 61))

    assert first.duplicate is False
    assert again.duplicate is True
    assert again.cost == first.cost == Decimal("10.00")
    assert again.record_id == first.record_id

    assert await db.scalar(select(func.count(CallRecord.id))) == 1
    assert await db.scalar(select(func.count(LedgerEntry.id)).where(LedgerEntry.reason == "call_metering")) == 1
    snapshot = await ledger.get_balance(db, TENANT, use_cache=False)
    assert snapshot.amount == Decimal("-10.00")


async def test_concurrent_redeliveries_meter_once(db, ledger, ingestor, connected_line, session_factory):
    async def deliver():
        async with session_factory() as session:
            return await ingestor.on_call_ended(session, ended("call-race", 61))

    results = await asyncio.gather(*(deliver() for _ in range(5)))

    assert sorted(r.duplicate for r in results) == [False, True, True, True, True]
    assert len({r.record_id for r in results}) == 1
    assert await db.scalar(select(func.count(CallRecord.id))) == 1
    assert await db.scalar(select(func.count(LedgerEntry.id)).where(LedgerEntry.reason == "call_metering")) == 1
    snapshot = await ledger.get_balance(db, TENANT, use_cache=False)
    assert snapshot.amount == Decimal("-10.00")


async def test_started_then_ended_clears_active_call(db, ingestor, connected_line):
    started = CallStartedEvent(call_id="live-1", caller="89990000001", callee=LINE, started_at=STARTED)

    assert await ingestor.on_call_started(db, started) is True
    assert await ingestor.on_call_started(db, started) is False

    active = (await db.execute(select(ActiveCall))).scalars().all()
    assert len(active) == 1
    assert active[0].tenant_id == TENANT
    assert active[0].caller_number == "+79990000001"

    await ingestor.on_call_ended(db, ended("live-1", 30))
    assert await db.scalar(select(func.count(ActiveCall.id))) == 0


async def test_zero_duration_answered_is_missed(db, ingestor, connected_line):
    outcome = await ingestor.on_call_ended(db, ended("short", 0))

    record = await db.get(CallRecord, outcome.record_id)
    assert record.status == "missed"
    assert Decimal(record.cost) == Decimal("0")
    assert record.billed_minutes == 0


async def test_outbound_call_is_billed_to_caller_line(db, ingestor, connected_line):
    outcome = await ingestor.on_call_ended(
        db,
        ended("out-1", 60, caller=LINE, callee="+79995556677", direction="outbound"),
    )
    assert outcome.tenant_id == TENANT
    assert outcome.cost == Decimal("5.00")


async def test_unknown_line_is_recorded_without_billing(db, ingestor):
    outcome = await ingestor.on_call_ended(db, ended("stray", 300, callee="+70009998877"))

    assert outcome.tenant_id is None
    assert outcome.dispatch is False
    assert await db.scalar(select(func.count(LedgerEntry.id))) == 0
    record = await db.get(CallRecord, outcome.record_id)
    assert record.line_number == "+70009998877"


async def test_disconnected_line_is_billed_but_not_dispatched(db, ingestor, lifecycle, connected_line):
    await lifecycle.disconnect(db, TENANT, LINE)

    outcome = await ingestor.on_call_ended(db, ended("late", 60))
    assert outcome.tenant_id == TENANT
    assert outcome.cost == Decimal("5.00")
    assert outcome.dispatch is False


async def test_database_failure_is_dead_lettered_and_replayed(db, ingestor, connected_line, monkeypatch):
    real_ingest = ingestor._ingest

    async def broken(session, event):
        raise OperationalError("INSERT INTO call_records", {}, Exception("database is locked"))

    monkeypatch.setattr(ingestor, "_ingest", broken)
    outcome = await ingestor.on_call_ended(db, ended("parked", 120))
    assert outcome.dead_lettered is True
    assert await db.scalar(select(func.count(CallRecord.id))) == 0

    letters = (await db.execute(select(DeadLetterEvent))).scalars().all()
    assert [letter.call_id for letter in letters] == ["parked"]

    monkeypatch.setattr(ingestor, "_ingest", real_ingest)
    assert await ingestor.replay_dead_letters(db) == 1

    record = (await db.execute(select(CallRecord).where(CallRecord.call_id == "parked"))).scalar_one()
    assert Decimal(record.cost) == Decimal("10.00")
    resolved = await db.scalar(select(DeadLetterEvent.resolved_at).where(DeadLetterEvent.call_id == "parked"))
    assert resolved is not None

    # Nothing left to replay
    assert await ingestor.replay_dead_letters(db) == 0

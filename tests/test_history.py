"""Call history paging and period filters."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from app.core.errors import ValidationError
from app.db.base import utcnow
from app.models import CallRecord
from app.services.history_service import CallHistoryService, HistoryCursor, Period, period_start


def make_record(call_id: str, call_time: datetime, tenant_id: int = 5) -> CallRecord:
    return CallRecord(
        call_id=call_id,
        tenant_id=tenant_id,
        line_number="+70001112233",
        caller_number="+79990000001",
        callee_number="+70001112233",
        direction="inbound",
        status="answered",
        duration_seconds=60,
        billed_minutes=1,
        free_minutes=0,
        rate=Decimal("5"),
        cost=Decimal("5"),
        call_time=call_time,
    )


@pytest.fixture
def history() -> CallHistoryService:
    return CallHistoryService(timezone_name="Europe/Moscow")


async def seed(db, count: int, tenant_id: int = 5, start: datetime = None) -> None:
    start = start or utcnow() - timedelta(hours=1)
    db.add_all(
        make_record(f"t{tenant_id}-c{i}", start + timedelta(seconds=i), tenant_id)
        for i in range(count)
    )
    await db.commit()


async def test_newest_first_and_tenant_scoped(db, history):
    await seed(db, 3, tenant_id=5)
    await seed(db, 2, tenant_id=6)

    page = await history.list(db, 5)

    assert [r.call_id for r in page.items] == ["t5-c2", "t5-c1", "t5-c0"]
    assert page.total_count == 3
    assert page.total_pages == 1
    assert page.has_more is False


async def test_pages_stay_stable_under_inserts(db, history):
    await seed(db, 5)

    first = await history.list(db, 5, page=1, limit=2)
    assert [r.call_id for r in first.items] == ["t5-c4", "t5-c3"]
    assert first.total_pages == 3

    # New calls land between page requests
    db.add(make_record("late-1", utcnow()))
    db.add(make_record("late-2", utcnow()))
    await db.commit()

    second = await history.list(db, 5, page=2, limit=2, snapshot=first.snapshot)
    third = await history.list(db, 5, page=3, limit=2, snapshot=first.snapshot)

    assert [r.call_id for r in second.items] == ["t5-c2", "t5-c1"]
    assert [r.call_id for r in third.items] == ["t5-c0"]
    assert third.has_more is False
    assert second.total_count == 5

    fresh = await history.list(db, 5, page=1, limit=2)
    assert [r.call_id for r in fresh.items] == ["late-2", "late-1"]


async def test_cursor_walk_has_no_gaps_or_duplicates(db, history):
    same_time = utcnow() - timedelta(minutes=10)
    db.add_all(make_record(f"tie-{i}", same_time) for i in range(4))
    await db.commit()
    await seed(db, 3)

    seen = []
    page = await history.list(db, 5, limit=3)
    seen.extend(r.call_id for r in page.items)
    while page.next_cursor:
        db.add(make_record(f"new-{len(seen)}", utcnow()))
        await db.commit()
        page = await history.list(db, 5, limit=3, cursor=page.next_cursor, snapshot=page.snapshot)
        seen.extend(r.call_id for r in page.items)

    assert len(seen) == 7
    assert len(set(seen)) == 7
    assert not any(call_id.startswith("new-") for call_id in seen)


async def test_period_filters(db, history):
    now = utcnow()
    db.add_all([
        make_record("recent", now - timedelta(minutes=1)),
        make_record("days-ago", now - timedelta(days=3)),
        make_record("weeks-ago", now - timedelta(days=20)),
        make_record("months-ago", now - timedelta(days=200)),
    ])
    await db.commit()

    week = await history.list(db, 5, period=Period.WEEK)
    month = await history.list(db, 5, period=Period.MONTH)
    year = await history.list(db, 5, period=Period.YEAR)

    assert [r.call_id for r in week.items] == ["recent", "days-ago"]
    assert month.total_count == 3
    assert year.total_count == 4


def test_today_starts_at_local_midnight():
    now = datetime(2026, 10, 18, 1, 30, tzinfo=timezone.utc)  # 04:30 in Moscow
    start = period_start(Period.TODAY, now, ZoneInfo("Europe/Moscow"))
    assert start == datetime(2026, 10, 17, 21, 0, tzinfo=timezone.utc)


async def test_rejects_bad_input(db, history):
    with pytest.raises(ValidationError):
        await history.list(db, 5, page=0)
    with pytest.raises(ValidationError):
        await history.list(db, 5, limit=10_000)
    with pytest.raises(ValidationError):
        await history.list(db, 5, cursor="not-a-cursor")
    with pytest.raises(ValidationError):
        await history.list(db, 5, timezone_name="Mars/Olympus")


def test_cursor_token_round_trip():
    cursor = HistoryCursor(call_time=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc), id=42)
    assert HistoryCursor.decode(cursor.encode()) == cursor

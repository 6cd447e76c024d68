"""Paginated call history for the dashboard.

The first page pins a snapshot (highest record id and the clock used for the
period window). Later pages pass it back, so calls recorded in between never
shift page boundaries.
"""

import base64
import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ValidationError
from app.core.logging import get_logger
from app.db.base import as_utc, utcnow
from app.models import CallRecord

logger = get_logger(__name__)


class Period(str, Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"


_PERIOD_DAYS = {Period.WEEK: 7, Period.MONTH: 30, Period.YEAR: 365}


def period_start(period: Period, now: datetime, tz: ZoneInfo) -> Optional[datetime]:
    """UTC lower bound of ``period``; today starts at local midnight."""
    if period == Period.ALL:
        return None
    if period == Period.TODAY:
        local = now.astimezone(tz)
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.astimezone(timezone.utc)
    return now - timedelta(days=_PERIOD_DAYS[period])


def _encode(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _decode(token: str, what: str) -> dict[str, Any]:
    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (ValueError, TypeError):
        raise ValidationError(f"Malformed {what}")
    if not isinstance(payload, dict):
        raise ValidationError(f"Malformed {what}")
    return payload


@dataclass(frozen=True)
class HistorySnapshot:
    max_id: int
    as_of: datetime

    def encode(self) -> str:
        return _encode({"id": self.max_id, "at": self.as_of.isoformat()})

    @classmethod
    def decode(cls, token: str) -> "HistorySnapshot":
        payload = _decode(token, "snapshot")
        try:
            return cls(max_id=int(payload["id"]), as_of=as_utc(datetime.fromisoformat(payload["at"])))
        except (KeyError, ValueError, TypeError):
            raise ValidationError("Malformed snapshot")


@dataclass(frozen=True)
class HistoryCursor:
    """Position after the last returned record."""

    call_time: datetime
    id: int

    def encode(self) -> str:
        return _encode({"t": self.call_time.isoformat(), "i": self.id})

    @classmethod
    def decode(cls, token: str) -> "HistoryCursor":
        payload = _decode(token, "cursor")
        try:
            return cls(call_time=as_utc(datetime.fromisoformat(payload["t"])), id=int(payload["i"]))
        except (KeyError, ValueError, TypeError):
            raise ValidationError("Malformed cursor")


@dataclass
class CallHistoryPage:
    items: list[CallRecord] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    limit: int = 20
    total_pages: int = 0
    has_more: bool = False
    snapshot: Optional[str] = None
    next_cursor: Optional[str] = None


class CallHistoryService:
    """Read-only view over call records."""

    def __init__(self, timezone_name: Optional[str] = None):
        self.timezone_name = timezone_name or settings.default_timezone

    def _zone(self, name: Optional[str]) -> ZoneInfo:
        try:
            return ZoneInfo(name or self.timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError("Unknown timezone", timezone=name)

    async def _pin(self, db: AsyncSession, tenant_id: int) -> HistorySnapshot:
        max_id = await db.scalar(
            select(func.max(CallRecord.id)).where(CallRecord.tenant_id == tenant_id)
        )
        return HistorySnapshot(max_id=max_id or 0, as_of=utcnow())

    async def list(
        self,
        db: AsyncSession,
        tenant_id: int,
        page: int = 1,
        limit: int = 20,
        period: Period = Period.ALL,
        cursor: Optional[str] = None,
        snapshot: Optional[str] = None,
        timezone_name: Optional[str] = None,
    ) -> CallHistoryPage:
        if page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= limit <= settings.history_max_page_size:
            raise ValidationError(f"limit must be between 1 and {settings.history_max_page_size}")

        pinned = HistorySnapshot.decode(snapshot) if snapshot else await self._pin(db, tenant_id)
        start = period_start(Period(period), pinned.as_of, self._zone(timezone_name))

        filters = [CallRecord.tenant_id == tenant_id, CallRecord.id <= pinned.max_id]
        if start is not None:
            filters.append(CallRecord.call_time >= start)

        total = await db.scalar(select(func.count(CallRecord.id)).where(*filters)) or 0

        query = (
            select(CallRecord)
            .where(*filters)
            .order_by(CallRecord.call_time.desc(), CallRecord.id.desc())
        )
        if cursor:
            position = HistoryCursor.decode(cursor)
            query = query.where(
                or_(
                    CallRecord.call_time < position.call_time,
                    and_(
                        CallRecord.call_time == position.call_time,
                        CallRecord.id < position.id,
                    ),
                )
            )
        else:
            query = query.offset((page - 1) * limit)

        rows = list((await db.execute(query.limit(limit + 1))).scalars().all())
        has_more = len(rows) > limit
        items = rows[:limit]

        next_cursor = None
        if has_more and items:
            last = items[-1]
            next_cursor = HistoryCursor(call_time=as_utc(last.call_time), id=last.id).encode()

        logger.debug(
            "call_history_listed",
            tenant_id=tenant_id,
            period=Period(period).value,
            page=page,
            returned=len(items),
            total=total,
        )
        return CallHistoryPage(
            items=items,
            total_count=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
            has_more=has_more,
            snapshot=pinned.encode(),
            next_cursor=next_cursor,
        )

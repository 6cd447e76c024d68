"""Call records: provisional state while a call runs, immutable rows after."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, utcnow


class CallDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallStatus(str, enum.Enum):
    ANSWERED = "answered"
    MISSED = "missed"
    FAILED = "failed"
    BUSY = "busy"


class ActiveCall(Base):
    """A call the carrier reported as started but not yet ended."""

    __tablename__ = "active_calls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    tenant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    line_number: Mapped[str] = mapped_column(String(20), nullable=False)
    caller_number: Mapped[str] = mapped_column(String(50), nullable=False)
    callee_number: Mapped[str] = mapped_column(String(50), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), default=CallDirection.INBOUND.value)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class CallRecord(Base):
    """A completed call with its finalized cost.

    Written exactly once per carrier call id. Corrections go through a
    compensating ledger adjustment, never an update of this row.
    """

    __tablename__ = "call_records"
    __table_args__ = (
        Index("ix_call_records_tenant_time", "tenant_id", "call_time", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # None when the line is unknown to us (kept for audit)
    tenant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    line_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    caller_number: Mapped[str] = mapped_column(String(50), nullable=False)
    callee_number: Mapped[str] = mapped_column(String(50), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    duration_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    billed_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    free_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)

    call_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    record_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chat_history: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    assistant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class DeadLetterEvent(Base):
    """A call-ended event that could not be committed.

    Replayed by the maintenance loop until it succeeds or runs out of attempts.
    """

    __tablename__ = "dead_letter_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

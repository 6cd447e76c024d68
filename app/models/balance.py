"""Prepaid balance and its append-only ledger."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Enum, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TenantMixin, TimestampMixin, utcnow


class DeltaKind(str, enum.Enum):
    """Why the balance moved."""

    METERING = "metering"  # call usage, may overdraw
    ADJUSTMENT = "adjustment"  # top-ups, refunds, manual corrections
    PREAUTH_CHARGE = "preauth_charge"  # must not cross the floor


class Balance(Base, TimestampMixin):
    """Current funds and free-minute allowance of a tenant."""

    __tablename__ = "balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)

    free_minutes_limit: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    free_minutes_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Incremented on every applied delta
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @property
    def free_minutes_left(self) -> int:
        return max(0, self.free_minutes_limit - self.free_minutes_used)


class LedgerEntry(Base, TenantMixin):
    """One applied balance delta. Never updated or deleted."""

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    kind: Mapped[DeltaKind] = mapped_column(
        Enum(
            DeltaKind,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    free_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    # Optional pointer back to the call or number that caused it
    reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

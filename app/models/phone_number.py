"""Phone number model and its lifecycle states."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, DateTime, Enum, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, utcnow

if TYPE_CHECKING:
    from app.models.routing import InboundRouting


class NumberStatus(str, enum.Enum):
    """Lifecycle of a phone number as seen by this service."""

    AVAILABLE = "available"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"

    @property
    def is_transient(self) -> bool:
        return self in (NumberStatus.CONNECTING, NumberStatus.DISCONNECTING)

    @property
    def is_owned(self) -> bool:
        """States in which tenant_id is an active owner."""
        return self in (
            NumberStatus.CONNECTING,
            NumberStatus.CONNECTED,
            NumberStatus.DISCONNECTING,
        )


# target -> states it may be entered from
ALLOWED_TRANSITIONS: dict[NumberStatus, frozenset[NumberStatus]] = {
    NumberStatus.CONNECTING: frozenset({NumberStatus.AVAILABLE, NumberStatus.DISCONNECTED}),
    NumberStatus.CONNECTED: frozenset({NumberStatus.CONNECTING, NumberStatus.DISCONNECTING}),
    NumberStatus.DISCONNECTING: frozenset({NumberStatus.CONNECTED}),
    NumberStatus.DISCONNECTED: frozenset({NumberStatus.DISCONNECTING, NumberStatus.CONNECTING}),
    NumberStatus.AVAILABLE: frozenset({NumberStatus.CONNECTING}),
}


class PhoneNumber(Base, TimestampMixin):
    """A carrier phone number and the tenant it is (or was last) attached to.

    Rows are never deleted: disconnecting is a state change so that call
    history keeps pointing at a real line.
    """

    __tablename__ = "phone_numbers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # The actual phone number (E.164 format)
    number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)

    # Current owner while connecting/connected/disconnecting, last owner otherwise
    tenant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    status: Mapped[NumberStatus] = mapped_column(
        Enum(
            NumberStatus,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=NumberStatus.AVAILABLE,
        nullable=False,
        index=True,
    )
    status_changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    # Carrier facts
    region: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    sms_supported: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_renewal_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    # Bumped on every connect so per-connection charges get distinct idempotency keys
    connection_seq: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    routing: Mapped[Optional["InboundRouting"]] = relationship(
        "InboundRouting",
        back_populates="phone_number",
        uselist=False,
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def owned_by(self, tenant_id: int) -> bool:
        return self.status.is_owned and self.tenant_id == tenant_id

    def __repr__(self) -> str:
        return f"<PhoneNumber {self.number} {self.status.value}>"

"""Inbound call routing attached to a connected number."""

from typing import TYPE_CHECKING, Optional

from sqlalchemy import JSON, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TenantMixin, TimestampMixin

if TYPE_CHECKING:
    from app.models.phone_number import PhoneNumber


class InboundRouting(Base, TenantMixin, TimestampMixin):
    """What happens when a call reaches the number.

    One row per number; updates overwrite it in place.
    """

    __tablename__ = "inbound_routings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone_number_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("phone_numbers.id"),
        unique=True,
        nullable=False,
    )

    assistant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    channel_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    function_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    prompt_task: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    phone_number: Mapped["PhoneNumber"] = relationship("PhoneNumber", back_populates="routing")

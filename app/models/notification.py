"""Tenant notification sinks: chat/SMS channels and user functions."""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TenantMixin, TimestampMixin


class ChannelType(str, enum.Enum):
    TELEGRAM = "telegram"
    SMS = "sms"


class NotificationChannel(Base, TenantMixin, TimestampMixin):
    """Where call notifications are delivered.

    ``settings`` holds the delivery target:
    - telegram: ``{"bot_token": ..., "chat_id": ...}``
    - sms: ``{"phone": "+7..."}``
    """

    __tablename__ = "notification_channels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class UserFunction(Base, TenantMixin, TimestampMixin):
    """A tenant-defined callable with a JSON-schema parameter declaration."""

    __tablename__ = "user_functions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    # Invoked over HTTP when set, otherwise rendered to the linked channel
    webhook_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    channel_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("notification_channels.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

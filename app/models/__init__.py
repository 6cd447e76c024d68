"""Database models for the telephony core."""

from app.models.assistant import Assistant
from app.models.balance import Balance, DeltaKind, LedgerEntry
from app.models.call_record import (
    ActiveCall,
    CallDirection,
    CallRecord,
    CallStatus,
    DeadLetterEvent,
)
from app.models.notification import ChannelType, NotificationChannel, UserFunction
from app.models.phone_number import ALLOWED_TRANSITIONS, NumberStatus, PhoneNumber
from app.models.routing import InboundRouting

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ActiveCall",
    "Assistant",
    "Balance",
    "CallDirection",
    "CallRecord",
    "CallStatus",
    "ChannelType",
    "DeadLetterEvent",
    "DeltaKind",
    "InboundRouting",
    "LedgerEntry",
    "NotificationChannel",
    "NumberStatus",
    "PhoneNumber",
    "UserFunction",
]

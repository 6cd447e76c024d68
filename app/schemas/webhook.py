"""Carrier webhook schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from app.models.call_record import CallDirection, CallStatus
from app.utils.helpers import normalize_phone


class CarrierCallEvent(BaseModel):
    """Fields shared by call-started and call-ended deliveries."""

    call_id: str = Field(..., min_length=1, max_length=255)
    caller: str = Field(..., description="Calling party, any dialable format")
    callee: str = Field(..., description="Called party, any dialable format")
    direction: CallDirection = CallDirection.INBOUND
    started_at: datetime = Field(..., description="Call start timestamp")

    @field_validator("caller", "callee")
    @classmethod
    def normalize_numbers(cls, v: str) -> str:
        return normalize_phone(v) or v

    @property
    def line_number(self) -> str:
        """Our number on the call: callee for inbound, caller for outbound."""
        return self.callee if self.direction == CallDirection.INBOUND else self.caller


class CallStartedEvent(CarrierCallEvent):
    """Carrier reports a call has begun."""


class CallEndedEvent(CarrierCallEvent):
    """Carrier reports a call has finished."""

    duration_seconds: int = Field(0, ge=0)
    status: CallStatus = CallStatus.ANSWERED
    record_url: Optional[str] = None
    chat_history: Optional[list[dict[str, Any]]] = None
    assistant_id: Optional[int] = None


class InboundParamsRequest(BaseModel):
    """Carrier scenario asking how to handle an incoming call."""

    number: str


class InboundFunction(BaseModel):
    name: str
    description: Optional[str] = None
    parameters: dict[str, Any] = {}


class InboundParamsResponse(BaseModel):
    number: str
    accepted: bool
    reason: Optional[str] = None
    tenant_id: Optional[int] = None
    assistant_id: Optional[int] = None
    prompt_task: Optional[str] = None
    functions: list[InboundFunction] = []
    available_minutes: int = 0


class AssistantSyncRequest(BaseModel):
    """Assistant catalog entry pushed by the assistant service."""

    tenant_id: int
    name: str
    is_active: bool = True


class WebhookResponse(BaseModel):
    """Standard webhook response."""

    received: bool = True
    message: str = "Webhook processed"
    call_id: Optional[str] = None
    duplicate: bool = False
    dead_lettered: bool = False
    cost: Optional[Decimal] = None

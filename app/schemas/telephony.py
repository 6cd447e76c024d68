"""Number lifecycle, routing and balance schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from app.services.lifecycle_service import (
    ConnectSummary,
    DisconnectOutcome,
    NumberOutcome,
)


class ConnectRequest(BaseModel):
    """Numbers to connect to the caller's account."""

    numbers: List[str] = Field(..., min_length=1, max_length=20)


class NumberResultResponse(BaseModel):
    number: str
    outcome: NumberOutcome
    error: Optional[str] = None
    message: Optional[str] = None


class ConnectResponse(BaseModel):
    success: bool
    summary: ConnectSummary
    message: str
    results: List[NumberResultResponse]


class DisconnectRequest(BaseModel):
    number: str


class DisconnectResponse(BaseModel):
    number: str
    outcome: DisconnectOutcome
    message: str


class RoutingRequest(BaseModel):
    """Inbound call handling for a connected number."""

    assistant_id: Optional[int] = None
    channel_ids: List[int] = []
    function_ids: List[int] = []
    prompt_task: Optional[str] = Field(None, max_length=4000)


class RoutingResponse(BaseModel):
    number: str
    assistant_id: Optional[int] = None
    channel_ids: List[int] = []
    function_ids: List[int] = []
    prompt_task: Optional[str] = None


class AvailableNumberResponse(BaseModel):
    """A number offered by the carrier that can be connected."""

    number: str
    category: str
    price: Decimal
    installation_price: Decimal
    region: Optional[str] = None
    sms_supported: bool


class PhoneNumberResponse(BaseModel):
    number: str
    status: str
    status_changed_at: datetime
    region: Optional[str] = None
    monthly_price: Decimal
    sms_supported: bool
    connected_at: Optional[datetime] = None
    next_renewal_at: Optional[datetime] = None
    routing: Optional[RoutingResponse] = None


class BalanceResponse(BaseModel):
    tenant_id: int
    amount: Decimal
    free_minutes_limit: int
    free_minutes_used: int
    free_minutes_left: int
    available_minutes: int
    rate_per_minute: Decimal
    floor: Decimal


class BalanceAdjustRequest(BaseModel):
    """Manual top-up, refund or correction."""

    amount: Decimal = Field(..., description="Positive to credit, negative to debit")
    reason: str = Field(..., min_length=1, max_length=200)
    idempotency_key: str = Field(..., min_length=1, max_length=200)


class BalanceAdjustResponse(BaseModel):
    amount: Decimal
    balance_after: Decimal
    duplicate: bool


class MinutesAllowanceRequest(BaseModel):
    limit: int = Field(..., ge=0)
    reset_used: bool = False
    idempotency_key: str = Field(..., min_length=1, max_length=200)


class LedgerEntryResponse(BaseModel):
    id: int
    kind: str
    amount: Decimal
    free_minutes: int
    reason: str
    balance_after: Decimal
    reference: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

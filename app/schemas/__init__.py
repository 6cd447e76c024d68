"""Pydantic schemas for API requests and responses."""

from app.schemas.calls import CallHistoryResponse, CallRecordResponse
from app.schemas.notifications import (
    ChannelCreate,
    ChannelResponse,
    ChannelUpdate,
    FunctionCreate,
    FunctionResponse,
    FunctionUpdate,
)
from app.schemas.telephony import (
    AvailableNumberResponse,
    BalanceAdjustRequest,
    BalanceResponse,
    ConnectRequest,
    ConnectResponse,
    DisconnectRequest,
    DisconnectResponse,
    PhoneNumberResponse,
    RoutingRequest,
    RoutingResponse,
)
from app.schemas.webhook import (
    CallEndedEvent,
    CallStartedEvent,
    InboundParamsResponse,
    WebhookResponse,
)

__all__ = [
    "AvailableNumberResponse",
    "BalanceAdjustRequest",
    "BalanceResponse",
    "CallEndedEvent",
    "CallHistoryResponse",
    "CallRecordResponse",
    "CallStartedEvent",
    "ChannelCreate",
    "ChannelResponse",
    "ChannelUpdate",
    "ConnectRequest",
    "ConnectResponse",
    "DisconnectRequest",
    "DisconnectResponse",
    "FunctionCreate",
    "FunctionResponse",
    "FunctionUpdate",
    "InboundParamsResponse",
    "PhoneNumberResponse",
    "RoutingRequest",
    "RoutingResponse",
    "WebhookResponse",
]

"""Notification channel and user function schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from app.core.errors import ValidationError as DomainValidationError
from app.models.notification import ChannelType
from app.services.notification_service import build_arguments_model
from app.utils.helpers import normalize_phone


def check_channel_settings(channel_type: ChannelType, settings: dict[str, Any]) -> dict[str, Any]:
    """Required delivery target per channel type."""
    if channel_type == ChannelType.TELEGRAM:
        if not settings.get("bot_token") or not settings.get("chat_id"):
            raise ValueError("telegram channels need bot_token and chat_id")
        return {"bot_token": str(settings["bot_token"]), "chat_id": str(settings["chat_id"])}

    phone = normalize_phone(str(settings.get("phone") or ""))
    if not phone:
        raise ValueError("sms channels need a phone number")
    return {"phone": phone}


def check_parameters(parameters: dict[str, Any]) -> dict[str, Any]:
    try:
        build_arguments_model("function", parameters)
    except DomainValidationError as e:
        raise ValueError(e.message)
    return parameters


class ChannelCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: ChannelType
    settings: dict[str, Any]
    is_active: bool = True
    priority: int = 0

    @model_validator(mode="after")
    def validate_settings(self) -> "ChannelCreate":
        self.settings = check_channel_settings(self.type, self.settings)
        return self


class ChannelUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    settings: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None


class ChannelResponse(BaseModel):
    id: int
    name: str
    type: str
    settings: dict[str, Any]
    is_active: bool
    priority: int
    last_used_at: Optional[datetime] = None
    created_at: datetime

    @field_validator("settings")
    @classmethod
    def mask_secrets(cls, v: dict[str, Any]) -> dict[str, Any]:
        masked = dict(v)
        token = masked.get("bot_token")
        if token:
            masked["bot_token"] = "***" + str(token)[-4:]
        return masked

    class Config:
        from_attributes = True


class FunctionCreate(BaseModel):
    name: str = Field(..., pattern=r"^[a-zA-Z0-9_-]{1,64}$")
    description: Optional[str] = Field(None, max_length=1000)
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON schema of the arguments object",
    )
    webhook_url: Optional[str] = Field(None, pattern=r"^https?://")
    channel_id: Optional[int] = None
    is_active: bool = True

    @field_validator("parameters")
    @classmethod
    def validate_parameters(cls, v: dict[str, Any]) -> dict[str, Any]:
        return check_parameters(v)


class FunctionUpdate(BaseModel):
    description: Optional[str] = Field(None, max_length=1000)
    parameters: Optional[dict[str, Any]] = None
    webhook_url: Optional[str] = Field(None, pattern=r"^https?://")
    channel_id: Optional[int] = None
    is_active: Optional[bool] = None

    @field_validator("parameters")
    @classmethod
    def validate_parameters(cls, v: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
        return check_parameters(v) if v is not None else v


class FunctionResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    parameters: dict[str, Any]
    webhook_url: Optional[str] = None
    channel_id: Optional[int] = None
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True

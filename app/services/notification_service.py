"""Call notification fan-out (Telegram bots, SMS gateway, user functions).

Every sink is delivered independently: a slow or broken sink is retried
within its own budget and reported in the result map, it never fails the
whole dispatch.
"""

import asyncio
import html
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Literal, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from app.core.config import settings
from app.core.errors import UpstreamError, ValidationError
from app.core.logging import get_logger
from app.utils.helpers import format_duration, mask_phone

logger = get_logger(__name__)


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"  # retries exhausted or permanent sink error
    REJECTED = "rejected"  # payload failed the function's schema
    SKIPPED = "skipped"  # sink inactive


@dataclass
class SinkResult:
    status: DeliveryStatus
    attempts: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class ChannelTarget:
    """Snapshot of a notification channel, detached from the ORM session."""

    id: int
    name: str
    type: str
    settings: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    @property
    def key(self) -> str:
        return f"channel:{self.id}"


@dataclass(frozen=True)
class FunctionTarget:
    """Snapshot of a user function and the channel it reports to."""

    id: int
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    webhook_url: Optional[str] = None
    channel: Optional[ChannelTarget] = None
    is_active: bool = True

    @property
    def key(self) -> str:
        return f"function:{self.id}"


@dataclass(frozen=True)
class CallNotification:
    """What sinks get told about a completed call."""

    call_id: str
    tenant_id: int
    line_number: str
    caller_number: str
    callee_number: str
    direction: str
    status: str
    duration_seconds: int
    cost: Decimal
    call_time: datetime
    assistant_id: Optional[int] = None
    prompt_task: Optional[str] = None
    chat_history: Optional[list[dict[str, Any]]] = None

    def transcript(self, limit: int = 1000) -> str:
        lines = []
        for entry in self.chat_history or []:
            role = entry.get("role") or entry.get("speaker") or "?"
            text = entry.get("content") or entry.get("text") or ""
            if text:
                lines.append(f"{role}: {text}")
        joined = "\n".join(lines)
        return joined[:limit]

    def arguments(self) -> dict[str, Any]:
        """Flat JSON-safe payload handed to user functions."""
        return {
            "call_id": self.call_id,
            "phone_number": self.line_number,
            "caller": self.caller_number,
            "callee": self.callee_number,
            "direction": self.direction,
            "status": self.status,
            "duration_seconds": self.duration_seconds,
            "cost": float(self.cost),
            "call_time": self.call_time.isoformat(),
            "assistant_id": self.assistant_id,
            "task": self.prompt_task,
            "transcript": self.transcript(),
        }


class SinkDeliveryError(UpstreamError):
    """Transient sink failure; retried."""


class PermanentDeliveryError(UpstreamError):
    """Sink rejected the request for good (bad token, unknown chat)."""


RETRYABLE = (SinkDeliveryError, httpx.TransportError, asyncio.TimeoutError)


# ============== Message formatting ==============

def format_call_message(event: CallNotification) -> str:
    """HTML message for chat bots."""
    title = "📞 Inbound call" if event.direction == "inbound" else "📲 Outbound call"
    text = (
        f"<b>{title}</b>\n\n"
        f"<b>Line:</b> <code>{html.escape(event.line_number)}</code>\n"
        f"<b>From:</b> {html.escape(event.caller_number)}\n"
        f"<b>To:</b> {html.escape(event.callee_number)}\n"
        f"<b>Status:</b> {html.escape(event.status)}\n"
        f"<b>Duration:</b> {format_duration(event.duration_seconds)}\n"
        f"<b>Cost:</b> {event.cost:.2f}"
    )
    if event.prompt_task:
        text += f"\n\n<b>Task:</b>\n{html.escape(event.prompt_task[:300])}"
    transcript = event.transcript(limit=1500)
    if transcript:
        text += f"\n\n<b>Conversation:</b>\n<pre>{html.escape(transcript)}</pre>"
    return text


def format_sms_message(event: CallNotification) -> str:
    return (
        f"Call {event.direction} {event.caller_number} -> {event.callee_number}, "
        f"{event.status}, {format_duration(event.duration_seconds)}"
    )


def format_function_message(function: FunctionTarget, arguments: dict[str, Any]) -> str:
    """Tool-call style message for functions that report to a chat."""
    lines = [f"<b>⚙️ Function call: {html.escape(function.name)}</b>", ""]
    for name, value in arguments.items():
        lines.append(f"<b>{html.escape(str(name))}:</b> {html.escape(str(value))}")
    return "\n".join(lines)


# ============== Function schema validation ==============

_JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def _schema_error(name: str, prop: str, message: str) -> ValidationError:
    return ValidationError(
        f"Function {name} has an invalid parameter schema",
        errors=[{"field": prop, "message": message}],
    )


def _property_type(name: str, prop: str, prop_schema: Any) -> Any:
    """Python type for one declared property; ``null`` in the type list makes it Optional."""
    if prop_schema is None:
        prop_schema = {}
    if not isinstance(prop_schema, dict):
        raise _schema_error(name, prop, "property schema must be an object")

    declared = prop_schema.get("type")
    if declared is None:
        type_names = []
    elif isinstance(declared, list):
        type_names = declared
    else:
        type_names = [declared]

    nullable = "null" in type_names
    py_types = []
    for type_name in type_names:
        if type_name == "null":
            continue
        if not isinstance(type_name, str) or type_name not in _JSON_TYPES:
            raise _schema_error(name, prop, f"unsupported type {type_name!r}")
        py_types.append(_JSON_TYPES[type_name])

    if not py_types:
        py_type: Any = Any
    elif len(py_types) == 1:
        py_type = py_types[0]
    else:
        py_type = Union[tuple(py_types)]

    enum = prop_schema.get("enum")
    if enum is not None:
        if not isinstance(enum, list) or not enum:
            raise _schema_error(name, prop, "enum must be a non-empty list")
        if not all(v is None or isinstance(v, (str, int, float, bool)) for v in enum):
            raise _schema_error(name, prop, "enum values must be scalars")
        nullable = nullable or None in enum
        values = tuple(v for v in enum if v is not None)
        py_type = Literal[values] if values else Any

    return Optional[py_type] if nullable else py_type


def build_arguments_model(name: str, schema: dict[str, Any]) -> type[BaseModel]:
    """Pydantic model for a function's JSON-schema ``parameters`` object.

    Any malformed schema raises the domain ``ValidationError``.
    """
    if not isinstance(schema, dict) or schema.get("type", "object") != "object":
        raise ValidationError(f"Function {name} parameters must describe an object")

    properties = schema.get("properties") or {}
    required = schema.get("required") or []
    if not isinstance(properties, dict):
        raise _schema_error(name, "properties", "properties must be an object")
    if not isinstance(required, list) or not all(isinstance(p, str) for p in required):
        raise _schema_error(name, "required", "required must be a list of names")

    unknown_required = set(required) - set(properties)
    if unknown_required:
        raise ValidationError(
            f"Function {name} requires undeclared parameters",
            errors=[{"field": p, "message": "required but not declared"} for p in sorted(unknown_required)],
        )

    fields: dict[str, Any] = {}
    for index, (prop, prop_schema) in enumerate(properties.items()):
        py_type = _property_type(name, str(prop), prop_schema)
        if prop in required:
            fields[f"field_{index}"] = (py_type, Field(..., alias=str(prop)))
        else:
            fields[f"field_{index}"] = (Optional[py_type], Field(None, alias=str(prop)))

    try:
        return create_model(
            f"{name}_arguments",
            __config__=ConfigDict(extra="ignore", populate_by_name=False),
            **fields,
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Function {name} has an invalid parameter schema: {e}")


def validate_function_payload(function: FunctionTarget, payload: dict[str, Any]) -> dict[str, Any]:
    """Check ``payload`` against the declared schema; return declared fields only."""
    model = build_arguments_model(function.name, function.parameters or {})
    try:
        parsed = model.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(
            f"Payload does not match parameters of {function.name}",
            errors=errors,
            function_id=function.id,
        )
    return parsed.model_dump(by_alias=True, exclude_none=True)


# ============== Dispatcher ==============

class NotificationDispatcher:
    """Deliver a call event to every configured sink."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        attempt_timeout: Optional[float] = None,
        total_budget: Optional[float] = None,
    ):
        self._http_client = http_client
        self.max_attempts = max_attempts or settings.dispatch_max_attempts
        self.backoff_seconds = (
            settings.dispatch_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self.backoff_max_seconds = backoff_max_seconds or settings.dispatch_backoff_max_seconds
        self.attempt_timeout = attempt_timeout or settings.dispatch_attempt_timeout_seconds
        self.total_budget = total_budget or settings.dispatch_total_budget_seconds

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.attempt_timeout) as client:
            yield client

    async def dispatch(
        self,
        event: CallNotification,
        channels: list[ChannelTarget],
        functions: list[FunctionTarget],
    ) -> dict[str, SinkResult]:
        """Deliver ``event`` to all sinks concurrently.

        Returns a status per sink key (``channel:<id>`` / ``function:<id>``).
        Never raises because of a sink.
        """
        async with self._client() as client:
            jobs: dict[str, Awaitable[SinkResult]] = {}
            for channel in channels:
                jobs[channel.key] = self._isolated(
                    channel.key, self._deliver_channel(client, channel, event)
                )
            for function in functions:
                jobs[function.key] = self._isolated(
                    function.key, self._deliver_function(client, function, event)
                )

            outcomes = await asyncio.gather(*jobs.values())

        report = dict(zip(jobs.keys(), outcomes))
        logger.info(
            "notifications_dispatched",
            call_id=event.call_id,
            tenant_id=event.tenant_id,
            statuses={key: result.status.value for key, result in report.items()},
        )
        return report

    async def _isolated(self, key: str, job: Awaitable[SinkResult]) -> SinkResult:
        """Report any error escaping a sink as that sink's failure."""
        try:
            return await job
        except ValidationError as e:
            logger.warning("sink_rejected", sink=key, error=e.message)
            return SinkResult(status=DeliveryStatus.REJECTED, error=e.message)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error("sink_crashed", sink=key, error=error, exc_info=True)
            return SinkResult(status=DeliveryStatus.FAILED, error=error)

    async def _deliver_channel(
        self,
        client: httpx.AsyncClient,
        channel: ChannelTarget,
        event: CallNotification,
    ) -> SinkResult:
        if not channel.is_active:
            return SinkResult(status=DeliveryStatus.SKIPPED)

        if channel.type == "telegram":
            text = format_call_message(event)
        else:
            text = format_sms_message(event)
        return await self._with_retries(
            channel.key,
            lambda: self._send_to_channel(client, channel, text),
        )

    async def _deliver_function(
        self,
        client: httpx.AsyncClient,
        function: FunctionTarget,
        event: CallNotification,
    ) -> SinkResult:
        if not function.is_active:
            return SinkResult(status=DeliveryStatus.SKIPPED)

        try:
            arguments = validate_function_payload(function, event.arguments())
        except ValidationError as e:
            logger.warning(
                "function_payload_rejected",
                function_id=function.id,
                call_id=event.call_id,
                errors=e.errors,
            )
            return SinkResult(status=DeliveryStatus.REJECTED, error=e.message)

        return await self._with_retries(
            function.key,
            lambda: self._invoke_function(client, function, arguments, event),
        )

    async def _with_retries(
        self,
        key: str,
        send: Callable[[], Awaitable[None]],
    ) -> SinkResult:
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts) | stop_after_delay(self.total_budget),
                wait=wait_exponential(
                    multiplier=self.backoff_seconds,
                    max=self.backoff_max_seconds,
                ),
                retry=retry_if_exception_type(RETRYABLE),
                reraise=True,
            ):
                with attempt:
                    attempts += 1
                    await asyncio.wait_for(send(), timeout=self.attempt_timeout)
        except Exception as e:
            # Isolation: a broken sink is reported, not raised
            error = str(e) or type(e).__name__
            logger.error("sink_delivery_failed", sink=key, attempts=attempts, error=error)
            return SinkResult(status=DeliveryStatus.FAILED, attempts=attempts, error=error)

        return SinkResult(status=DeliveryStatus.SUCCESS, attempts=attempts)

    # ============== Sinks ==============

    async def _send_to_channel(
        self,
        client: httpx.AsyncClient,
        channel: ChannelTarget,
        text: str,
    ) -> None:
        if channel.type == "telegram":
            await self.send_telegram(
                client,
                bot_token=channel.settings.get("bot_token", ""),
                chat_id=str(channel.settings.get("chat_id", "")),
                text=text,
            )
        elif channel.type == "sms":
            await self.send_sms(client, phone=channel.settings.get("phone", ""), text=text)
        else:
            raise PermanentDeliveryError(f"Unsupported channel type: {channel.type}")

    async def send_telegram(
        self,
        client: httpx.AsyncClient,
        bot_token: str,
        chat_id: str,
        text: str,
        parse_mode: str = "HTML",
    ) -> None:
        """Post a message through the Telegram Bot API."""
        if not bot_token or not chat_id:
            raise PermanentDeliveryError("Telegram channel is missing bot_token or chat_id")

        response = await client.post(
            f"{settings.telegram_api_url}/bot{bot_token}/sendMessage",
            json={
                "chat_id": chat_id.strip(),
                "text": text,
                "parse_mode": parse_mode,
                "disable_web_page_preview": True,
            },
        )
        _raise_for_sink_status(response, "telegram")
        body = response.json()
        if not body.get("ok", False):
            raise PermanentDeliveryError(f"Telegram refused message: {body.get('description')}")

    async def send_sms(self, client: httpx.AsyncClient, phone: str, text: str) -> None:
        """Send a message through the SMS Aero gateway."""
        if not settings.sms_gateway_configured:
            raise PermanentDeliveryError("SMS gateway is not configured")
        digits = "".join(ch for ch in phone if ch.isdigit())
        if not digits:
            raise PermanentDeliveryError("SMS channel has no phone number")

        response = await client.get(
            f"{settings.sms_gateway_url}/sms/send",
            params={"number": digits, "text": text, "sign": settings.sms_gateway_sender},
            auth=(settings.sms_gateway_email, settings.sms_gateway_api_key),
        )
        _raise_for_sink_status(response, "sms")
        body = response.json()
        if not body.get("success", False):
            raise SinkDeliveryError(f"SMS gateway error: {body.get('message')}")
        logger.info("sms_sent", phone=mask_phone(phone))

    async def _invoke_function(
        self,
        client: httpx.AsyncClient,
        function: FunctionTarget,
        arguments: dict[str, Any],
        event: CallNotification,
    ) -> None:
        if function.webhook_url:
            response = await client.post(
                function.webhook_url,
                json={
                    "function": function.name,
                    "arguments": arguments,
                    "call_id": event.call_id,
                    "tenant_id": event.tenant_id,
                },
            )
            _raise_for_sink_status(response, "function")
            return

        if function.channel is not None and function.channel.is_active:
            await self._send_to_channel(
                client,
                function.channel,
                format_function_message(function, arguments),
            )
            return

        raise PermanentDeliveryError(f"Function {function.name} has no delivery target")


def _raise_for_sink_status(response: httpx.Response, sink: str) -> None:
    """Map HTTP status to retryable / permanent sink errors."""
    if response.status_code == 429 or response.status_code >= 500:
        raise SinkDeliveryError(f"{sink} responded {response.status_code}")
    if response.status_code >= 400:
        raise PermanentDeliveryError(
            f"{sink} responded {response.status_code}: {response.text[:200]}"
        )

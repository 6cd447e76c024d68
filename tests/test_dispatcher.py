"""Notification fan-out: isolation, retries and function payload checks."""

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from app.core.errors import ValidationError
from app.services.notification_service import (
    CallNotification,
    ChannelTarget,
    DeliveryStatus,
    FunctionTarget,
    NotificationDispatcher,
    build_arguments_model,
    format_call_message,
    validate_function_payload,
)

EVENT = CallNotification(
    call_id="call-1",
    tenant_id=5,
    line_number="+70001112233",
    caller_number="+79990000001",
    callee_number="+70001112233",
    direction="inbound",
    status="answered",
    duration_seconds=125,
    cost=Decimal("0"),
    call_time=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
    prompt_task="Book a table",
    chat_history=[{"role": "user", "content": "Table for two <tonight>"}],
)

CHANNEL_A = ChannelTarget(id=1, name="A", type="telegram", settings={"bot_token": "good", "chat_id": "1"})
CHANNEL_B = ChannelTarget(id=2, name="B", type="telegram", settings={"bot_token": "slow", "chat_id": "2"})


class Recorder:
    def __init__(self, responder):
        self.requests: list[httpx.Request] = []
        self.responder = responder

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return await self.responder(request)

    def to(self, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if fragment in str(r.url)]


def dispatcher_for(recorder: Recorder, **kwargs) -> NotificationDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    options = {"max_attempts": 3, "backoff_seconds": 0, "attempt_timeout": 0.2, "total_budget": 5}
    options.update(kwargs)
    return NotificationDispatcher(http_client=client, **options)


async def test_slow_channel_fails_without_affecting_the_other():
    async def responder(request):
        if "/botslow/" in str(request.url):
            await asyncio.sleep(1)
        return httpx.Response(200, json={"ok": True})

    recorder = Recorder(responder)
    report = await dispatcher_for(recorder).dispatch(EVENT, [CHANNEL_A, CHANNEL_B], [])

    assert report["channel:1"].status == DeliveryStatus.SUCCESS
    assert report["channel:2"].status == DeliveryStatus.FAILED
    assert report["channel:2"].attempts == 3
    assert len(recorder.to("/botgood/")) == 1
    assert len(recorder.to("/botslow/")) == 3


async def test_transient_errors_are_retried():
    calls = {"n": 0}

    async def responder(request):
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(502)
        return httpx.Response(200, json={"ok": True})

    report = await dispatcher_for(Recorder(responder)).dispatch(EVENT, [CHANNEL_A], [])
    assert report["channel:1"].status == DeliveryStatus.SUCCESS
    assert report["channel:1"].attempts == 3


async def test_permanent_errors_are_not_retried():
    async def responder(request):
        return httpx.Response(401, json={"ok": False, "description": "Unauthorized"})

    recorder = Recorder(responder)
    report = await dispatcher_for(recorder).dispatch(EVENT, [CHANNEL_A], [])
    assert report["channel:1"].status == DeliveryStatus.FAILED
    assert report["channel:1"].attempts == 1
    assert len(recorder.requests) == 1


async def test_inactive_sinks_are_skipped():
    async def responder(request):
        return httpx.Response(200, json={"ok": True})

    recorder = Recorder(responder)
    inactive = ChannelTarget(id=3, name="off", type="telegram", settings={"bot_token": "x", "chat_id": "1"}, is_active=False)
    report = await dispatcher_for(recorder).dispatch(EVENT, [inactive], [])
    assert report["channel:3"].status == DeliveryStatus.SKIPPED
    assert recorder.requests == []


async def test_function_webhook_gets_declared_arguments():
    async def responder(request):
        return httpx.Response(200, json={"received": True})

    recorder = Recorder(responder)
    function = FunctionTarget(
        id=7,
        name="log_call",
        parameters={
            "type": "object",
            "properties": {
                "caller": {"type": "string"},
                "duration_seconds": {"type": "integer"},
                "status": {"type": "string", "enum": ["answered", "missed"]},
            },
            "required": ["caller", "duration_seconds"],
        },
        webhook_url="https://hooks.example.com/log",
    )

    report = await dispatcher_for(recorder).dispatch(EVENT, [], [function])

    assert report["function:7"].status == DeliveryStatus.SUCCESS
    body = json.loads(recorder.requests[0].content)
    assert body["function"] == "log_call"
    assert body["call_id"] == "call-1"
    assert body["arguments"] == {"caller": "+79990000001", "duration_seconds": 125, "status": "answered"}


async def test_function_payload_failing_schema_is_rejected():
    async def responder(request):
        return httpx.Response(200, json={"received": True})

    recorder = Recorder(responder)
    function = FunctionTarget(
        id=8,
        name="create_order",
        parameters={
            "type": "object",
            "properties": {"order_id": {"type": "string"}},
            "required": ["order_id"],
        },
        webhook_url="https://hooks.example.com/orders",
    )

    report = await dispatcher_for(recorder).dispatch(EVENT, [], [function])
    assert report["function:8"].status == DeliveryStatus.REJECTED
    assert report["function:8"].attempts == 0
    assert recorder.requests == []


async def test_function_without_webhook_reports_to_its_channel():
    async def responder(request):
        return httpx.Response(200, json={"ok": True})

    recorder = Recorder(responder)
    function = FunctionTarget(id=9, name="notify", parameters={"type": "object", "properties": {}}, channel=CHANNEL_A)

    report = await dispatcher_for(recorder).dispatch(EVENT, [], [function])
    assert report["function:9"].status == DeliveryStatus.SUCCESS
    sent = json.loads(recorder.to("/botgood/sendMessage")[0].content)
    assert "notify" in sent["text"]


def test_build_arguments_model_rejects_undeclared_required():
    with pytest.raises(ValidationError):
        build_arguments_model("f", {"type": "object", "properties": {}, "required": ["x"]})


def test_validate_function_payload_reports_fields():
    function = FunctionTarget(
        id=1,
        name="f",
        parameters={"type": "object", "properties": {"count": {"type": "integer"}}, "required": ["count"]},
    )
    with pytest.raises(ValidationError) as exc_info:
        validate_function_payload(function, {"count": "many"})
    assert exc_info.value.errors[0]["field"] == "count"


def test_call_message_escapes_transcript():
    text = format_call_message(EVENT)
    assert "&lt;tonight&gt;" in text
    assert "2:05" in text
    assert "Book a table" in text


async def test_nullable_property_types_are_accepted():
    async def responder(request):
        return httpx.Response(200, json={"ok": True})

    recorder = Recorder(responder)
    function = FunctionTarget(
        id=10,
        name="log_task",
        parameters={
            "type": "object",
            "properties": {
                "task": {"type": ["string", "null"]},
                "assistant_id": {"type": ["integer", "null"]},
            },
            "required": ["task", "assistant_id"],
        },
        webhook_url="https://hooks.example.com/tasks",
    )

    report = await dispatcher_for(recorder).dispatch(EVENT, [CHANNEL_A], [function])

    assert report["channel:1"].status == DeliveryStatus.SUCCESS
    assert report["function:10"].status == DeliveryStatus.SUCCESS
    body = json.loads(recorder.to("hooks.example.com")[0].content)
    assert body["arguments"] == {"task": "Book a table"}


@pytest.mark.parametrize(
    "parameters",
    [
        {"type": "object", "properties": ["task"]},
        {"type": "object", "properties": {"task": "string"}},
        {"type": "object", "properties": {"task": {"type": "datetime"}}},
        {"type": "object", "properties": {"task": {"enum": [{"a": 1}]}}},
        {"type": "object", "properties": {}, "required": "task"},
    ],
)
async def test_malformed_schema_rejects_only_that_function(parameters):
    async def responder(request):
        return httpx.Response(200, json={"ok": True})

    recorder = Recorder(responder)
    function = FunctionTarget(id=11, name="broken", parameters=parameters, webhook_url="https://hooks.example.com/x")

    report = await dispatcher_for(recorder).dispatch(EVENT, [CHANNEL_A], [function])

    assert report["channel:1"].status == DeliveryStatus.SUCCESS
    assert report["function:11"].status == DeliveryStatus.REJECTED
    assert recorder.to("hooks.example.com") == []


async def test_crashing_sink_is_reported_without_losing_the_others(monkeypatch):
    from app.services import notification_service

    def explode(event):
        raise RuntimeError("formatter bug")

    monkeypatch.setattr(notification_service, "format_sms_message", explode)

    async def responder(request):
        return httpx.Response(200, json={"ok": True})

    sms = ChannelTarget(id=4, name="sms", type="sms", settings={"phone": "+79990000001"})
    report = await dispatcher_for(Recorder(responder)).dispatch(EVENT, [CHANNEL_A, sms], [])

    assert report["channel:1"].status == DeliveryStatus.SUCCESS
    assert report["channel:4"].status == DeliveryStatus.FAILED
    assert report["channel:4"].error == "formatter bug"

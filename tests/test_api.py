"""HTTP surface: auth, webhooks, dashboard endpoints and error mapping."""

from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.api.deps import get_history_service, get_ingestor, get_ledger, get_lifecycle_manager
from app.core.database import get_db
from app.core.locks import KeyedLocks
from app.core.security import create_access_token
from app.main import app
from app.services.catalog_service import catalog_cache
from app.services.history_service import CallHistoryService
from app.services.ingest_service import CallEventIngestor
from app.services.ledger_service import BalanceLedger
from app.services.lifecycle_service import NumberLifecycleManager
from app.services.notification_service import NotificationDispatcher

API = "/api/v1"
LINE = "+70001112233"
WEBHOOK_HEADERS = {"x-api-key": "test-carrier-key"}


def bearer(tenant_id: int = 5, role: str = None) -> dict[str, str]:
    token = create_access_token(tenant_id=tenant_id, subject=f"user-{tenant_id}", role=role)
    return {"Authorization": f"Bearer {token}"}


class TelegramStub:
    def __init__(self):
        self.messages: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.messages.append(request)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})


@pytest.fixture
def telegram() -> TelegramStub:
    return TelegramStub()


@pytest_asyncio.fixture
async def client(session_factory, carrier_client, telegram):
    ledger = BalanceLedger(cache=catalog_cache, locks=KeyedLocks(), rate=Decimal("5"), floor=Decimal("0"))
    lifecycle = NumberLifecycleManager(carrier=carrier_client, ledger=ledger, cache=catalog_cache, locks=KeyedLocks())
    dispatcher = NotificationDispatcher(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(telegram)),
        backoff_seconds=0,
        attempt_timeout=1,
    )
    ingestor = CallEventIngestor(
        ledger=ledger,
        cache=catalog_cache,
        dispatcher=dispatcher,
        session_factory=session_factory,
    )

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_lifecycle_manager] = lambda: lifecycle
    app.dependency_overrides[get_ingestor] = lambda: ingestor
    app.dependency_overrides[get_history_service] = lambda: CallHistoryService(timezone_name="UTC")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def call_ended(call_id: str, duration: int) -> dict:
    return {
        "call_id": call_id,
        "caller": "+79990000001",
        "callee": LINE,
        "direction": "inbound",
        "started_at": datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc).isoformat(),
        "duration_seconds": duration,
        "chat_history": [{"role": "user", "content": "Hello"}],
    }


async def test_dashboard_requires_bearer_token(client):
    response = await client.get(f"{API}/telephony/balance")
    assert response.status_code == 401

    response = await client.get(f"{API}/telephony/balance", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401


async def test_webhooks_require_api_key(client):
    response = await client.post(f"{API}/webhooks/carrier/call-ended", json=call_ended("c1", 10))
    assert response.status_code == 401

    response = await client.post(
        f"{API}/webhooks/carrier/call-ended",
        json=call_ended("c1", 10),
        headers={"x-api-key": "wrong"},
    )
    assert response.status_code == 401


async def test_connect_twice_distinguishes_already_connected(client):
    first = await client.post(f"{API}/telephony/numbers/connect", json={"numbers": [LINE]}, headers=bearer())
    assert first.status_code == 200
    assert first.json()["summary"] == "done"
    assert first.json()["results"][0]["outcome"] == "connected"

    second = await client.post(f"{API}/telephony/numbers/connect", json={"numbers": [LINE]}, headers=bearer())
    body = second.json()
    assert body["success"] is True
    assert body["summary"] == "already_done"
    assert body["message"] == "All numbers are already connected"

    numbers = await client.get(f"{API}/telephony/numbers", headers=bearer())
    assert [(n["number"], n["status"]) for n in numbers.json()] == [(LINE, "connected")]


async def test_domain_errors_are_structured(client):
    response = await client.post(f"{API}/telephony/numbers/disconnect", json={"number": LINE}, headers=bearer())
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"

    await client.post(f"{API}/telephony/numbers/connect", json={"numbers": [LINE]}, headers=bearer(5))
    response = await client.post(f"{API}/telephony/numbers/disconnect", json={"number": LINE}, headers=bearer(6))
    assert response.status_code == 403
    assert response.json()["error"] == "unauthorized"


async def test_disconnect_twice(client):
    await client.post(f"{API}/telephony/numbers/connect", json={"numbers": [LINE]}, headers=bearer())

    first = await client.post(f"{API}/telephony/numbers/disconnect", json={"number": LINE}, headers=bearer())
    second = await client.post(f"{API}/telephony/numbers/disconnect", json={"number": LINE}, headers=bearer())

    assert first.json()["outcome"] == "disconnected"
    assert second.status_code == 200
    assert second.json()["outcome"] == "already_disconnected"
    assert second.json()["message"] == "Number is already disconnected"


async def test_call_flow_meters_records_and_notifies(client, telegram):
    headers = bearer()
    await client.post(f"{API}/telephony/numbers/connect", json={"numbers": [LINE]}, headers=headers)
    await client.put(
        f"{API}/telephony/balance/minutes",
        json={"limit": 10, "idempotency_key": "plan-1"},
        headers=bearer(role="admin"),
    )

    channel = await client.post(
        f"{API}/notifications/channels",
        json={"name": "Ops", "type": "telegram", "settings": {"bot_token": "123456:secret", "chat_id": "42"}},
        headers=headers,
    )
    assert channel.status_code == 201
    assert channel.json()["settings"]["bot_token"] == "***cret"
    channel_id = channel.json()["id"]

    routing = await client.put(
        f"{API}/telephony/numbers/{LINE}/routing",
        json={"channel_ids": [channel_id], "prompt_task": "Answer questions"},
        headers=headers,
    )
    assert routing.status_code == 200
    assert routing.json()["channel_ids"] == [channel_id]

    ended = await client.post(f"{API}/webhooks/carrier/call-ended", json=call_ended("call-1", 125), headers=WEBHOOK_HEADERS)
    assert ended.status_code == 200
    assert ended.json()["duplicate"] is False
    assert Decimal(ended.json()["cost"]) == Decimal("0")
    assert len(telegram.messages) == 1
    assert "/bot123456:secret/sendMessage" in str(telegram.messages[0].url)

    again = await client.post(f"{API}/webhooks/carrier/call-ended", json=call_ended("call-1", 125), headers=WEBHOOK_HEADERS)
    assert again.json()["duplicate"] is True
    assert len(telegram.messages) == 1

    balance = await client.get(f"{API}/telephony/balance", headers=headers)
    assert balance.json()["free_minutes_left"] == 7
    assert balance.json()["available_minutes"] == 7

    history = await client.get(f"{API}/calls/history", headers=headers)
    assert history.json()["total_count"] == 1
    assert history.json()["history"][0]["call_id"] == "call-1"
    assert history.json()["history"][0]["billed_minutes"] == 3

    other_tenant = await client.get(f"{API}/calls/history", headers=bearer(6))
    assert other_tenant.json()["total_count"] == 0

    channels = await client.get(f"{API}/notifications/channels", headers=headers)
    assert channels.json()[0]["last_used_at"] is not None


async def test_inbound_params(client):
    await client.post(f"{API}/telephony/numbers/connect", json={"numbers": [LINE]}, headers=bearer())
    await client.put(
        f"{API}/webhooks/assistants/11",
        json={"tenant_id": 5, "name": "Receptionist"},
        headers=WEBHOOK_HEADERS,
    )
    await client.put(
        f"{API}/telephony/numbers/{LINE}/routing",
        json={"assistant_id": 11, "prompt_task": "Greet callers"},
        headers=bearer(),
    )

    response = await client.post(f"{API}/webhooks/carrier/inbound-params", json={"number": LINE}, headers=WEBHOOK_HEADERS)
    body = response.json()
    assert body["accepted"] is True
    assert body["tenant_id"] == 5
    assert body["assistant_id"] == 11
    assert body["prompt_task"] == "Greet callers"

    unknown = await client.post(
        f"{API}/webhooks/carrier/inbound-params",
        json={"number": "+70000000000"},
        headers=WEBHOOK_HEADERS,
    )
    assert unknown.json()["accepted"] is False


async def test_balance_adjust_needs_admin_and_is_idempotent(client):
    payload = {"amount": "100", "reason": "topup", "idempotency_key": "pay-1"}

    forbidden = await client.post(f"{API}/telephony/balance/adjust", json=payload, headers=bearer())
    assert forbidden.status_code == 403

    first = await client.post(f"{API}/telephony/balance/adjust", json=payload, headers=bearer(role="admin"))
    second = await client.post(f"{API}/telephony/balance/adjust", json=payload, headers=bearer(role="admin"))
    assert first.json()["duplicate"] is False
    assert second.json()["duplicate"] is True

    balance = await client.get(f"{API}/telephony/balance", headers=bearer())
    assert Decimal(balance.json()["amount"]) == Decimal("100")
    assert balance.json()["available_minutes"] == 20

    entries = await client.get(f"{API}/telephony/balance/entries", headers=bearer())
    assert len(entries.json()) == 1


async def test_function_channel_must_belong_to_tenant(client):
    foreign = await client.post(
        f"{API}/notifications/channels",
        json={"name": "Theirs", "type": "sms", "settings": {"phone": "89990000001"}},
        headers=bearer(6),
    )
    assert foreign.json()["settings"]["phone"] == "+79990000001"

    response = await client.post(
        f"{API}/notifications/functions",
        json={"name": "notify_manager", "channel_id": foreign.json()["id"]},
        headers=bearer(5),
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


async def test_function_parameters_must_be_a_valid_schema(client):
    response = await client.post(
        f"{API}/notifications/functions",
        json={"name": "broken", "parameters": {"type": "object", "properties": {}, "required": ["x"]}},
        headers=bearer(),
    )
    assert response.status_code == 422


async def test_history_rejects_malformed_cursor(client):
    response = await client.get(f"{API}/calls/history", params={"cursor": "%%%"}, headers=bearer())
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


async def test_health(client):
    response = await client.get(f"{API}/health")
    assert response.status_code == 200
    assert response.json()["database"] == "healthy"
    assert response.json()["redis"] == "disabled"


async def test_function_accepts_nullable_types_and_rejects_malformed_schema(client):
    created = await client.post(
        f"{API}/notifications/functions",
        json={
            "name": "log_task",
            "parameters": {"type": "object", "properties": {"task": {"type": ["string", "null"]}}},
            "webhook_url": "https://hooks.example.com/tasks",
        },
        headers=bearer(),
    )
    assert created.status_code == 201

    broken = await client.post(
        f"{API}/notifications/functions",
        json={"name": "broken", "parameters": {"type": "object", "properties": ["task"]}},
        headers=bearer(),
    )
    assert broken.status_code == 422


async def test_available_numbers(client, carrier):
    carrier.offers["MOBILE"] = [{"phone_number": "79990001122", "phone_price": "300", "phone_region_name": "Moscow"}]

    response = await client.get(f"{API}/telephony/numbers/available", params={"sms": "true"}, headers=bearer())
    assert response.status_code == 200
    assert response.json()[0]["number"] == "+79990001122"
    assert response.json()[0]["sms_supported"] is True

    carrier.failures["GetNewPhoneNumbers"] = httpx.Response(403, text="<html>Forbidden</html>")
    failed = await client.get(f"{API}/telephony/numbers/available", headers=bearer())
    assert failed.status_code == 502
    assert failed.json()["error"] == "carrier_rejected"

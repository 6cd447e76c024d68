"""
Pytest configuration and fixtures.

Environment is set before anything from ``app`` is imported so the settings
object, the global engine and the API-key list pick up test values.
"""

import os
import tempfile
from collections.abc import AsyncGenerator
from decimal import Decimal
from typing import Any, Optional

_TEST_DIR = tempfile.mkdtemp(prefix="telephony-tests-")

os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/app.db"
os.environ["API_KEYS"] = "test-carrier-key"
os.environ["SECRET_KEY"] = "test-secret-key-with-enough-length"
os.environ["REDIS_URL"] = ""
os.environ["MAINTENANCE_ENABLED"] = "false"
os.environ["RUN_MIGRATIONS_ON_STARTUP"] = "false"
os.environ["CALL_RATE_PER_MINUTE"] = "5"
os.environ["BALANCE_FLOOR"] = "0"
os.environ["DEFAULT_FREE_MINUTES"] = "0"
os.environ["NUMBER_CONNECTION_FEE"] = "0"
os.environ["CARRIER_API_URL"] = "https://carrier.test/platform_api"
os.environ["CARRIER_API_KEY"] = "carrier-key"
os.environ["CARRIER_ACCOUNT_ID"] = "1"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

import app.models  # noqa: E402,F401
from app.core.database import Base  # noqa: E402
from app.core.locks import KeyedLocks  # noqa: E402
from app.services.carrier_service import CarrierClient  # noqa: E402
from app.services.catalog_service import CatalogCache, catalog_cache  # noqa: E402
from app.services.ledger_service import BalanceLedger  # noqa: E402
from app.services.lifecycle_service import NumberLifecycleManager  # noqa: E402


class FakeCarrier:
    """In-memory platform API behind an ``httpx.MockTransport``.

    ``failures`` maps a method name to an exception class raised from the
    transport (e.g. ``httpx.ReadTimeout``), a raw ``httpx.Response`` returned
    as is, or an error object returned in the response body.
    """

    def __init__(self) -> None:
        self.numbers: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, Optional[str]]] = []
        self.failures: dict[str, Any] = {}
        self.offers: dict[str, list[dict[str, Any]]] = {"GEOGRAPHIC": [], "MOBILE": []}

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        number = request.url.params.get("phone_number")
        self.calls.append((method, number))

        failure = self.failures.get(method)
        if isinstance(failure, type) and issubclass(failure, Exception):
            raise failure("carrier did not answer", request=request)
        if isinstance(failure, httpx.Response):
            return failure
        if failure is not None:
            return httpx.Response(200, json={"error": failure})

        if method == "AttachPhoneNumber":
            self.numbers[number] = {
                "phone_number": number,
                "phone_price": "150.00",
                "phone_region_name": "Moscow",
                "is_sms_enabled": False,
                "deactivated": False,
            }
            return httpx.Response(200, json={"result": 1})
        if method == "DeactivatePhoneNumber":
            self.numbers.pop(number, None)
            return httpx.Response(200, json={"result": 1})
        if method == "GetPhoneNumbers":
            row = self.numbers.get(number)
            return httpx.Response(200, json={"result": [row] if row else [], "total_count": 1 if row else 0})
        if method == "GetNewPhoneNumbers":
            category = request.url.params.get("phone_category_name")
            return httpx.Response(200, json={"result": self.offers.get(category, [])})
        if method == "BindPhoneNumberToApplication":
            return httpx.Response(200, json={"result": 1})
        return httpx.Response(404, json={"error": {"code": 404, "msg": "unknown method"}})


@pytest.fixture(autouse=True)
def clear_catalog_cache():
    catalog_cache.clear()
    yield
    catalog_cache.clear()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache() -> CatalogCache:
    return CatalogCache(catalog_ttl=300, balance_ttl=3)


@pytest.fixture
def ledger(cache) -> BalanceLedger:
    return BalanceLedger(cache=cache, locks=KeyedLocks(), rate=Decimal("5"), floor=Decimal("0"))


@pytest.fixture
def carrier() -> FakeCarrier:
    return FakeCarrier()


@pytest.fixture
def carrier_client(carrier) -> CarrierClient:
    return CarrierClient(transport=httpx.MockTransport(carrier.handler), timeout=1.0)


@pytest.fixture
def lifecycle(carrier_client, ledger, cache) -> NumberLifecycleManager:
    return NumberLifecycleManager(
        carrier=carrier_client,
        ledger=ledger,
        cache=cache,
        locks=KeyedLocks(),
    )

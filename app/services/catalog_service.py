"""Short-lived snapshots of per-tenant configuration.

Hot paths (inbound resolution, call notifications, balance reads) read from
here instead of the database. Every write that changes a snapshot emits a
named invalidation event; when Redis is configured the event is also
published so other workers drop their copies.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Hashable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.models import NotificationChannel, PhoneNumber, UserFunction
from app.services.notification_service import ChannelTarget, FunctionTarget
from app.services.redis_service import RedisService, get_redis

logger = get_logger(__name__)

# Invalidation event names
BALANCE_CHANGED = "balance_changed"
CATALOG_CHANGED = "catalog_changed"
ROUTING_UPDATED = "routing_updated"
NUMBER_STATUS_CHANGED = "number_status_changed"


@dataclass(frozen=True)
class InvalidationEvent:
    name: str
    tenant_id: Optional[int]
    number: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "InvalidationEvent":
        return cls(
            name=str(payload["name"]),
            tenant_id=payload.get("tenant_id"),
            number=payload.get("number"),
        )


@dataclass(frozen=True)
class RoutingSnapshot:
    """Routing of a number together with who owns it right now."""

    number: str
    tenant_id: Optional[int]
    status: str
    assistant_id: Optional[int] = None
    channel_ids: tuple[int, ...] = ()
    function_ids: tuple[int, ...] = ()
    prompt_task: Optional[str] = None
    # Kept after disconnect so the previous owner can still read the number
    last_tenant_id: Optional[int] = None

    @property
    def is_connected(self) -> bool:
        return self.status == "connected" and self.tenant_id is not None


@dataclass(frozen=True)
class TenantCatalog:
    tenant_id: int
    channels: dict[int, ChannelTarget] = field(default_factory=dict)
    functions: dict[int, FunctionTarget] = field(default_factory=dict)

    def targets_for(
        self, routing: RoutingSnapshot
    ) -> tuple[list[ChannelTarget], list[FunctionTarget]]:
        """Sinks referenced by ``routing``; ids deleted since are dropped."""
        channels = [self.channels[i] for i in routing.channel_ids if i in self.channels]
        functions = [self.functions[i] for i in routing.function_ids if i in self.functions]
        return channels, functions


class CatalogCache:
    """In-process TTL cache keyed by ``(kind, ...)`` tuples."""

    def __init__(
        self,
        catalog_ttl: Optional[float] = None,
        balance_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.catalog_ttl = settings.catalog_cache_ttl_seconds if catalog_ttl is None else catalog_ttl
        self.balance_ttl = settings.balance_cache_ttl_seconds if balance_ttl is None else balance_ttl
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def put(self, key: Hashable, value: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        self._entries[key] = (self._clock() + ttl, value)

    def clear(self) -> None:
        self._entries.clear()

    def drop(self, event: InvalidationEvent) -> None:
        """Remove local entries affected by ``event``."""
        if event.name == BALANCE_CHANGED:
            self._entries.pop(("balance", event.tenant_id), None)
        elif event.name == CATALOG_CHANGED:
            self._entries.pop(("catalog", event.tenant_id), None)
        elif event.name in (ROUTING_UPDATED, NUMBER_STATUS_CHANGED):
            if event.number:
                self._entries.pop(("routing", event.number), None)
            else:
                # Unknown number: drop every routing entry of the tenant
                for key, (_, value) in list(self._entries.items()):
                    if key[0] == "routing" and getattr(value, "tenant_id", None) == event.tenant_id:
                        self._entries.pop(key, None)
        else:
            logger.warning("unknown_invalidation_event", event_name=event.name)

    async def invalidate(self, event: InvalidationEvent) -> None:
        """Drop local entries and tell other workers to do the same."""
        self.drop(event)
        client = get_redis()
        if client is None:
            return
        try:
            await RedisService(client).publish(event.to_dict())
        except Exception as e:
            # Peers fall back to TTL expiry
            logger.warning("invalidation_publish_failed", event_name=event.name, error=str(e))

    async def apply_remote(self, payload: dict[str, Any]) -> None:
        """Handler for invalidations received over Redis."""
        try:
            event = InvalidationEvent.from_dict(payload)
        except (KeyError, TypeError):
            logger.warning("invalidation_payload_invalid", payload=payload)
            return
        self.drop(event)

    # ============== Loaders ==============

    async def catalog(self, db: AsyncSession, tenant_id: int) -> TenantCatalog:
        key = ("catalog", tenant_id)
        cached = self.get(key)
        if cached is not None:
            return cached

        channel_rows = await db.execute(
            select(NotificationChannel).where(NotificationChannel.tenant_id == tenant_id)
        )
        channels = {
            row.id: ChannelTarget(
                id=row.id,
                name=row.name,
                type=row.type,
                settings=dict(row.settings or {}),
                is_active=row.is_active,
            )
            for row in channel_rows.scalars()
        }

        function_rows = await db.execute(
            select(UserFunction).where(UserFunction.tenant_id == tenant_id)
        )
        functions = {
            row.id: FunctionTarget(
                id=row.id,
                name=row.name,
                parameters=dict(row.parameters or {}),
                webhook_url=row.webhook_url,
                channel=channels.get(row.channel_id) if row.channel_id else None,
                is_active=row.is_active,
            )
            for row in function_rows.scalars()
        }

        snapshot = TenantCatalog(tenant_id=tenant_id, channels=channels, functions=functions)
        self.put(key, snapshot, self.catalog_ttl)
        return snapshot

    async def routing(self, db: AsyncSession, number: str) -> Optional[RoutingSnapshot]:
        """Routing and ownership of ``number``; None when the number is unknown."""
        key = ("routing", number)
        cached = self.get(key)
        if cached is not None:
            return cached

        result = await db.execute(select(PhoneNumber).where(PhoneNumber.number == number))
        phone = result.scalar_one_or_none()
        if phone is None:
            return None

        routing = phone.routing
        snapshot = RoutingSnapshot(
            number=phone.number,
            tenant_id=phone.tenant_id if phone.status.is_owned else None,
            status=phone.status.value,
            assistant_id=routing.assistant_id if routing else None,
            channel_ids=tuple(routing.channel_ids or ()) if routing else (),
            function_ids=tuple(routing.function_ids or ()) if routing else (),
            prompt_task=routing.prompt_task if routing else None,
            last_tenant_id=phone.tenant_id,
        )
        self.put(key, snapshot, self.catalog_ttl)
        return snapshot


# Shared by every service in the process
catalog_cache = CatalogCache()

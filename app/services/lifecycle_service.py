"""Phone number lifecycle: connect, disconnect, routing and reconciliation.

Every command on a number runs under that number's keyed lock and re-reads
the row with ``FOR UPDATE``. Carrier calls are never assumed to have worked:
a timeout leaves the number in its transient state for ``reconcile``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    TelephonyError,
    UnauthorizedError,
    UpstreamError,
    UpstreamTimeoutError,
    ValidationError,
)
from app.core.locks import KeyedLocks, keyed_locks, number_key
from app.core.logging import get_logger
from app.db.base import as_utc, utcnow
from app.models import (
    ALLOWED_TRANSITIONS,
    Assistant,
    DeltaKind,
    InboundRouting,
    NotificationChannel,
    NumberStatus,
    PhoneNumber,
    UserFunction,
)
from app.services.carrier_service import AvailableNumber, CarrierClient, CarrierNumberState
from app.services.catalog_service import (
    NUMBER_STATUS_CHANGED,
    ROUTING_UPDATED,
    CatalogCache,
    InvalidationEvent,
    RoutingSnapshot,
    catalog_cache,
)
from app.services.ledger_service import BalanceLedger
from app.utils.helpers import mask_phone, normalize_phone

logger = get_logger(__name__)

RENTAL_PERIOD = timedelta(days=30)


class NumberOutcome(str, Enum):
    CONNECTED = "connected"
    ALREADY_CONNECTED = "already_connected"
    PENDING = "pending"
    FAILED = "failed"


class ConnectSummary(str, Enum):
    DONE = "done"
    ALREADY_DONE = "already_done"
    PARTIAL = "partial"
    FAILED = "failed"


class DisconnectOutcome(str, Enum):
    DISCONNECTED = "disconnected"
    ALREADY_DISCONNECTED = "already_disconnected"
    PENDING = "pending"


@dataclass
class NumberResult:
    number: str
    outcome: NumberOutcome
    error: Optional[str] = None
    message: Optional[str] = None


@dataclass
class ConnectReport:
    results: list[NumberResult] = field(default_factory=list)

    @property
    def summary(self) -> ConnectSummary:
        outcomes = [r.outcome for r in self.results]
        failed = outcomes.count(NumberOutcome.FAILED)
        if not outcomes or failed == len(outcomes):
            return ConnectSummary.FAILED
        if failed or NumberOutcome.PENDING in outcomes:
            return ConnectSummary.PARTIAL
        if all(o == NumberOutcome.ALREADY_CONNECTED for o in outcomes):
            return ConnectSummary.ALREADY_DONE
        return ConnectSummary.DONE

    @property
    def message(self) -> str:
        summary = self.summary
        if summary == ConnectSummary.ALREADY_DONE:
            return "All numbers are already connected"
        if summary == ConnectSummary.DONE:
            return "Numbers connected"
        if summary == ConnectSummary.FAILED:
            return "No numbers could be connected"
        done = sum(
            1
            for r in self.results
            if r.outcome in (NumberOutcome.CONNECTED, NumberOutcome.ALREADY_CONNECTED)
        )
        return f"Connected {done} of {len(self.results)} numbers"


@dataclass
class DisconnectResult:
    number: str
    outcome: DisconnectOutcome


@dataclass
class RoutingConfig:
    assistant_id: Optional[int] = None
    channel_ids: list[int] = field(default_factory=list)
    function_ids: list[int] = field(default_factory=list)
    prompt_task: Optional[str] = None


@dataclass
class InboundResolution:
    """Answer to the carrier's "who handles this call" lookup."""

    number: str
    accepted: bool
    tenant_id: Optional[int] = None
    reason: Optional[str] = None
    routing: Optional[RoutingSnapshot] = None
    available_minutes: int = 0


def _unique(ids: list[int]) -> list[int]:
    return list(dict.fromkeys(ids))


def _require_number(raw: str) -> str:
    number = normalize_phone(raw)
    if not number:
        raise ValidationError("Invalid phone number", number=raw)
    return number


class NumberLifecycleManager:
    """Owns every state change of a ``PhoneNumber``."""

    def __init__(
        self,
        carrier: Optional[CarrierClient] = None,
        ledger: Optional[BalanceLedger] = None,
        cache: Optional[CatalogCache] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.carrier = carrier or CarrierClient()
        self.cache = cache or catalog_cache
        self.ledger = ledger or BalanceLedger(cache=self.cache)
        self.locks = locks or keyed_locks

    # ============== Helpers ==============

    async def _load(self, db: AsyncSession, number: str) -> Optional[PhoneNumber]:
        result = await db.execute(
            select(PhoneNumber)
            .where(PhoneNumber.number == number)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _transition(phone: PhoneNumber, target: NumberStatus) -> None:
        if phone.status not in ALLOWED_TRANSITIONS[target]:
            raise ConflictError(
                f"Number cannot go from {phone.status.value} to {target.value}",
                number=phone.number,
                status=phone.status.value,
            )
        logger.info(
            "number_transition",
            number=mask_phone(phone.number),
            tenant_id=phone.tenant_id,
            from_status=phone.status.value,
            to_status=target.value,
        )
        phone.status = target
        phone.status_changed_at = utcnow()

    async def _invalidate(self, tenant_id: Optional[int], number: str, *names: str) -> None:
        for name in names or (NUMBER_STATUS_CHANGED,):
            await self.cache.invalidate(InvalidationEvent(name, tenant_id, number))

    @staticmethod
    def _connect_key(number: str, seq: int) -> str:
        return f"number:{number}:connect:{seq}"

    async def _refund_connection(self, db: AsyncSession, tenant_id: int, number: str, seq: int) -> None:
        """Return the connection fee charged for attempt ``seq``, if any."""
        charge = await self.ledger.get_entry(db, self._connect_key(number, seq))
        if charge is None or charge.amount == 0:
            return
        await self.ledger.apply_delta(
            db,
            tenant_id,
            DeltaKind.ADJUSTMENT,
            -charge.amount,
            key=f"{self._connect_key(number, seq)}:refund",
            reason="number_connection_refund",
            reference=number,
        )

    async def _mark_connected(
        self,
        db: AsyncSession,
        phone: PhoneNumber,
        state: Optional[CarrierNumberState] = None,
    ) -> None:
        self._transition(phone, NumberStatus.CONNECTED)
        now = utcnow()
        phone.connected_at = now
        if state is not None:
            phone.monthly_price = state.price
            phone.region = state.region or phone.region
            phone.sms_supported = state.sms_supported
        phone.next_renewal_at = now + RENTAL_PERIOD
        await db.commit()
        await self._invalidate(phone.tenant_id, phone.number)

    async def _mark_disconnected(self, db: AsyncSession, phone: PhoneNumber) -> None:
        self._transition(phone, NumberStatus.DISCONNECTED)
        # Routing belongs to the connection, not the number
        phone.routing = None
        phone.next_renewal_at = None
        await db.commit()
        await self._invalidate(phone.tenant_id, phone.number, NUMBER_STATUS_CHANGED, ROUTING_UPDATED)

    async def _carrier_state(self, number: str) -> Optional[CarrierNumberState]:
        try:
            return await self.carrier.get_number_state(number)
        except UpstreamError as e:
            logger.warning("carrier_state_unavailable", number=mask_phone(number), error=e.message)
            return None

    # ============== Connect ==============

    async def connect(self, db: AsyncSession, tenant_id: int, numbers: list[str]) -> ConnectReport:
        """Connect each number to ``tenant_id``; one failure never aborts the rest."""
        report = ConnectReport()
        seen: set[str] = set()

        for raw in numbers:
            number = normalize_phone(raw)
            if not number:
                report.results.append(
                    NumberResult(
                        number=raw,
                        outcome=NumberOutcome.FAILED,
                        error=ValidationError.kind,
                        message="Invalid phone number",
                    )
                )
                continue
            if number in seen:
                continue
            seen.add(number)

            try:
                result = await self._connect_one(db, tenant_id, number)
            except TelephonyError as e:
                await db.rollback()
                result = NumberResult(
                    number=number,
                    outcome=NumberOutcome.FAILED,
                    error=e.kind,
                    message=e.message,
                )
            report.results.append(result)

        logger.info(
            "numbers_connect_completed",
            tenant_id=tenant_id,
            summary=report.summary.value,
            outcomes={mask_phone(r.number): r.outcome.value for r in report.results},
        )
        return report

    async def _connect_one(self, db: AsyncSession, tenant_id: int, number: str) -> NumberResult:
        async with self.locks.hold(number_key(number)):
            phone = await self._load(db, number)

            if phone is not None and phone.status.is_owned:
                if phone.tenant_id != tenant_id:
                    raise ConflictError("Number is connected to another account", number=number)
                if phone.status == NumberStatus.CONNECTED:
                    return NumberResult(
                        number=number,
                        outcome=NumberOutcome.ALREADY_CONNECTED,
                        message="Number is already connected to your account",
                    )
                if phone.status == NumberStatus.CONNECTING:
                    return NumberResult(
                        number=number,
                        outcome=NumberOutcome.PENDING,
                        message="Connection is awaiting carrier confirmation",
                    )
                raise ConflictError("Number is being disconnected", number=number)

            if phone is None:
                phone = PhoneNumber(number=number, status=NumberStatus.AVAILABLE, connection_seq=0)
                db.add(phone)

            previous_status = phone.status
            previous_tenant = phone.tenant_id
            self._transition(phone, NumberStatus.CONNECTING)
            phone.tenant_id = tenant_id
            phone.connection_seq += 1
            seq = phone.connection_seq
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("Number is being connected by another request", number=number)
            await self._invalidate(tenant_id, number)

            fee = Decimal(settings.number_connection_fee)
            if fee > 0:
                try:
                    await self.ledger.apply_delta(
                        db,
                        tenant_id,
                        DeltaKind.PREAUTH_CHARGE,
                        -fee,
                        key=self._connect_key(number, seq),
                        reason="number_connection_fee",
                        reference=number,
                    )
                except InsufficientFundsError:
                    await self._rollback_connect(db, number, previous_status, previous_tenant)
                    raise

            try:
                await self.carrier.attach(number)
            except UpstreamTimeoutError:
                logger.warning("number_connect_unconfirmed", number=mask_phone(number), tenant_id=tenant_id)
                return NumberResult(
                    number=number,
                    outcome=NumberOutcome.PENDING,
                    error=UpstreamTimeoutError.kind,
                    message="Carrier did not confirm in time; the number will be re-checked",
                )
            except UpstreamError:
                await self._refund_connection(db, tenant_id, number, seq)
                await self._rollback_connect(db, number, previous_status, previous_tenant)
                raise

            state = await self._carrier_state(number)
            await self._mark_connected(db, phone, state)
            return NumberResult(number=number, outcome=NumberOutcome.CONNECTED)

    async def _rollback_connect(
        self,
        db: AsyncSession,
        number: str,
        previous_status: NumberStatus,
        previous_tenant: Optional[int],
    ) -> None:
        # The failed charge may have rolled the session back; read the row again
        phone = await self._load(db, number)
        target = (
            NumberStatus.DISCONNECTED
            if previous_status == NumberStatus.DISCONNECTED
            else NumberStatus.AVAILABLE
        )
        self._transition(phone, target)
        phone.tenant_id = previous_tenant
        await db.commit()
        await self._invalidate(previous_tenant, phone.number)

    # ============== Disconnect ==============

    async def disconnect(self, db: AsyncSession, tenant_id: int, number: str) -> DisconnectResult:
        number = _require_number(number)

        async with self.locks.hold(number_key(number)):
            phone = await self._load(db, number)
            if phone is None:
                raise NotFoundError("Number not found", number=number)
            if phone.tenant_id != tenant_id:
                raise UnauthorizedError("Number does not belong to your account", number=number)

            if phone.status in (NumberStatus.DISCONNECTED, NumberStatus.AVAILABLE):
                return DisconnectResult(number=number, outcome=DisconnectOutcome.ALREADY_DISCONNECTED)
            if phone.status == NumberStatus.DISCONNECTING:
                return DisconnectResult(number=number, outcome=DisconnectOutcome.PENDING)
            if phone.status != NumberStatus.CONNECTED:
                raise ConflictError("Number is still connecting", number=number)

            self._transition(phone, NumberStatus.DISCONNECTING)
            await db.commit()
            await self._invalidate(tenant_id, number)

            try:
                await self.carrier.deactivate(number)
            except UpstreamTimeoutError:
                logger.warning("number_disconnect_unconfirmed", number=mask_phone(number), tenant_id=tenant_id)
                raise
            except UpstreamError:
                self._transition(phone, NumberStatus.CONNECTED)
                await db.commit()
                await self._invalidate(tenant_id, number)
                raise

            await self._mark_disconnected(db, phone)

        return DisconnectResult(number=number, outcome=DisconnectOutcome.DISCONNECTED)

    # ============== Routing ==============

    async def _validate_references(self, db: AsyncSession, tenant_id: int, config: RoutingConfig) -> None:
        errors = []

        if config.assistant_id is not None:
            assistant = await db.scalar(
                select(Assistant.id).where(
                    Assistant.id == config.assistant_id,
                    Assistant.tenant_id == tenant_id,
                )
            )
            if assistant is None:
                errors.append({"field": "assistant_id", "id": config.assistant_id})

        for field_name, model, ids in (
            ("channel_ids", NotificationChannel, config.channel_ids),
            ("function_ids", UserFunction, config.function_ids),
        ):
            if not ids:
                continue
            found = set(
                (
                    await db.execute(
                        select(model.id).where(model.id.in_(ids), model.tenant_id == tenant_id)
                    )
                ).scalars()
            )
            for missing in (i for i in ids if i not in found):
                errors.append({"field": field_name, "id": missing})

        if errors:
            raise ValidationError("Routing references unknown resources", errors=errors)

    async def set_routing(
        self,
        db: AsyncSession,
        tenant_id: int,
        number: str,
        config: RoutingConfig,
    ) -> RoutingSnapshot:
        number = _require_number(number)
        config = RoutingConfig(
            assistant_id=config.assistant_id,
            channel_ids=_unique(config.channel_ids),
            function_ids=_unique(config.function_ids),
            prompt_task=config.prompt_task,
        )

        async with self.locks.hold(number_key(number)):
            phone = await self._load(db, number)
            if phone is None:
                raise NotFoundError("Number not found", number=number)
            if phone.tenant_id != tenant_id:
                raise UnauthorizedError("Number does not belong to your account", number=number)
            if phone.status != NumberStatus.CONNECTED:
                raise ConflictError("Routing can only be set on a connected number", number=number)

            await self._validate_references(db, tenant_id, config)

            routing = phone.routing
            if routing is None:
                routing = InboundRouting(tenant_id=tenant_id)
                phone.routing = routing
            routing.assistant_id = config.assistant_id
            routing.channel_ids = config.channel_ids
            routing.function_ids = config.function_ids
            routing.prompt_task = config.prompt_task
            await db.commit()

        await self._invalidate(tenant_id, number, ROUTING_UPDATED)
        logger.info("routing_updated", tenant_id=tenant_id, number=mask_phone(number))

        try:
            await self.carrier.bind_inbound(number)
        except UpstreamError as e:
            logger.warning("carrier_bind_failed", number=mask_phone(number), error=e.message)

        return RoutingSnapshot(
            number=number,
            tenant_id=tenant_id,
            status=NumberStatus.CONNECTED.value,
            assistant_id=config.assistant_id,
            channel_ids=tuple(config.channel_ids),
            function_ids=tuple(config.function_ids),
            prompt_task=config.prompt_task,
        )

    async def get_routing(self, db: AsyncSession, tenant_id: int, number: str) -> RoutingSnapshot:
        number = _require_number(number)
        snapshot = await self.cache.routing(db, number)
        if snapshot is None:
            raise NotFoundError("Number not found", number=number)
        if snapshot.tenant_id != tenant_id and snapshot.last_tenant_id != tenant_id:
            raise UnauthorizedError("Number does not belong to your account", number=number)
        return snapshot

    async def clear_routing(self, db: AsyncSession, tenant_id: int, number: str) -> None:
        number = _require_number(number)
        async with self.locks.hold(number_key(number)):
            phone = await self._load(db, number)
            if phone is None:
                raise NotFoundError("Number not found", number=number)
            if not phone.owned_by(tenant_id):
                raise UnauthorizedError("Number does not belong to your account", number=number)
            if phone.routing is None:
                return
            phone.routing = None
            await db.commit()
        await self._invalidate(tenant_id, number, ROUTING_UPDATED)

    # ============== Reads ==============

    async def list_numbers(self, db: AsyncSession, tenant_id: int) -> list[PhoneNumber]:
        """Numbers of the tenant; stale transient ones are re-checked first."""
        query = (
            select(PhoneNumber)
            .where(PhoneNumber.tenant_id == tenant_id)
            .order_by(PhoneNumber.number)
        )
        numbers = list((await db.execute(query)).scalars().all())

        cutoff = utcnow() - timedelta(seconds=settings.reconcile_grace_seconds)
        stale = [
            p.number
            for p in numbers
            if p.status.is_transient and as_utc(p.status_changed_at) <= cutoff
        ]
        if not stale:
            return numbers

        for number in stale:
            try:
                await self.reconcile(db, number)
            except UpstreamError as e:
                logger.warning("reconcile_on_read_failed", number=mask_phone(number), error=e.message)

        result = await db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def list_available(self, db: AsyncSession, sms: bool = False) -> list[AvailableNumber]:
        """Carrier offers minus numbers some tenant already holds here."""
        offers = await self.carrier.list_available(sms=sms)
        if not offers:
            return []

        result = await db.execute(
            select(PhoneNumber.number, PhoneNumber.status).where(
                PhoneNumber.number.in_([o.number for o in offers])
            )
        )
        held = {number for number, status in result.all() if status.is_owned}
        return [o for o in offers if o.number not in held]

    async def resolve_inbound(self, db: AsyncSession, number: str) -> InboundResolution:
        """Routing for an incoming call on ``number``."""
        number = _require_number(number)
        snapshot = await self.cache.routing(db, number)
        if snapshot is None or not snapshot.is_connected:
            return InboundResolution(number=number, accepted=False, reason="number_not_connected")

        minutes = await self.ledger.get_available_minutes(db, snapshot.tenant_id)
        if not settings.allow_overage and minutes <= 0:
            logger.info("inbound_call_refused", tenant_id=snapshot.tenant_id, number=mask_phone(number))
            return InboundResolution(
                number=number,
                accepted=False,
                tenant_id=snapshot.tenant_id,
                reason=InsufficientFundsError.kind,
                routing=snapshot,
            )

        return InboundResolution(
            number=number,
            accepted=True,
            tenant_id=snapshot.tenant_id,
            routing=snapshot,
            available_minutes=minutes,
        )

    # ============== Reconciliation ==============

    async def reconcile(self, db: AsyncSession, number: str) -> NumberStatus:
        """Settle a transient number against carrier truth."""
        number = _require_number(number)
        async with self.locks.hold(number_key(number)):
            phone = await self._load(db, number)
            if phone is None:
                raise NotFoundError("Number not found", number=number)
            if not phone.status.is_transient:
                return phone.status

            state = await self.carrier.get_number_state(number)
            previous = phone.status

            if phone.status == NumberStatus.CONNECTING:
                if state.active:
                    await self._mark_connected(db, phone, state)
                else:
                    tenant_id = phone.tenant_id
                    self._transition(phone, NumberStatus.AVAILABLE)
                    phone.tenant_id = None
                    await db.commit()
                    await self._invalidate(tenant_id, number)
                    if tenant_id is not None:
                        await self._refund_connection(db, tenant_id, number, phone.connection_seq)
            else:
                if state.active:
                    self._transition(phone, NumberStatus.CONNECTED)
                    await db.commit()
                    await self._invalidate(phone.tenant_id, number)
                else:
                    await self._mark_disconnected(db, phone)

            logger.info(
                "number_reconciled",
                number=mask_phone(number),
                from_status=previous.value,
                to_status=phone.status.value,
            )
            return phone.status

    async def reconcile_stale(self, db: AsyncSession) -> int:
        """Sweep transient numbers older than the grace period."""
        cutoff = utcnow() - timedelta(seconds=settings.reconcile_grace_seconds)
        result = await db.execute(
            select(PhoneNumber.number).where(
                PhoneNumber.status.in_([NumberStatus.CONNECTING, NumberStatus.DISCONNECTING]),
                PhoneNumber.status_changed_at <= cutoff,
            )
        )
        numbers = list(result.scalars().all())
        # Release the read transaction before taking number locks
        await db.commit()

        settled = 0
        for number in numbers:
            try:
                status = await self.reconcile(db, number)
            except TelephonyError as e:
                logger.warning("reconcile_failed", number=mask_phone(number), error=e.message)
                continue
            if not status.is_transient:
                settled += 1
        return settled

    # ============== Renewal ==============

    async def renew_expired(self, db: AsyncSession, now: Optional[datetime] = None) -> dict[str, str]:
        """Charge monthly rent of numbers due for renewal; disconnect the unpaid."""
        now = now or utcnow()
        result = await db.execute(
            select(PhoneNumber).where(
                PhoneNumber.status == NumberStatus.CONNECTED,
                PhoneNumber.next_renewal_at <= now,
            )
        )
        # Plain values: a refused charge rolls the session back and expires the rows
        due = [
            (p.number, p.tenant_id, as_utc(p.next_renewal_at), Decimal(p.monthly_price or 0))
            for p in result.scalars().all()
        ]
        await db.commit()

        outcomes: dict[str, str] = {}
        for number, tenant_id, period, price in due:
            amount = price + Decimal(settings.number_rental_markup)
            try:
                await self.ledger.apply_delta(
                    db,
                    tenant_id,
                    DeltaKind.PREAUTH_CHARGE,
                    -amount,
                    key=f"number:{number}:renewal:{period.date().isoformat()}",
                    reason="number_rental_renewal",
                    reference=number,
                )
            except InsufficientFundsError:
                logger.info("number_renewal_unpaid", tenant_id=tenant_id, number=mask_phone(number))
                try:
                    await self.disconnect(db, tenant_id, number)
                    outcomes[number] = "disconnected"
                except TelephonyError as e:
                    logger.warning("number_renewal_disconnect_failed", number=mask_phone(number), error=e.message)
                    outcomes[number] = "disconnect_pending"
                continue

            async with self.locks.hold(number_key(number)):
                phone = await self._load(db, number)
                if phone is not None and phone.status == NumberStatus.CONNECTED:
                    phone.next_renewal_at = period + RENTAL_PERIOD
                    await db.commit()
            outcomes[number] = "renewed"
            logger.info("number_renewed", tenant_id=tenant_id, number=mask_phone(number), amount=str(amount))

        return outcomes

"""Carrier call events: provisional state, metering and immutable records.

Delivery is at least once. ``call_id`` is the idempotency key for both the
ledger delta (``call:<call_id>``) and the call record, and both are written
in the same database transaction.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import async_session_maker
from app.core.errors import DuplicateEventError
from app.core.logging import get_logger
from app.db.base import as_utc, utcnow
from app.models import (
    ActiveCall,
    CallRecord,
    CallStatus,
    DeadLetterEvent,
    NotificationChannel,
    NumberStatus,
    PhoneNumber,
)
from app.schemas.webhook import CallEndedEvent, CallStartedEvent
from app.services.catalog_service import CatalogCache, catalog_cache
from app.services.ledger_service import BalanceLedger, billable_minutes, call_ledger_key
from app.services.notification_service import (
    CallNotification,
    DeliveryStatus,
    NotificationDispatcher,
    SinkResult,
)
from app.utils.helpers import mask_phone

logger = get_logger(__name__)


@dataclass(frozen=True)
class IngestResult:
    call_id: str
    tenant_id: Optional[int] = None
    record_id: Optional[int] = None
    cost: Decimal = Decimal("0")
    billed_minutes: int = 0
    free_minutes: int = 0
    duplicate: bool = False
    dispatch: bool = False
    dead_lettered: bool = False


def _result_from_record(record: CallRecord, duplicate: bool, dispatch: bool) -> IngestResult:
    return IngestResult(
        call_id=record.call_id,
        tenant_id=record.tenant_id,
        record_id=record.id,
        cost=Decimal(record.cost),
        billed_minutes=record.billed_minutes,
        free_minutes=record.free_minutes,
        duplicate=duplicate,
        dispatch=dispatch,
    )


class CallEventIngestor:
    """Turns carrier webhooks into ledger deltas and call records."""

    def __init__(
        self,
        ledger: Optional[BalanceLedger] = None,
        cache: Optional[CatalogCache] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.cache = cache or catalog_cache
        self.ledger = ledger or BalanceLedger(cache=self.cache)
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.session_factory = session_factory or async_session_maker

    async def _find_record(self, db: AsyncSession, call_id: str) -> Optional[CallRecord]:
        result = await db.execute(select(CallRecord).where(CallRecord.call_id == call_id))
        return result.scalar_one_or_none()

    async def _find_line(self, db: AsyncSession, number: str) -> Optional[PhoneNumber]:
        result = await db.execute(select(PhoneNumber).where(PhoneNumber.number == number))
        return result.scalar_one_or_none()

    # ============== Call started ==============

    async def on_call_started(self, db: AsyncSession, event: CallStartedEvent) -> bool:
        """Record a running call. Returns False for redeliveries."""
        if await self._find_record(db, event.call_id) is not None:
            # End arrived first; nothing left to track
            return False
        existing = await db.execute(select(ActiveCall.id).where(ActiveCall.call_id == event.call_id))
        if existing.scalar_one_or_none() is not None:
            return False

        line = await self._find_line(db, event.line_number)
        db.add(
            ActiveCall(
                call_id=event.call_id,
                tenant_id=line.tenant_id if line is not None and line.status.is_owned else None,
                line_number=event.line_number,
                caller_number=event.caller,
                callee_number=event.callee,
                direction=event.direction.value,
                started_at=as_utc(event.started_at),
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return False

        logger.info("call_started", call_id=event.call_id, line=mask_phone(event.line_number))
        return True

    # ============== Call ended ==============

    async def on_call_ended(self, db: AsyncSession, event: CallEndedEvent) -> IngestResult:
        """Meter and record a finished call exactly once.

        Database failures park the event in the dead-letter table; if that
        write fails too the error propagates so the carrier redelivers.
        """
        try:
            return await self._ingest(db, event)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("call_ingest_failed", call_id=event.call_id, error=str(e))
            await self._dead_letter(event, e)
            return IngestResult(call_id=event.call_id, dead_lettered=True)

    async def _ingest(self, db: AsyncSession, event: CallEndedEvent) -> IngestResult:
        existing = await self._find_record(db, event.call_id)
        if existing is not None:
            logger.info("call_ended_duplicate", call_id=event.call_id)
            return _result_from_record(existing, duplicate=True, dispatch=False)

        line_number = event.line_number
        line = await self._find_line(db, line_number)
        # Last owner still gets the record (and the bill) after a disconnect
        tenant_id = line.tenant_id if line is not None else None
        dispatch = line is not None and line.status == NumberStatus.CONNECTED

        status = event.status
        if event.duration_seconds == 0 and status == CallStatus.ANSWERED:
            status = CallStatus.MISSED

        record = CallRecord(
            call_id=event.call_id,
            tenant_id=tenant_id,
            line_number=line_number,
            caller_number=event.caller,
            callee_number=event.callee,
            direction=event.direction.value,
            status=status.value,
            duration_seconds=event.duration_seconds,
            billed_minutes=billable_minutes(event.duration_seconds),
            free_minutes=0,
            rate=self.ledger.rate,
            cost=Decimal("0"),
            call_time=as_utc(event.started_at),
            record_url=event.record_url,
            chat_history=event.chat_history,
            assistant_id=event.assistant_id,
        )
        clear_active = delete(ActiveCall).where(ActiveCall.call_id == event.call_id)

        try:
            if tenant_id is None:
                logger.warning("call_on_unknown_line", call_id=event.call_id, line=mask_phone(line_number))
                db.add(record)
                await db.execute(clear_active)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise DuplicateEventError("Call already recorded", call_id=event.call_id)
            else:
                async with self.ledger.transaction(db, tenant_id) as tx:
                    metering = await tx.meter_call(
                        event.duration_seconds,
                        call_ledger_key(event.call_id),
                        reference=event.call_id,
                    )
                    record.free_minutes = metering.free_minutes
                    record.cost = metering.cost
                    db.add(record)
                    await db.execute(clear_active)
        except DuplicateEventError:
            existing = await self._find_record(db, event.call_id)
            if existing is None:
                raise
            logger.info("call_ended_duplicate", call_id=event.call_id)
            return _result_from_record(existing, duplicate=True, dispatch=False)

        logger.info(
            "call_recorded",
            call_id=event.call_id,
            tenant_id=tenant_id,
            line=mask_phone(line_number),
            duration_seconds=event.duration_seconds,
            billed_minutes=record.billed_minutes,
            free_minutes=record.free_minutes,
            cost=str(record.cost),
            dispatch=dispatch,
        )
        return _result_from_record(record, duplicate=False, dispatch=dispatch)

    async def _dead_letter(self, event: CallEndedEvent, error: Exception) -> None:
        # Fresh session: the request session may be unusable after the failure
        async with self.session_factory() as session:
            session.add(
                DeadLetterEvent(
                    call_id=event.call_id,
                    payload=event.model_dump(mode="json"),
                    error=str(error)[:2000],
                    attempts=1,
                )
            )
            await session.commit()
        logger.warning("call_event_dead_lettered", call_id=event.call_id)

    async def replay_dead_letters(self, db: AsyncSession, limit: int = 100) -> int:
        """Retry parked call events. Returns how many were settled."""
        result = await db.execute(
            select(DeadLetterEvent.id, DeadLetterEvent.payload)
            .where(
                DeadLetterEvent.resolved_at.is_(None),
                DeadLetterEvent.attempts < settings.dead_letter_max_attempts,
            )
            .order_by(DeadLetterEvent.id)
            .limit(limit)
        )
        pending = list(result.all())
        await db.commit()

        settled = 0
        for letter_id, payload in pending:
            event = CallEndedEvent.model_validate(payload)
            try:
                outcome = await self._ingest(db, event)
            except SQLAlchemyError as e:
                await db.rollback()
                await db.execute(
                    update(DeadLetterEvent)
                    .where(DeadLetterEvent.id == letter_id)
                    .values(attempts=DeadLetterEvent.attempts + 1, error=str(e)[:2000])
                )
                await db.commit()
                logger.warning("dead_letter_replay_failed", call_id=event.call_id, error=str(e))
                continue

            await db.execute(
                update(DeadLetterEvent)
                .where(DeadLetterEvent.id == letter_id)
                .values(resolved_at=utcnow())
            )
            await db.commit()
            settled += 1
            logger.info("dead_letter_replayed", call_id=event.call_id, duplicate=outcome.duplicate)

            if outcome.dispatch and not outcome.duplicate:
                await self.notify_completed(db, outcome)

        return settled

    # ============== Notifications ==============

    async def notify_completed(
        self,
        db: AsyncSession,
        outcome: IngestResult,
    ) -> Optional[dict[str, SinkResult]]:
        """Fan the recorded call out to the sinks configured on its line."""
        if not outcome.dispatch or outcome.record_id is None or outcome.tenant_id is None:
            return None

        record = await db.get(CallRecord, outcome.record_id)
        if record is None:
            return None

        routing = await self.cache.routing(db, record.line_number)
        if routing is None or routing.tenant_id != outcome.tenant_id:
            return None
        catalog = await self.cache.catalog(db, outcome.tenant_id)
        channels, functions = catalog.targets_for(routing)
        if not channels and not functions:
            return {}

        notification = CallNotification(
            call_id=record.call_id,
            tenant_id=outcome.tenant_id,
            line_number=record.line_number,
            caller_number=record.caller_number,
            callee_number=record.callee_number,
            direction=record.direction,
            status=record.status,
            duration_seconds=record.duration_seconds,
            cost=Decimal(record.cost),
            call_time=as_utc(record.call_time),
            assistant_id=record.assistant_id or routing.assistant_id,
            prompt_task=routing.prompt_task,
            chat_history=record.chat_history,
        )
        # Release the read transaction while sinks are slow
        await db.commit()
        report = await self.dispatcher.dispatch(notification, channels, functions)

        delivered = [
            int(key.split(":", 1)[1])
            for key, result in report.items()
            if key.startswith("channel:") and result.status == DeliveryStatus.SUCCESS
        ]
        if delivered:
            await db.execute(
                update(NotificationChannel)
                .where(NotificationChannel.id.in_(delivered))
                .values(last_used_at=utcnow())
            )
            await db.commit()
        return report

"""Tenant balance ledger.

All balance movement goes through ``BalanceLedger.transaction``: the tenant's
balance row is locked (asyncio lock in-process, ``SELECT ... FOR UPDATE``
across workers), deltas are checked against their idempotency key, applied,
appended to the ledger and committed together with anything else the caller
added to the session.
"""

import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import AsyncIterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import DuplicateEventError, InsufficientFundsError, ValidationError
from app.core.locks import KeyedLocks, balance_key, keyed_locks
from app.core.logging import get_logger
from app.models import Balance, DeltaKind, LedgerEntry
from app.services.catalog_service import (
    BALANCE_CHANGED,
    CatalogCache,
    InvalidationEvent,
    catalog_cache,
)

logger = get_logger(__name__)

CENTS = Decimal("0.01")


def billable_minutes(duration_seconds: int) -> int:
    """Whole minutes billed for a call; any started minute counts."""
    if duration_seconds <= 0:
        return 0
    return math.ceil(duration_seconds / 60)


def call_ledger_key(call_id: str) -> str:
    return f"call:{call_id}"


@dataclass(frozen=True)
class BalanceSnapshot:
    tenant_id: int
    amount: Decimal
    free_minutes_limit: int
    free_minutes_used: int
    version: int

    @property
    def free_minutes_left(self) -> int:
        return max(0, self.free_minutes_limit - self.free_minutes_used)


@dataclass(frozen=True)
class AppliedDelta:
    idempotency_key: str
    amount: Decimal
    free_minutes: int
    balance_after: Decimal
    duplicate: bool = False


@dataclass(frozen=True)
class MeteringResult:
    billed_minutes: int
    free_minutes: int
    rate: Decimal
    cost: Decimal
    balance_after: Decimal
    duplicate: bool = False

    @property
    def paid_minutes(self) -> int:
        return self.billed_minutes - self.free_minutes


class LedgerTransaction:
    """Deltas applied while the tenant's balance is locked."""

    def __init__(self, ledger: "BalanceLedger", db: AsyncSession, balance: Balance):
        self.ledger = ledger
        self.db = db
        self.balance = balance
        self.changed = False

    @property
    def tenant_id(self) -> int:
        return self.balance.tenant_id

    async def _existing(self, key: str) -> Optional[LedgerEntry]:
        result = await self.db.execute(
            select(LedgerEntry).where(LedgerEntry.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def apply(
        self,
        kind: DeltaKind,
        amount: Decimal,
        key: str,
        reason: str,
        free_minutes: int = 0,
        reference: Optional[str] = None,
    ) -> AppliedDelta:
        """Apply ``amount`` (negative for charges) exactly once per ``key``."""
        amount = Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)

        existing = await self._existing(key)
        if existing is not None:
            logger.info("ledger_duplicate_delta", tenant_id=self.tenant_id, key=key)
            return AppliedDelta(
                idempotency_key=key,
                amount=existing.amount,
                free_minutes=existing.free_minutes,
                balance_after=existing.balance_after,
                duplicate=True,
            )

        new_amount = self.balance.amount + amount
        if kind == DeltaKind.PREAUTH_CHARGE and new_amount < self.ledger.floor:
            raise InsufficientFundsError(
                "Insufficient funds",
                required=-amount,
                available=self.balance.amount - self.ledger.floor,
            )

        self.balance.amount = new_amount
        self.balance.free_minutes_used += free_minutes
        self.balance.version += 1
        self.db.add(
            LedgerEntry(
                tenant_id=self.tenant_id,
                idempotency_key=key,
                kind=kind,
                amount=amount,
                free_minutes=free_minutes,
                reason=reason,
                balance_after=new_amount,
                reference=reference,
            )
        )
        await self.db.flush()
        self.changed = True

        logger.info(
            "ledger_delta_applied",
            tenant_id=self.tenant_id,
            kind=kind.value,
            amount=str(amount),
            free_minutes=free_minutes,
            balance_after=str(new_amount),
            key=key,
        )
        return AppliedDelta(
            idempotency_key=key,
            amount=amount,
            free_minutes=free_minutes,
            balance_after=new_amount,
        )

    async def meter_call(
        self,
        duration_seconds: int,
        key: str,
        reference: Optional[str] = None,
    ) -> MeteringResult:
        """Charge a finished call: free minutes first, the rest at the rate."""
        billed = billable_minutes(duration_seconds)
        rate = self.ledger.rate

        existing = await self._existing(key)
        if existing is not None:
            logger.info("ledger_duplicate_metering", tenant_id=self.tenant_id, key=key)
            return MeteringResult(
                billed_minutes=billed,
                free_minutes=existing.free_minutes,
                rate=rate,
                cost=-existing.amount,
                balance_after=existing.balance_after,
                duplicate=True,
            )

        free = min(billed, self.balance.free_minutes_left)
        cost = (rate * (billed - free)).quantize(CENTS, rounding=ROUND_HALF_UP)
        applied = await self.apply(
            DeltaKind.METERING,
            -cost,
            key,
            reason="call_metering",
            free_minutes=free,
            reference=reference,
        )
        return MeteringResult(
            billed_minutes=billed,
            free_minutes=free,
            rate=rate,
            cost=cost,
            balance_after=applied.balance_after,
        )


class BalanceLedger:
    """Serialized, idempotent balance mutations for every tenant."""

    def __init__(
        self,
        cache: Optional[CatalogCache] = None,
        locks: Optional[KeyedLocks] = None,
        rate: Optional[Decimal] = None,
        floor: Optional[Decimal] = None,
    ):
        self.cache = cache or catalog_cache
        self.locks = locks or keyed_locks
        self.rate = Decimal(settings.call_rate_per_minute if rate is None else rate)
        self.floor = Decimal(settings.balance_floor if floor is None else floor)

    async def _load_for_update(self, db: AsyncSession, tenant_id: int) -> Balance:
        result = await db.execute(
            select(Balance)
            .where(Balance.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        balance = result.scalar_one_or_none()
        if balance is not None:
            return balance

        balance = Balance(
            tenant_id=tenant_id,
            amount=Decimal("0"),
            free_minutes_limit=settings.default_free_minutes,
            free_minutes_used=0,
            version=0,
        )
        db.add(balance)
        try:
            await db.flush()
        except IntegrityError:
            # Another worker created it first
            await db.rollback()
            result = await db.execute(
                select(Balance)
                .where(Balance.tenant_id == tenant_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            balance = result.scalar_one()
        return balance

    @asynccontextmanager
    async def transaction(
        self, db: AsyncSession, tenant_id: int
    ) -> AsyncIterator[LedgerTransaction]:
        """Lock the tenant's balance and commit everything done inside.

        Enter with a session that has no pending changes. Raises
        ``DuplicateEventError`` when a concurrent worker committed the same
        idempotency key first.
        """
        async with self.locks.hold(balance_key(tenant_id)):
            balance = await self._load_for_update(db, tenant_id)
            tx = LedgerTransaction(self, db, balance)
            try:
                yield tx
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                logger.info("ledger_commit_conflict", tenant_id=tenant_id, error=str(e.orig))
                raise DuplicateEventError("Delta already applied", tenant_id=tenant_id)
            except Exception:
                await db.rollback()
                raise

        if tx.changed:
            await self.cache.invalidate(InvalidationEvent(BALANCE_CHANGED, tenant_id))

    async def apply_delta(
        self,
        db: AsyncSession,
        tenant_id: int,
        kind: DeltaKind,
        amount: Decimal,
        key: str,
        reason: str,
        reference: Optional[str] = None,
    ) -> AppliedDelta:
        """Apply one delta in its own transaction."""
        if not key:
            raise ValidationError("Idempotency key is required")
        try:
            async with self.transaction(db, tenant_id) as tx:
                applied = await tx.apply(kind, amount, key, reason, reference=reference)
        except DuplicateEventError:
            entry = await self.get_entry(db, key)
            return AppliedDelta(
                idempotency_key=key,
                amount=entry.amount,
                free_minutes=entry.free_minutes,
                balance_after=entry.balance_after,
                duplicate=True,
            )
        return applied

    async def meter_call(
        self,
        db: AsyncSession,
        tenant_id: int,
        call_id: str,
        duration_seconds: int,
    ) -> MeteringResult:
        """Charge a finished call; a repeated ``call_id`` changes nothing."""
        key = call_ledger_key(call_id)
        try:
            async with self.transaction(db, tenant_id) as tx:
                result = await tx.meter_call(duration_seconds, key, reference=call_id)
        except DuplicateEventError:
            entry = await self.get_entry(db, key)
            return MeteringResult(
                billed_minutes=billable_minutes(duration_seconds),
                free_minutes=entry.free_minutes,
                rate=self.rate,
                cost=-entry.amount,
                balance_after=entry.balance_after,
                duplicate=True,
            )
        return result

    async def set_minutes_allowance(
        self,
        db: AsyncSession,
        tenant_id: int,
        limit: int,
        key: str,
        reset_used: bool = False,
    ) -> BalanceSnapshot:
        """Grant a plan's free-minute allowance, optionally starting a new period."""
        if limit < 0:
            raise ValidationError("Minutes allowance cannot be negative")
        try:
            async with self.transaction(db, tenant_id) as tx:
                applied = await tx.apply(
                    DeltaKind.ADJUSTMENT,
                    Decimal("0"),
                    key,
                    reason=f"minutes_allowance:{limit}",
                )
                if not applied.duplicate:
                    tx.balance.free_minutes_limit = limit
                    if reset_used:
                        tx.balance.free_minutes_used = 0
        except DuplicateEventError:
            pass
        return await self.get_balance(db, tenant_id, use_cache=False)

    async def get_entry(self, db: AsyncSession, key: str) -> Optional[LedgerEntry]:
        result = await db.execute(select(LedgerEntry).where(LedgerEntry.idempotency_key == key))
        return result.scalar_one_or_none()

    # ============== Reads ==============

    async def get_balance(
        self,
        db: AsyncSession,
        tenant_id: int,
        use_cache: bool = True,
    ) -> BalanceSnapshot:
        key = ("balance", tenant_id)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        result = await db.execute(select(Balance).where(Balance.tenant_id == tenant_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            snapshot = BalanceSnapshot(
                tenant_id=tenant_id,
                amount=Decimal("0"),
                free_minutes_limit=settings.default_free_minutes,
                free_minutes_used=0,
                version=0,
            )
        else:
            snapshot = BalanceSnapshot(
                tenant_id=tenant_id,
                amount=Decimal(balance.amount),
                free_minutes_limit=balance.free_minutes_limit,
                free_minutes_used=balance.free_minutes_used,
                version=balance.version,
            )
        self.cache.put(key, snapshot, self.cache.balance_ttl)
        return snapshot

    def available_minutes(self, snapshot: BalanceSnapshot) -> int:
        """Free minutes left plus whole minutes the funds above the floor cover."""
        paid = 0
        if self.rate > 0:
            spendable = max(snapshot.amount - self.floor, Decimal("0"))
            paid = int(spendable // self.rate)
        return snapshot.free_minutes_left + paid

    async def get_available_minutes(self, db: AsyncSession, tenant_id: int) -> int:
        snapshot = await self.get_balance(db, tenant_id)
        return self.available_minutes(snapshot)

    async def list_entries(
        self,
        db: AsyncSession,
        tenant_id: int,
        limit: int = 50,
    ) -> list[LedgerEntry]:
        result = await db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.tenant_id == tenant_id)
            .order_by(LedgerEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

"""Phone number and balance endpoints for the dashboard."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    TenantContext,
    get_ledger,
    get_lifecycle_manager,
    get_tenant_context,
    require_admin_context,
)
from app.core.database import get_db
from app.models import DeltaKind, PhoneNumber
from app.schemas.telephony import (
    AvailableNumberResponse,
    BalanceAdjustRequest,
    BalanceAdjustResponse,
    BalanceResponse,
    ConnectRequest,
    ConnectResponse,
    DisconnectRequest,
    DisconnectResponse,
    LedgerEntryResponse,
    MinutesAllowanceRequest,
    NumberResultResponse,
    PhoneNumberResponse,
    RoutingRequest,
    RoutingResponse,
)
from app.services.catalog_service import RoutingSnapshot
from app.services.ledger_service import BalanceLedger, BalanceSnapshot
from app.services.lifecycle_service import (
    ConnectSummary,
    DisconnectOutcome,
    NumberLifecycleManager,
    RoutingConfig,
)

router = APIRouter()

DISCONNECT_MESSAGES = {
    DisconnectOutcome.DISCONNECTED: "Number disconnected",
    DisconnectOutcome.ALREADY_DISCONNECTED: "Number is already disconnected",
    DisconnectOutcome.PENDING: "Disconnection is awaiting carrier confirmation",
}


def _routing_response(snapshot: RoutingSnapshot) -> RoutingResponse:
    return RoutingResponse(
        number=snapshot.number,
        assistant_id=snapshot.assistant_id,
        channel_ids=list(snapshot.channel_ids),
        function_ids=list(snapshot.function_ids),
        prompt_task=snapshot.prompt_task,
    )


def _number_response(phone: PhoneNumber) -> PhoneNumberResponse:
    routing = phone.routing
    return PhoneNumberResponse(
        number=phone.number,
        status=phone.status.value,
        status_changed_at=phone.status_changed_at,
        region=phone.region,
        monthly_price=phone.monthly_price,
        sms_supported=phone.sms_supported,
        connected_at=phone.connected_at,
        next_renewal_at=phone.next_renewal_at,
        routing=RoutingResponse(
            number=phone.number,
            assistant_id=routing.assistant_id,
            channel_ids=routing.channel_ids or [],
            function_ids=routing.function_ids or [],
            prompt_task=routing.prompt_task,
        )
        if routing is not None
        else None,
    )


def _balance_response(ledger: BalanceLedger, snapshot: BalanceSnapshot) -> BalanceResponse:
    return BalanceResponse(
        tenant_id=snapshot.tenant_id,
        amount=snapshot.amount,
        free_minutes_limit=snapshot.free_minutes_limit,
        free_minutes_used=snapshot.free_minutes_used,
        free_minutes_left=snapshot.free_minutes_left,
        available_minutes=ledger.available_minutes(snapshot),
        rate_per_minute=ledger.rate,
        floor=ledger.floor,
    )


# ============== Numbers ==============

@router.get("/numbers", response_model=list[PhoneNumberResponse])
async def list_numbers(
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    lifecycle: NumberLifecycleManager = Depends(get_lifecycle_manager),
):
    """Numbers connected to (or last held by) the caller's account."""
    numbers = await lifecycle.list_numbers(db, context.tenant_id)
    return [_number_response(n) for n in numbers]


@router.get("/numbers/available", response_model=list[AvailableNumberResponse])
async def list_available_numbers(
    sms: bool = Query(False, description="Only SMS-capable mobile numbers"),
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    lifecycle: NumberLifecycleManager = Depends(get_lifecycle_manager),
):
    """Numbers the carrier currently offers."""
    offers = await lifecycle.list_available(db, sms=sms)
    return [
        AvailableNumberResponse(
            number=o.number,
            category=o.category,
            price=o.price,
            installation_price=o.installation_price,
            region=o.region,
            sms_supported=o.sms_supported,
        )
        for o in offers
    ]


@router.post("/numbers/connect", response_model=ConnectResponse)
async def connect_numbers(
    request: ConnectRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    lifecycle: NumberLifecycleManager = Depends(get_lifecycle_manager),
) -> ConnectResponse:
    """Connect numbers; each one reports its own outcome."""
    report = await lifecycle.connect(db, context.tenant_id, request.numbers)
    return ConnectResponse(
        success=report.summary != ConnectSummary.FAILED,
        summary=report.summary,
        message=report.message,
        results=[
            NumberResultResponse(
                number=r.number,
                outcome=r.outcome,
                error=r.error,
                message=r.message,
            )
            for r in report.results
        ],
    )


@router.post("/numbers/disconnect", response_model=DisconnectResponse)
async def disconnect_number(
    request: DisconnectRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    lifecycle: NumberLifecycleManager = Depends(get_lifecycle_manager),
) -> DisconnectResponse:
    result = await lifecycle.disconnect(db, context.tenant_id, request.number)
    return DisconnectResponse(
        number=result.number,
        outcome=result.outcome,
        message=DISCONNECT_MESSAGES[result.outcome],
    )


# ============== Routing ==============

@router.get("/numbers/{number}/routing", response_model=RoutingResponse)
async def get_routing(
    number: str,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    lifecycle: NumberLifecycleManager = Depends(get_lifecycle_manager),
) -> RoutingResponse:
    snapshot = await lifecycle.get_routing(db, context.tenant_id, number)
    return _routing_response(snapshot)


@router.put("/numbers/{number}/routing", response_model=RoutingResponse)
async def set_routing(
    number: str,
    request: RoutingRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    lifecycle: NumberLifecycleManager = Depends(get_lifecycle_manager),
) -> RoutingResponse:
    """Attach an assistant, notification channels and functions to a number."""
    snapshot = await lifecycle.set_routing(
        db,
        context.tenant_id,
        number,
        RoutingConfig(
            assistant_id=request.assistant_id,
            channel_ids=request.channel_ids,
            function_ids=request.function_ids,
            prompt_task=request.prompt_task,
        ),
    )
    return _routing_response(snapshot)


@router.delete("/numbers/{number}/routing", status_code=status.HTTP_204_NO_CONTENT)
async def clear_routing(
    number: str,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    lifecycle: NumberLifecycleManager = Depends(get_lifecycle_manager),
) -> None:
    await lifecycle.clear_routing(db, context.tenant_id, number)


# ============== Balance ==============

@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    ledger: BalanceLedger = Depends(get_ledger),
) -> BalanceResponse:
    """Funds, free minutes and the minutes they add up to.

    Served from a short-lived cache (``BALANCE_CACHE_TTL_SECONDS``).
    """
    snapshot = await ledger.get_balance(db, context.tenant_id)
    return _balance_response(ledger, snapshot)


@router.get("/balance/entries", response_model=list[LedgerEntryResponse])
async def list_ledger_entries(
    limit: int = Query(50, ge=1, le=200),
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    ledger: BalanceLedger = Depends(get_ledger),
):
    entries = await ledger.list_entries(db, context.tenant_id, limit=limit)
    return [LedgerEntryResponse.model_validate(e) for e in entries]


@router.post("/balance/adjust", response_model=BalanceAdjustResponse)
async def adjust_balance(
    request: BalanceAdjustRequest,
    context: TenantContext = Depends(require_admin_context),
    db: AsyncSession = Depends(get_db),
    ledger: BalanceLedger = Depends(get_ledger),
) -> BalanceAdjustResponse:
    """Credit or debit the balance once per idempotency key."""
    applied = await ledger.apply_delta(
        db,
        context.tenant_id,
        DeltaKind.ADJUSTMENT,
        request.amount,
        key=f"adjust:{context.tenant_id}:{request.idempotency_key}",
        reason=request.reason,
    )
    return BalanceAdjustResponse(
        amount=applied.amount,
        balance_after=applied.balance_after,
        duplicate=applied.duplicate,
    )


@router.put("/balance/minutes", response_model=BalanceResponse)
async def set_minutes_allowance(
    request: MinutesAllowanceRequest,
    context: TenantContext = Depends(require_admin_context),
    db: AsyncSession = Depends(get_db),
    ledger: BalanceLedger = Depends(get_ledger),
) -> BalanceResponse:
    """Set the plan's free-minute allowance."""
    snapshot = await ledger.set_minutes_allowance(
        db,
        context.tenant_id,
        request.limit,
        key=f"minutes:{context.tenant_id}:{request.idempotency_key}",
        reset_used=request.reset_used,
    )
    return _balance_response(ledger, snapshot)

"""Webhook endpoints for the carrier platform."""

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_ingestor, get_lifecycle_manager
from app.core.database import get_db
from app.core.logging import bind_request_context, get_logger
from app.core.security import verify_api_key
from app.models import Assistant
from app.schemas.webhook import (
    AssistantSyncRequest,
    CallEndedEvent,
    CallStartedEvent,
    InboundFunction,
    InboundParamsRequest,
    InboundParamsResponse,
    WebhookResponse,
)
from app.services.ingest_service import CallEventIngestor, IngestResult
from app.services.lifecycle_service import NumberLifecycleManager

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(verify_api_key)])


async def dispatch_call_notifications(ingestor: CallEventIngestor, outcome: IngestResult) -> None:
    """Background task: notify sinks after the webhook was acknowledged."""
    async with ingestor.session_factory() as db:
        try:
            await ingestor.notify_completed(db, outcome)
        except Exception as e:
            logger.error("call_notification_failed", call_id=outcome.call_id, error=str(e))


@router.post("/carrier/call-started", response_model=WebhookResponse)
async def call_started(
    event: CallStartedEvent,
    db: AsyncSession = Depends(get_db),
    ingestor: CallEventIngestor = Depends(get_ingestor),
) -> WebhookResponse:
    """Track a call the carrier just connected."""
    bind_request_context(call_id=event.call_id)
    created = await ingestor.on_call_started(db, event)
    return WebhookResponse(
        message="Call tracked" if created else "Call already tracked",
        call_id=event.call_id,
        duplicate=not created,
    )


@router.post(
    "/carrier/call-ended",
    response_model=WebhookResponse,
    status_code=status.HTTP_200_OK,
)
async def call_ended(
    event: CallEndedEvent,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    ingestor: CallEventIngestor = Depends(get_ingestor),
) -> WebhookResponse:
    """Meter and record a finished call.

    Acknowledged as soon as the record is committed (or parked for replay);
    notifications are sent afterwards.
    """
    bind_request_context(call_id=event.call_id)
    outcome = await ingestor.on_call_ended(db, event)

    if outcome.dispatch and not outcome.duplicate:
        background_tasks.add_task(dispatch_call_notifications, ingestor, outcome)

    if outcome.dead_lettered:
        message = "Call queued for replay"
    elif outcome.duplicate:
        message = "Call already recorded"
    else:
        message = "Call recorded"

    return WebhookResponse(
        message=message,
        call_id=event.call_id,
        duplicate=outcome.duplicate,
        dead_lettered=outcome.dead_lettered,
        cost=None if outcome.dead_lettered else outcome.cost,
    )


@router.post("/carrier/inbound-params", response_model=InboundParamsResponse)
async def inbound_params(
    request: InboundParamsRequest,
    db: AsyncSession = Depends(get_db),
    lifecycle: NumberLifecycleManager = Depends(get_lifecycle_manager),
) -> InboundParamsResponse:
    """Tell the voice scenario who answers a call on ``number``."""
    resolution = await lifecycle.resolve_inbound(db, request.number)
    routing = resolution.routing

    functions = []
    if resolution.accepted and routing is not None and routing.function_ids:
        catalog = await lifecycle.cache.catalog(db, resolution.tenant_id)
        _, targets = catalog.targets_for(routing)
        functions = [
            InboundFunction(name=f.name, parameters=f.parameters)
            for f in targets
            if f.is_active
        ]

    return InboundParamsResponse(
        number=resolution.number,
        accepted=resolution.accepted,
        reason=resolution.reason,
        tenant_id=resolution.tenant_id,
        assistant_id=routing.assistant_id if routing else None,
        prompt_task=routing.prompt_task if routing else None,
        functions=functions,
        available_minutes=resolution.available_minutes,
    )


@router.put("/assistants/{assistant_id}", response_model=WebhookResponse)
async def sync_assistant(
    assistant_id: int,
    request: AssistantSyncRequest,
    db: AsyncSession = Depends(get_db),
) -> WebhookResponse:
    """Upsert the local copy of an assistant used to validate routing."""
    result = await db.execute(select(Assistant).where(Assistant.id == assistant_id))
    assistant = result.scalar_one_or_none()
    if assistant is None:
        assistant = Assistant(id=assistant_id)
        db.add(assistant)
    assistant.tenant_id = request.tenant_id
    assistant.name = request.name
    assistant.is_active = request.is_active
    await db.commit()

    logger.info("assistant_synced", assistant_id=assistant_id, tenant_id=request.tenant_id)
    return WebhookResponse(message="Assistant synced")

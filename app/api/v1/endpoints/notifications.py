"""Notification channel and user function management."""

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import TenantContext, get_tenant_context
from app.core.database import get_db
from app.core.errors import NotFoundError, ValidationError
from app.core.logging import get_logger
from app.models import NotificationChannel, UserFunction
from app.schemas.notifications import (
    ChannelCreate,
    ChannelResponse,
    ChannelUpdate,
    FunctionCreate,
    FunctionResponse,
    FunctionUpdate,
    check_channel_settings,
)
from app.services.catalog_service import CATALOG_CHANGED, InvalidationEvent, catalog_cache

logger = get_logger(__name__)

router = APIRouter()


async def _catalog_changed(tenant_id: int) -> None:
    await catalog_cache.invalidate(InvalidationEvent(CATALOG_CHANGED, tenant_id))


async def _get_channel(db: AsyncSession, tenant_id: int, channel_id: int) -> NotificationChannel:
    result = await db.execute(
        select(NotificationChannel).where(
            NotificationChannel.id == channel_id,
            NotificationChannel.tenant_id == tenant_id,
        )
    )
    channel = result.scalar_one_or_none()
    if channel is None:
        raise NotFoundError("Channel not found", channel_id=channel_id)
    return channel


async def _get_function(db: AsyncSession, tenant_id: int, function_id: int) -> UserFunction:
    result = await db.execute(
        select(UserFunction).where(
            UserFunction.id == function_id,
            UserFunction.tenant_id == tenant_id,
        )
    )
    function = result.scalar_one_or_none()
    if function is None:
        raise NotFoundError("Function not found", function_id=function_id)
    return function


async def _check_function_channel(db: AsyncSession, tenant_id: int, channel_id: Optional[int]) -> None:
    if channel_id is None:
        return
    try:
        await _get_channel(db, tenant_id, channel_id)
    except NotFoundError:
        raise ValidationError(
            "Function channel does not belong to your account",
            errors=[{"field": "channel_id", "id": channel_id}],
        )


# ============== Channels ==============

@router.get("/channels", response_model=list[ChannelResponse])
async def list_channels(
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(NotificationChannel)
        .where(NotificationChannel.tenant_id == context.tenant_id)
        .order_by(NotificationChannel.priority.desc(), NotificationChannel.id)
    )
    return [ChannelResponse.model_validate(c) for c in result.scalars().all()]


@router.post("/channels", response_model=ChannelResponse, status_code=status.HTTP_201_CREATED)
async def create_channel(
    request: ChannelCreate,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> ChannelResponse:
    channel = NotificationChannel(
        tenant_id=context.tenant_id,
        name=request.name,
        type=request.type.value,
        settings=request.settings,
        is_active=request.is_active,
        priority=request.priority,
    )
    db.add(channel)
    await db.commit()
    await _catalog_changed(context.tenant_id)

    logger.info("channel_created", tenant_id=context.tenant_id, channel_id=channel.id, type=channel.type)
    return ChannelResponse.model_validate(channel)


@router.patch("/channels/{channel_id}", response_model=ChannelResponse)
async def update_channel(
    channel_id: int,
    request: ChannelUpdate,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> ChannelResponse:
    channel = await _get_channel(db, context.tenant_id, channel_id)

    if request.name is not None:
        channel.name = request.name
    if request.settings is not None:
        try:
            channel.settings = check_channel_settings(channel.type, request.settings)
        except ValueError as e:
            raise ValidationError(str(e))
    if request.is_active is not None:
        channel.is_active = request.is_active
    if request.priority is not None:
        channel.priority = request.priority

    await db.commit()
    await _catalog_changed(context.tenant_id)
    return ChannelResponse.model_validate(channel)


@router.delete("/channels/{channel_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_channel(
    channel_id: int,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> None:
    channel = await _get_channel(db, context.tenant_id, channel_id)

    # Functions reporting to this channel fall back to webhook-only delivery
    functions = await db.execute(
        select(UserFunction).where(
            UserFunction.tenant_id == context.tenant_id,
            UserFunction.channel_id == channel_id,
        )
    )
    for function in functions.scalars():
        function.channel_id = None

    await db.delete(channel)
    await db.commit()
    await _catalog_changed(context.tenant_id)
    logger.info("channel_deleted", tenant_id=context.tenant_id, channel_id=channel_id)


# ============== Functions ==============

@router.get("/functions", response_model=list[FunctionResponse])
async def list_functions(
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(UserFunction)
        .where(UserFunction.tenant_id == context.tenant_id)
        .order_by(UserFunction.id)
    )
    return [FunctionResponse.model_validate(f) for f in result.scalars().all()]


@router.post("/functions", response_model=FunctionResponse, status_code=status.HTTP_201_CREATED)
async def create_function(
    request: FunctionCreate,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> FunctionResponse:
    await _check_function_channel(db, context.tenant_id, request.channel_id)

    function = UserFunction(
        tenant_id=context.tenant_id,
        name=request.name,
        description=request.description,
        parameters=request.parameters,
        webhook_url=request.webhook_url,
        channel_id=request.channel_id,
        is_active=request.is_active,
    )
    db.add(function)
    await db.commit()
    await _catalog_changed(context.tenant_id)

    logger.info("function_created", tenant_id=context.tenant_id, function_id=function.id)
    return FunctionResponse.model_validate(function)


@router.patch("/functions/{function_id}", response_model=FunctionResponse)
async def update_function(
    function_id: int,
    request: FunctionUpdate,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> FunctionResponse:
    function = await _get_function(db, context.tenant_id, function_id)

    changes = request.model_dump(exclude_unset=True)
    if "channel_id" in changes:
        await _check_function_channel(db, context.tenant_id, changes["channel_id"])
    for field_name, value in changes.items():
        if value is None and field_name in ("parameters", "is_active"):
            continue
        setattr(function, field_name, value)

    await db.commit()
    await _catalog_changed(context.tenant_id)
    return FunctionResponse.model_validate(function)


@router.delete("/functions/{function_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_function(
    function_id: int,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> None:
    function = await _get_function(db, context.tenant_id, function_id)
    await db.delete(function)
    await db.commit()
    await _catalog_changed(context.tenant_id)
    logger.info("function_deleted", tenant_id=context.tenant_id, function_id=function_id)

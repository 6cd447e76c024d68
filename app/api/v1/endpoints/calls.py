"""Call history endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import TenantContext, get_history_service, get_tenant_context
from app.core.database import get_db
from app.schemas.calls import CallHistoryResponse, CallRecordResponse
from app.services.history_service import CallHistoryService, Period

router = APIRouter()


@router.get("/history", response_model=CallHistoryResponse)
async def call_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    period: Period = Query(Period.ALL),
    cursor: Optional[str] = Query(None, description="next_cursor from the previous page"),
    snapshot: Optional[str] = Query(None, description="snapshot from the first page"),
    tz: Optional[str] = Query(None, description="IANA timezone for the period window"),
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    history: CallHistoryService = Depends(get_history_service),
) -> CallHistoryResponse:
    """Calls of the tenant, newest first."""
    result = await history.list(
        db,
        context.tenant_id,
        page=page,
        limit=limit,
        period=period,
        cursor=cursor,
        snapshot=snapshot,
        timezone_name=tz,
    )
    return CallHistoryResponse(
        history=[CallRecordResponse.model_validate(r) for r in result.items],
        current_page=result.page,
        total_count=result.total_count,
        total_pages=result.total_pages,
        has_more=result.has_more,
        snapshot=result.snapshot,
        next_cursor=result.next_cursor,
    )

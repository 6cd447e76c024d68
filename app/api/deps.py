"""Dependency injection for API endpoints - authentication and services."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.logging import bind_request_context
from app.core.security import decode_token
from app.services.history_service import CallHistoryService
from app.services.ingest_service import CallEventIngestor
from app.services.ledger_service import BalanceLedger
from app.services.lifecycle_service import NumberLifecycleManager

security = HTTPBearer(auto_error=False)


class TenantContext:
    """Request-scoped caller identity taken from the bearer token."""

    def __init__(self, tenant_id: int, subject: str, role: Optional[str] = None):
        self.tenant_id = tenant_id
        self.subject = subject
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_tenant_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TenantContext:
    """Extract and validate the tenant from the JWT."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    subject = payload.get("sub")
    try:
        tenant_id = int(payload.get("tenant_id"))
    except (TypeError, ValueError):
        raise credentials_exception
    if not subject:
        raise credentials_exception

    bind_request_context(tenant_id=tenant_id, subject=subject)
    return TenantContext(tenant_id=tenant_id, subject=subject, role=payload.get("role"))


async def require_admin_context(
    context: TenantContext = Depends(get_tenant_context),
) -> TenantContext:
    """Require the tenant admin role (manual balance changes)."""
    if not context.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant admin access required",
        )
    return context


# Service singletons; tests replace them through app.dependency_overrides

@lru_cache
def get_ledger() -> BalanceLedger:
    return BalanceLedger()


@lru_cache
def get_lifecycle_manager() -> NumberLifecycleManager:
    return NumberLifecycleManager(ledger=get_ledger())


@lru_cache
def get_ingestor() -> CallEventIngestor:
    return CallEventIngestor(ledger=get_ledger())


@lru_cache
def get_history_service() -> CallHistoryService:
    return CallHistoryService()

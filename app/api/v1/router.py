"""API v1 router - combines all endpoint routers."""

from fastapi import APIRouter

from app.api.v1.endpoints import calls, health, notifications, telephony, webhooks

api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["Health"])

# Dashboard endpoints (bearer token)
api_router.include_router(telephony.router, prefix="/telephony", tags=["Telephony"])
api_router.include_router(calls.router, prefix="/calls", tags=["Calls"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])

# Carrier callbacks (API key)
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])

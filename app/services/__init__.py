"""Business logic services."""

from app.services.ledger_service import BalanceLedger
from app.services.carrier_service import CarrierClient
from app.services.catalog_service import CatalogCache
from app.services.history_service import CallHistoryService
from app.services.ingest_service import CallEventIngestor
from app.services.lifecycle_service import NumberLifecycleManager
from app.services.notification_service import NotificationDispatcher

__all__ = [
    "BalanceLedger",
    "CarrierClient",
    "CatalogCache",
    "CallHistoryService",
    "CallEventIngestor",
    "NumberLifecycleManager",
    "NotificationDispatcher",
]

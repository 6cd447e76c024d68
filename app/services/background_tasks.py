"""Background maintenance using asyncio tasks.

No external scheduler required: periodic jobs run as in-process asyncio
tasks started from the application lifespan.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import async_session_maker
from app.core.logging import get_logger
from app.services.catalog_service import catalog_cache
from app.services.ingest_service import CallEventIngestor
from app.services.lifecycle_service import NumberLifecycleManager
from app.services.redis_service import RedisService, get_redis

logger = get_logger(__name__)

# In-memory storage for scheduled tasks
_scheduled_tasks: dict[str, asyncio.Task] = {}


def schedule_periodic_task(
    task_id: str,
    interval_seconds: float,
    func: Callable[[], Awaitable[Any]],
) -> None:
    """Run ``func`` every ``interval_seconds`` until cancelled.

    A failing run is logged and the schedule continues.
    """
    async def _run_periodically():
        try:
            while True:
                try:
                    await func()
                except Exception as e:
                    logger.error("periodic_task_failed", task_id=task_id, error=str(e))
                await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("periodic_task_cancelled", task_id=task_id)
            raise
        finally:
            if _scheduled_tasks.get(task_id) is asyncio.current_task():
                del _scheduled_tasks[task_id]

    # Cancel existing task with same ID if exists
    if task_id in _scheduled_tasks:
        _scheduled_tasks[task_id].cancel()

    _scheduled_tasks[task_id] = asyncio.create_task(_run_periodically())

    logger.info(
        "task_scheduled",
        task_id=task_id,
        interval_seconds=interval_seconds,
        first_run=datetime.now(timezone.utc),
        next_run=datetime.now(timezone.utc) + timedelta(seconds=interval_seconds),
    )


def cancel_scheduled_task(task_id: str) -> bool:
    """Cancel a scheduled task by ID."""
    task = _scheduled_tasks.pop(task_id, None)
    if task:
        task.cancel()
        return True
    return False


async def cancel_all_tasks() -> None:
    """Cancel every scheduled task and wait for them to finish."""
    tasks = list(_scheduled_tasks.values())
    _scheduled_tasks.clear()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def run_maintenance_cycle(
    session_factory: Optional[async_sessionmaker] = None,
    lifecycle: Optional[NumberLifecycleManager] = None,
    ingestor: Optional[CallEventIngestor] = None,
) -> dict[str, Any]:
    """One pass of reconciliation, dead-letter replay and rental renewal."""
    session_factory = session_factory or async_session_maker
    lifecycle = lifecycle or NumberLifecycleManager()
    ingestor = ingestor or CallEventIngestor(session_factory=session_factory)

    async def _step(name: str, run: Callable[[AsyncSession], Awaitable[Any]], empty: Any) -> Any:
        # Each step gets its own session; a failing one is logged and skipped
        try:
            async with session_factory() as db:
                return await run(db)
        except Exception as e:
            logger.error("maintenance_step_failed", step=name, error=str(e), exc_info=True)
            return empty

    reconciled = await _step("reconcile", lifecycle.reconcile_stale, 0)
    replayed = await _step("replay", ingestor.replay_dead_letters, 0)
    renewals = await _step("renew", lifecycle.renew_expired, {})

    summary = {"reconciled": reconciled, "replayed": replayed, "renewals": renewals}
    if reconciled or replayed or renewals:
        logger.info("maintenance_cycle_completed", **summary)
    return summary


def start_maintenance() -> None:
    if not settings.maintenance_enabled:
        logger.info("maintenance_disabled")
        return
    schedule_periodic_task(
        "maintenance",
        settings.reconcile_interval_seconds,
        run_maintenance_cycle,
    )


def start_invalidation_listener() -> None:
    """Apply cache invalidations published by other workers."""
    client = get_redis()
    if client is None:
        return

    async def _listen():
        try:
            await RedisService(client).listen(catalog_cache.apply_remote)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("invalidation_listener_stopped", error=str(e))
        finally:
            _scheduled_tasks.pop("invalidation_listener", None)

    _scheduled_tasks["invalidation_listener"] = asyncio.create_task(_listen())
    logger.info("invalidation_listener_started")

"""Celery tasks for maintenance and cleanup.

Runs daily at 3 AM (configured in beat_schedule) and performs:
1. Purge finished executions older than ``EXECUTION_RETENTION_DAYS``
2. Report execution locks that have been held for over an hour; a crashed
   scheduler leaves these behind and they block their timestamp until
   removed
"""

import asyncio
import logging
from datetime import timedelta

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)

STALE_LOCK_AGE = timedelta(hours=1)


@celery_app.task(
    name="worker.tasks.maintenance.cleanup_old_data",
    queue="default",
)
def cleanup_old_data():
    """Clean up old executions and report stale locks.

    Runs daily at 3 AM (configured in beat_schedule).
    """
    logger.info("Running daily cleanup")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_run_cleanup())
        logger.info("Daily cleanup completed: %s", result)
        return result
    except Exception as exc:
        logger.error("Daily cleanup failed: %s", exc, exc_info=True)
        return {"status": "error", "error": str(exc)}
    finally:
        loop.close()


async def _run_cleanup(session_factory=None, now=None) -> dict:
    """Async cleanup logic with DB access."""
    from sqlalchemy import and_, delete

    from app.config import get_settings
    from core.constants import TERMINAL_EXECUTION_STATUSES
    from core.utils import utcnow_naive
    from db.models.execution import Execution
    from services.lock_manager import ExecutionLockManager

    owns_engine = session_factory is None
    if owns_engine:
        from db.session import create_db_engine, create_session_factory

        engine = create_db_engine()
        session_factory = create_session_factory(engine)

    settings = get_settings()
    now = now or utcnow_naive()
    stats = {"executions_deleted": 0, "stale_locks": []}

    try:
        cutoff = now - timedelta(days=settings.EXECUTION_RETENTION_DAYS)
        async with session_factory() as session:
            try:
                result = await session.execute(
                    delete(Execution).where(
                        and_(
                            Execution.status.in_(TERMINAL_EXECUTION_STATUSES),
                            Execution.started_at < cutoff,
                        )
                    )
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        stats["executions_deleted"] = result.rowcount
        logger.info(
            "Purged %d executions older than %d days",
            result.rowcount,
            settings.EXECUTION_RETENTION_DAYS,
        )

        locks = await ExecutionLockManager(session_factory).list_locks(older_than=STALE_LOCK_AGE)
        for lock in locks:
            logger.warning(
                "Execution lock for %s held by %s since %s looks stale (schedules: %s)",
                lock.execution_time.isoformat(),
                lock.locked_by,
                lock.created_at.isoformat(),
                ", ".join(lock.schedule_ids or []),
            )
        stats["stale_locks"] = [lock.execution_time.isoformat() for lock in locks]
    finally:
        if owns_engine:
            await engine.dispose()

    stats["status"] = "completed"
    return stats

"""Celery task driving one scheduler tick per minute.

Celery Beat fires ``poll_schedules`` every minute. Each run builds the
runner and poller for a fresh event loop, ticks once and tears the mail
client pool down again. Several workers may fire the same minute; the
per-timestamp execution lock makes sure each due group still runs once.

The mail collaborators are configured by import path:

- ``MAIL_CLIENT_FACTORY``: async callable ``(account_id) -> mail client``
- ``EMAIL_PROCESSOR``: object with ``process_emails()``, or a zero-arg
  factory returning one
"""

import asyncio
import logging

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.schedule_poller.poll_schedules",
    bind=True,
    max_retries=2,
    default_retry_delay=15,
    queue="scheduler",
)
def poll_schedules(self):
    """Run due schedules."""
    logger.info("[schedule-poller] Polling schedules for due executions...")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_poll_once())
        logger.info(f"[schedule-poller] Done: {result}")
        return result
    except Exception as exc:
        logger.error(f"[schedule-poller] Polling failed: {exc}", exc_info=True)
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def _poll_once(session_factory=None) -> dict:
    """Build the scheduler stack for this loop and run a single tick."""
    from worker.run_scheduler import build_poller, load_collaborators

    collaborators = load_collaborators()
    if collaborators is None:
        return {"status": "skipped", "reason": "mail collaborators not configured"}

    # Engines are bound to the loop that created them; build one per run
    engine = None
    if session_factory is None:
        from db.session import create_db_engine, create_session_factory

        engine = create_db_engine()
        session_factory = create_session_factory(engine)

    poller, pool = build_poller(session_factory, *collaborators)
    try:
        summary = await poller.tick()
        return summary.as_dict()
    finally:
        await pool.close()
        if engine is not None:
            await engine.dispose()

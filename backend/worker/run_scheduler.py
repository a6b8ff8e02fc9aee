"""Shared helpers to assemble and run the scheduler outside the API.

Both the Celery beat tick and the standalone long-running scheduler need
the same stack: mail collaborators resolved from settings, a mail client
pool, the execution runner and the poller. This module builds it once.

Usage from a Celery task (one tick per beat)::

    poller, pool = build_poller(session_factory, client_factory, processor)
    await poller.tick()

Standalone, ticking every ``SCHEDULER_POLL_INTERVAL_SECONDS``::

    python -m worker.run_scheduler
"""

import asyncio
import logging
import signal
from typing import Any, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from integrations.mail import (
    EmailProcessor,
    MailClientFactory,
    MailClientPool,
    PooledEmailFetcher,
    load_object,
)
from services.execution_runner import ExecutionRunner
from services.lock_manager import ExecutionLockManager
from services.scheduler_poller import SchedulerPoller

logger = logging.getLogger(__name__)


def load_collaborators() -> Optional[Tuple[MailClientFactory, EmailProcessor]]:
    """Resolve the configured mail client factory and email processor.

    Returns:
        None when either import path is unset
    """
    settings = get_settings()
    if not settings.MAIL_CLIENT_FACTORY or not settings.EMAIL_PROCESSOR:
        logger.error(
            "[scheduler] MAIL_CLIENT_FACTORY and EMAIL_PROCESSOR must be configured"
        )
        return None

    client_factory = load_object(settings.MAIL_CLIENT_FACTORY)
    processor: Any = load_object(settings.EMAIL_PROCESSOR)
    if isinstance(processor, type) or not hasattr(processor, "process_emails"):
        processor = processor()
    return client_factory, processor


def build_poller(
    session_factory: async_sessionmaker[AsyncSession],
    client_factory: MailClientFactory,
    processor: EmailProcessor,
) -> Tuple[SchedulerPoller, MailClientPool]:
    """Wire pool → fetcher → runner → poller. The caller closes the pool."""
    pool = MailClientPool(client_factory)
    runner = ExecutionRunner(session_factory, PooledEmailFetcher(pool), processor)
    poller = SchedulerPoller(session_factory, runner, ExecutionLockManager(session_factory))
    return poller, pool


async def run_scheduler() -> None:
    """Run the poller until SIGINT/SIGTERM."""
    from db.session import AsyncSessionLocal, close_db, engine, init_db

    collaborators = load_collaborators()
    if collaborators is None:
        return

    await init_db(engine)
    poller, pool = build_poller(AsyncSessionLocal, *collaborators)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, poller.stop)

    try:
        await poller.run_forever()
    finally:
        await pool.close()
        await close_db()


def main() -> None:
    from core.logging_config import setup_logging

    setup_logging()
    asyncio.run(run_scheduler())


if __name__ == "__main__":
    main()

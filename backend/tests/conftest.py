"""Shared pytest fixtures for the email schedule engine test suite.

Provides:
- A file-backed async SQLite database per test (concurrent sessions get
  their own connections, like separate scheduler processes would)
- Session factory and a plain AsyncSession
- A schedule factory that commits, so runner/poller sessions can see rows
- Fake mail collaborators (fetcher, processor, mail client)
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import AsyncGenerator, List, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from core.constants import ScheduleType  # noqa: E402
from core.utils import isoformat_utc, utcnow_naive  # noqa: E402
from db.base import Base  # noqa: E402
from db.session import create_db_engine, create_session_factory  # noqa: E402
from integrations.mail import EmailMessage, ProcessingResult  # noqa: E402


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create an async engine on a fresh SQLite file for one test."""
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'schedules.db'}")
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a DB session; tests commit explicitly when other sessions must see data."""
    async with session_factory() as session:
        yield session
        await session.commit()


# ---------------------------------------------------------------------------
# Test data fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def make_schedule(session_factory):
    """Insert and commit a schedule; keyword arguments override the defaults."""
    from db.models.schedule import Schedule

    async def _make(**overrides) -> Schedule:
        now = utcnow_naive()
        values = dict(
            id=str(uuid4()),
            user_id="user-1",
            email_account_id="account-1",
            name=f"Schedule {uuid4().hex[:6]}",
            schedule_type=ScheduleType.RECURRING.value,
            cron_expression="0 6 * * *",
            timezone="UTC",
            is_enabled=True,
            batch_size=5,
            next_execution_at=now - timedelta(minutes=1),
            created_at=now - timedelta(days=1),
            updated_at=now - timedelta(days=1),
        )
        values.update(overrides)
        if values.get("specific_dates"):
            values["specific_dates"] = [
                isoformat_utc(d) if isinstance(d, datetime) else d
                for d in values["specific_dates"]
            ]

        schedule = Schedule(**values)
        async with session_factory() as session:
            session.add(schedule)
            await session.commit()
        return schedule

    return _make


# ---------------------------------------------------------------------------
# Fake mail collaborators
# ---------------------------------------------------------------------------

def make_emails(count: int, prefix: str = "msg") -> List[EmailMessage]:
    return [
        EmailMessage(
            message_id=f"{prefix}-{i}",
            subject=f"Subject {i}",
            sender=f"sender{i}@example.com",
            recipients=["me@example.com"],
            received_at=utcnow_naive() - timedelta(hours=i),
        )
        for i in range(count)
    ]


class FakeFetcher:
    """Records fetch calls and returns canned emails (or raises)."""

    def __init__(self, emails: Optional[List[EmailMessage]] = None, error: Exception = None):
        self.emails = emails if emails is not None else make_emails(3)
        self.error = error
        self.calls = []

    async def fetch_emails_in_range(self, account_id, since, before, max_count):
        self.calls.append(
            {"account_id": account_id, "since": since, "before": before, "max_count": max_count}
        )
        if self.error:
            raise self.error
        return self.emails[:max_count]


class FakeProcessor:
    """Counts every email as processed; can fail for chosen schedules or pause."""

    def __init__(self, fail_for: tuple = (), error: Exception = None, delay: float = 0):
        self.fail_for = set(fail_for)
        self.error = error
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def process_emails(self, schedule_config, emails, execution_id):
        self.calls.append(
            {"config": schedule_config, "emails": emails, "execution_id": execution_id}
        )
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error or schedule_config["schedule_id"] in self.fail_for:
                raise self.error or RuntimeError("classification pipeline unavailable")
            return ProcessingResult(processed=len(emails), failed=0)
        finally:
            self.active -= 1


class FakeMailClient:
    def __init__(self, account_id: str, emails: Optional[List[EmailMessage]] = None):
        self.account_id = account_id
        self.emails = emails if emails is not None else make_emails(2, prefix=account_id)
        self.closed = False
        self.fetches = 0

    async def fetch_emails_in_range(self, since, before, max_count):
        self.fetches += 1
        return self.emails[:max_count]

    async def close(self):
        self.closed = True


async def fake_mail_client_factory(account_id: str) -> FakeMailClient:
    return FakeMailClient(account_id)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def runner(session_factory, fetcher, processor):
    from services.execution_runner import ExecutionRunner

    return ExecutionRunner(session_factory, fetcher, processor)

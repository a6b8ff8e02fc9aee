"""
Mail collaborators used by the execution runner.

The runner never talks to IMAP/Gmail or the classification pipeline
directly. It depends on two narrow interfaces:

- ``EmailFetcher.fetch_emails_in_range(account_id, since, before, max_count)``
- ``EmailProcessor.process_emails(schedule_config, emails, execution_id)``

Mail connections are expensive, so fetchers lease clients from an explicit
``MailClientPool`` (bounded per account, lease/return semantics) that is
injected into the runner rather than kept as module-level state.
"""

import asyncio
import importlib
from contextlib import asynccontextmanager
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

import structlog
from pydantic import BaseModel, Field

from app.config import get_settings

logger = structlog.get_logger(__name__)


class EmailMessage(BaseModel):
    """A fetched email, as handed to the processing pipeline."""

    message_id: str
    subject: str = ""
    sender: str = ""
    recipients: List[str] = Field(default_factory=list)
    received_at: Optional[datetime] = None
    body_text: str = ""
    body_html: str = ""


class ProcessingResult(BaseModel):
    """Outcome of processing a batch of emails for one execution."""

    processed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    per_email_results: List[Dict[str, Any]] = Field(default_factory=list)


@runtime_checkable
class EmailFetcher(Protocol):
    async def fetch_emails_in_range(
        self,
        account_id: str,
        since: datetime,
        before: datetime,
        max_count: int,
    ) -> List[EmailMessage]:
        ...


@runtime_checkable
class EmailProcessor(Protocol):
    async def process_emails(
        self,
        schedule_config: Mapping[str, Any],
        emails: List[EmailMessage],
        execution_id: str,
    ) -> ProcessingResult:
        ...


class MailClient(Protocol):
    """A connection to one mail account."""

    async def fetch_emails_in_range(
        self, since: datetime, before: datetime, max_count: int
    ) -> List[EmailMessage]:
        ...

    async def close(self) -> None:
        ...


MailClientFactory = Callable[[str], Awaitable[MailClient]]


class MailClientPool:
    """Bounded pool of mail clients, keyed by account.

    At most ``max_clients_per_account`` clients are leased per account at
    once; further ``lease`` calls wait. Clients are reused after a clean
    lease and closed after a lease that raised, since the connection state
    is then unknown.

    The pool's waits are bound to the running event loop: create one pool
    per loop (the Celery tick builds a fresh one each run).
    """

    def __init__(
        self,
        client_factory: MailClientFactory,
        max_clients_per_account: Optional[int] = None,
    ):
        self._factory = client_factory
        self._max = max_clients_per_account or get_settings().MAIL_POOL_MAX_CLIENTS_PER_ACCOUNT
        self._idle: Dict[str, List[MailClient]] = {}
        self._leased: Dict[str, int] = {}
        self._slots: Dict[str, asyncio.Semaphore] = {}
        self._closed = False

    @asynccontextmanager
    async def lease(self, account_id: str) -> AsyncIterator[MailClient]:
        """Borrow a client for ``account_id`` for the duration of the block."""
        if self._closed:
            raise RuntimeError("Mail client pool is closed")

        slots = self._slots.setdefault(account_id, asyncio.Semaphore(self._max))
        async with slots:
            client = await self._checkout(account_id)
            healthy = True
            try:
                yield client
            except BaseException:
                healthy = False
                raise
            finally:
                await self._checkin(account_id, client, healthy)

    async def close(self) -> None:
        """Close every idle client. Leased clients are closed on return."""
        self._closed = True
        for account_id, clients in list(self._idle.items()):
            for client in clients:
                await self._close_client(account_id, client)
        self._idle.clear()

    def stats(self) -> Dict[str, Dict[str, int]]:
        accounts = set(self._idle) | set(self._leased)
        return {
            account_id: {
                "idle": len(self._idle.get(account_id, [])),
                "leased": self._leased.get(account_id, 0),
            }
            for account_id in sorted(accounts)
        }

    async def _checkout(self, account_id: str) -> MailClient:
        idle = self._idle.get(account_id)
        if idle:
            client = idle.pop()
        else:
            client = await self._factory(account_id)
            logger.debug("mail_client_created", account_id=account_id)
        self._leased[account_id] = self._leased.get(account_id, 0) + 1
        return client

    async def _checkin(self, account_id: str, client: MailClient, healthy: bool) -> None:
        self._leased[account_id] = max(0, self._leased.get(account_id, 0) - 1)
        if healthy and not self._closed:
            self._idle.setdefault(account_id, []).append(client)
            return
        await self._close_client(account_id, client)

    async def _close_client(self, account_id: str, client: MailClient) -> None:
        try:
            await client.close()
        except Exception as exc:
            logger.warning("mail_client_close_failed", account_id=account_id, error=str(exc))


class PooledEmailFetcher:
    """``EmailFetcher`` that leases a pooled client for every fetch."""

    def __init__(self, pool: MailClientPool):
        self.pool = pool

    async def fetch_emails_in_range(
        self,
        account_id: str,
        since: datetime,
        before: datetime,
        max_count: int,
    ) -> List[EmailMessage]:
        async with self.pool.lease(account_id) as client:
            emails = await client.fetch_emails_in_range(since, before, max_count)
        logger.info(
            "emails_fetched",
            account_id=account_id,
            since=since.isoformat(),
            before=before.isoformat(),
            count=len(emails),
        )
        return emails[:max_count]


def load_object(dotted_path: str) -> Any:
    """Import ``package.module:attribute`` (or ``package.module.attribute``)."""
    if ":" in dotted_path:
        module_name, attr = dotted_path.split(":", 1)
    else:
        module_name, _, attr = dotted_path.rpartition(".")
    if not module_name or not attr:
        raise ImportError(f"Invalid object path '{dotted_path}'")
    module = importlib.import_module(module_name)
    return getattr(module, attr)

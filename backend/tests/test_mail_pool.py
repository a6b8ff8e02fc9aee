"""Tests for the mail client pool and pooled fetcher."""

import asyncio
from datetime import datetime

import pytest

from conftest import FakeMailClient, make_emails
from integrations.mail import (
    EmailFetcher,
    EmailProcessor,
    MailClientPool,
    PooledEmailFetcher,
    load_object,
)


class ClientFactory:
    def __init__(self):
        self.created = []

    async def __call__(self, account_id):
        client = FakeMailClient(account_id)
        self.created.append(client)
        return client


class TestMailClientPool:

    async def test_clients_are_reused(self):
        factory = ClientFactory()
        pool = MailClientPool(factory, max_clients_per_account=2)

        async with pool.lease("acc") as first:
            pass
        async with pool.lease("acc") as second:
            pass

        assert first is second
        assert len(factory.created) == 1
        assert pool.stats() == {"acc": {"idle": 1, "leased": 0}}

    async def test_accounts_get_separate_clients(self):
        factory = ClientFactory()
        pool = MailClientPool(factory)

        async with pool.lease("a") as a, pool.lease("b") as b:
            assert a.account_id == "a"
            assert b.account_id == "b"
            assert pool.stats() == {
                "a": {"idle": 0, "leased": 1},
                "b": {"idle": 0, "leased": 1},
            }

    async def test_leases_are_bounded_per_account(self):
        factory = ClientFactory()
        pool = MailClientPool(factory, max_clients_per_account=2)
        active = 0
        peak = 0

        async def use():
            nonlocal active, peak
            async with pool.lease("acc"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.02)
                active -= 1

        await asyncio.gather(*(use() for _ in range(6)))

        assert peak == 2
        assert len(factory.created) == 2

    async def test_failed_lease_closes_client(self):
        factory = ClientFactory()
        pool = MailClientPool(factory)

        with pytest.raises(ConnectionError):
            async with pool.lease("acc"):
                raise ConnectionError("socket reset")

        assert factory.created[0].closed is True
        assert pool.stats() == {"acc": {"idle": 0, "leased": 0}}

    async def test_close(self):
        factory = ClientFactory()
        pool = MailClientPool(factory)
        async with pool.lease("acc"):
            pass

        await pool.close()

        assert factory.created[0].closed is True
        with pytest.raises(RuntimeError):
            async with pool.lease("acc"):
                pass


class TestPooledEmailFetcher:

    async def test_fetch_uses_leased_client(self):
        factory = ClientFactory()
        fetcher = PooledEmailFetcher(MailClientPool(factory))

        emails = await fetcher.fetch_emails_in_range(
            "acc", datetime(2024, 1, 1), datetime(2024, 1, 2), 1
        )

        assert len(emails) == 1
        assert factory.created[0].fetches == 1

    async def test_max_count_is_enforced(self):
        class GreedyClient(FakeMailClient):
            async def fetch_emails_in_range(self, since, before, max_count):
                return make_emails(10)

        async def factory(account_id):
            return GreedyClient(account_id)

        fetcher = PooledEmailFetcher(MailClientPool(factory))
        emails = await fetcher.fetch_emails_in_range(
            "acc", datetime(2024, 1, 1), datetime(2024, 1, 2), 4
        )
        assert len(emails) == 4

    def test_satisfies_fetcher_protocol(self):
        fetcher = PooledEmailFetcher(MailClientPool(ClientFactory()))
        assert isinstance(fetcher, EmailFetcher)
        assert not isinstance(fetcher, EmailProcessor)


class TestLoadObject:

    def test_colon_path(self):
        assert load_object("integrations.mail:MailClientPool") is MailClientPool

    def test_dotted_path(self):
        assert load_object("integrations.mail.PooledEmailFetcher") is PooledEmailFetcher

    def test_invalid_path(self):
        with pytest.raises(ImportError):
            load_object("nodots")

    def test_missing_attribute(self):
        with pytest.raises(AttributeError):
            load_object("integrations.mail:DoesNotExist")

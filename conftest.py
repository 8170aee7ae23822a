import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from wallet.admin import AdminAdjustFlow
from wallet.config import Settings
from wallet.downloads import DownloadGate
from wallet.service import WalletService
from wallet.storage import InMemoryStorage
from wallet.topup import TopupWorkflow


ADMIN_ID = 999
USER_ID = 111
OTHER_USER_ID = 222


class FrozenClock:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class YieldingStorage(InMemoryStorage):
    """Gives up the event loop before every operation so gathered callers interleave."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def put(self, key, value, expires_at=None):
        await asyncio.sleep(0)
        return await super().put(key, value, expires_at)

    async def delete(self, key):
        await asyncio.sleep(0)
        return await super().delete(key)

    async def compare_and_set(self, key, expected, value, expires_at=None):
        await asyncio.sleep(0)
        return await super().compare_and_set(key, expected, value, expires_at)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        admin_id=ADMIN_ID,
        profile_cost=250000,
        card_number="6037-0000-0000-0000",
        card_holder="Test Holder",
        public_base_url="https://bot.example.com",
        cookie_secure=False,
    )


@pytest.fixture
def storage(clock):
    return YieldingStorage(clock=clock)


@pytest.fixture
def wallet(storage, settings, clock):
    return WalletService(storage, history_cap=settings.history_cap, clock=clock)


@pytest.fixture
def topup(wallet, settings):
    return TopupWorkflow(wallet, settings)


@pytest.fixture
def admin_flow(wallet, settings):
    return AdminAdjustFlow(wallet, settings)


@pytest.fixture
def gate(storage, settings, wallet, clock):
    return DownloadGate(storage, settings, history=wallet.history, clock=clock)

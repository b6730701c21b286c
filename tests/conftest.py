"""
Pytest configuration and shared fixtures.

FakeDatabase replaces the asyncpg-backed functions of the `database` module
with an in-memory store. Transactions snapshot the store and restore it when
the block raises, so rollback semantics can be asserted without Postgres.
"""
import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

import config
import database


class FakeConnection:
    """Stands in for asyncpg.Connection: tracks advisory locks held by a transaction."""

    def __init__(self):
        self.held_locks: List[asyncio.Lock] = []


class FakeDatabase:
    PATCHED = (
        "transaction",
        "create_order",
        "get_order",
        "mark_order_paid",
        "insert_processed_event",
        "lock_user",
        "get_subscription_expiry",
        "upsert_subscription",
        "delete_subscription",
        "list_expired_since",
    )

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[tuple, datetime] = {}
        self.subscriptions: Dict[int, Dict[str, datetime]] = {}
        self.user_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.failures: Dict[str, Exception] = {}
        self.upsert_calls: List[tuple] = []

    def fail(self, operation: str, exc: Exception) -> None:
        """Make the named operation raise exc until cleared."""
        self.failures[operation] = exc

    def _check(self, operation: str) -> None:
        exc = self.failures.get(operation)
        if exc is not None:
            raise exc

    def _state(self):
        return copy.deepcopy((self.orders, self.events, self.subscriptions))

    @asynccontextmanager
    async def transaction(self, conn=None):
        snapshot = self._state()
        owner = conn if conn is not None else FakeConnection()
        try:
            yield owner
        except BaseException:
            self.orders, self.events, self.subscriptions = snapshot
            raise
        finally:
            if conn is None:
                for lock in owner.held_locks:
                    lock.release()
                owner.held_locks.clear()

    async def create_order(self, order_id, telegram_id, plan, days, price, created_at=None, conn=None):
        self._check("create_order")
        order = {
            "order_id": order_id,
            "telegram_id": telegram_id,
            "plan": plan,
            "days": days,
            "price": price,
            "created_at": created_at or datetime.now(timezone.utc),
            "paid_at": None,
        }
        self.orders[order_id] = order
        return dict(order)

    async def get_order(self, order_id, conn=None):
        self._check("get_order")
        order = self.orders.get(order_id)
        return dict(order) if order else None

    async def mark_order_paid(self, order_id, paid_at, conn=None):
        self._check("mark_order_paid")
        order = self.orders.get(order_id)
        if not order or order["paid_at"] is not None:
            return False
        order["paid_at"] = paid_at
        return True

    async def insert_processed_event(self, provider, event_id, processed_at=None, conn=None):
        self._check("insert_processed_event")
        key = (provider, event_id)
        if key in self.events:
            return False
        self.events[key] = processed_at or datetime.now(timezone.utc)
        return True

    async def lock_user(self, telegram_id, conn):
        lock = self.user_locks[telegram_id]
        await lock.acquire()
        conn.held_locks.append(lock)

    async def get_subscription_expiry(self, telegram_id, conn=None) -> Optional[datetime]:
        self._check("get_subscription_expiry")
        # Yield so concurrent grants interleave here unless the user lock serializes them
        await asyncio.sleep(0)
        row = self.subscriptions.get(telegram_id)
        return row["expires_at"] if row else None

    async def upsert_subscription(self, telegram_id, expires_at, updated_at, conn=None):
        self._check("upsert_subscription")
        self.upsert_calls.append((telegram_id, expires_at))
        self.subscriptions[telegram_id] = {"expires_at": expires_at, "updated_at": updated_at}

    async def delete_subscription(self, telegram_id, conn=None):
        return self.subscriptions.pop(telegram_id, None) is not None

    async def list_expired_since(self, now, conn=None):
        self._check("list_expired_since")
        expired = [(row["expires_at"], uid) for uid, row in self.subscriptions.items() if row["expires_at"] < now]
        return [uid for _, uid in sorted(expired)]


@pytest.fixture
def fake_db(monkeypatch):
    """In-memory database patched into the `database` module"""
    fake = FakeDatabase()
    for name in FakeDatabase.PATCHED:
        monkeypatch.setattr(database, name, getattr(fake, name))
    monkeypatch.setattr(database, "DB_READY", True)
    return fake


@pytest.fixture
def fixed_now():
    """Fixed UTC time for deterministic tests"""
    return datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def link_secret():
    return "s3cret"


@pytest.fixture
def make_settings(link_secret):
    """Factory for Settings with test defaults; keyword overrides win"""
    def _make(**overrides) -> config.Settings:
        values = dict(
            app_env="local",
            bot_token="123456:TEST",
            database_url="postgresql://localhost/test",
            link_secret=link_secret,
            provider_secret="",
            price_days=config.parse_int_map(config.DEFAULT_PRICE_DAYS, "PRICE_DAYS"),
            name_unit_days=config.parse_unit_map(config.DEFAULT_NAME_UNIT_DAYS, "NAME_UNIT_DAYS"),
        )
        values.update(overrides)
        return config.Settings(**values)
    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def mock_gateway():
    """Mock GroupGateway"""
    gateway = MagicMock()
    gateway.notify_granted = AsyncMock(return_value=True)
    gateway.ban_temporarily = AsyncMock(return_value=None)
    gateway.ensure_invite_link = AsyncMock(return_value="https://t.me/+invite")
    return gateway

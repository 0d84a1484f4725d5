"""Pytest configuration and fixtures"""
import asyncio
import os
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

# Set test environment variables
os.environ.setdefault("API_BASE_URL", "http://shop.test/api/")
os.environ.setdefault("API_TOKEN", "test_token")
os.environ.setdefault("REDIS_HOST", "localhost")

from cartsync.cart_store import CartStore
from cartsync.context import ViewingContext
from cartsync.exceptions import BackendError
from cartsync.models import CartLine, CartState, CartStatus, RecordInfo
from cartsync.payloads import normalize_cart_details
from cartsync.reconcile import ReconcileEngine
from cartsync.session import SessionBinding
from cartsync.snapshot_store import SnapshotStore
from cartsync.stock_cache import StockCache

SHOPPER = "shopper@example.com"
ADMIN = "admin@example.com"


class FakeRedis:
    """Dict-backed stand-in for RedisClient"""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.expirations: Dict[str, Optional[int]] = {}
        self.error: Optional[Exception] = None

    def get(self, key: str) -> Optional[str]:
        if self.error:
            raise self.error
        return self.data.get(key)

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        if self.error:
            raise self.error
        self.data[key] = value
        self.expirations[key] = ex
        return True

    def delete(self, *keys: str) -> int:
        if self.error:
            raise self.error
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    def ping(self) -> bool:
        return self.error is None


class FakeBackend:
    """In-memory shop backend with controllable latency and failures"""

    def __init__(self):
        self.records: Dict[int, RecordInfo] = {}
        self.cart_payloads: Dict[str, Any] = {}
        self.disabled: set = set()
        self.mutations: List[Tuple[str, int, int]] = []
        self.orders: List[Tuple[str, str]] = []
        self.token: Optional[str] = None
        self.mutation_error: Optional[Exception] = None
        self.fetch_record_error: Optional[Exception] = None
        self.details_error: Optional[Exception] = None
        # When set, mutations wait on it before completing
        self.gate: Optional[asyncio.Event] = None
        self.details_gate: Optional[asyncio.Event] = None
        # Called with (email, record_id, delta) before a mutation waits on the gate
        self.on_mutate: Optional[Callable[[str, int, int], None]] = None

    def add_record(self, record_id: int, price: str = "10.00", stock: int = 5, title: str = "Record") -> RecordInfo:
        record = RecordInfo(record_id=record_id, title=title, price=Decimal(price), stock=stock)
        self.records[record_id] = record
        return record

    def set_token(self, token: Optional[str]) -> None:
        self.token = token

    async def mutate_cart_detail(self, email: str, record_id: int, delta: int) -> None:
        self.mutations.append((email, record_id, delta))
        if self.on_mutate is not None:
            self.on_mutate(email, record_id, delta)
        if self.gate is not None:
            await self.gate.wait()
        if self.mutation_error is not None:
            raise self.mutation_error
        record = self.records.get(record_id)
        if record is not None:
            record.stock = max(0, record.stock - delta)

    async def fetch_record(self, record_id: int) -> RecordInfo:
        if self.fetch_record_error is not None:
            raise self.fetch_record_error
        if record_id not in self.records:
            raise BackendError("Record not found", status_code=404)
        return self.records[record_id].model_copy()

    async def fetch_cart_details(self, email: str) -> Any:
        if self.details_gate is not None:
            await self.details_gate.wait()
        if self.details_error is not None:
            raise self.details_error
        return self.cart_payloads.get(email, [])

    async def fetch_cart_item_count(self, email: str) -> int:
        return sum(line.quantity for line in normalize_cart_details(self.cart_payloads.get(email, [])))

    async def fetch_cart_status(self, email: str) -> CartStatus:
        return CartStatus(enabled=email not in self.disabled)

    async def enable_cart(self, email: str) -> None:
        self.disabled.discard(email)

    async def disable_cart(self, email: str) -> None:
        self.disabled.add(email)

    async def create_order_from_cart(self, email: str, payment_method: str) -> Dict[str, Any]:
        self.orders.append((email, payment_method))
        self.cart_payloads[email] = []
        return {"idOrder": len(self.orders), "userEmail": email, "paymentMethod": payment_method}

    async def aclose(self) -> None:
        pass


def make_line(record_id: int, price: str = "10.00", quantity: int = 1, stock: int = 5, title: str = "Record") -> CartLine:
    return CartLine(
        record_id=record_id,
        title=title,
        unit_price=Decimal(price),
        quantity=quantity,
        stock=stock
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def snapshots(fake_redis):
    return SnapshotStore(redis_client=fake_redis, ttl=3600)


@pytest.fixture
def stock_cache():
    return StockCache()


@pytest.fixture
def store(snapshots, stock_cache):
    return CartStore(snapshots=snapshots, stock_cache=stock_cache)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def engine(store, stock_cache, backend):
    return ReconcileEngine(store, stock_cache, backend)


@pytest.fixture
def session(engine):
    return SessionBinding(engine)


@pytest.fixture
def shopper_context(store):
    """Own-cart context for SHOPPER with an empty cart bound in the store"""
    store.replace(CartState(owner_email=SHOPPER))
    return ViewingContext(owner_email=SHOPPER, viewer_email=SHOPPER)

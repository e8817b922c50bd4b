"""
Shared fixtures: a throwaway SQLite database, a controllable clock, a fake
payment gateway, a recording notifier and a seeded resource catalog.
"""

from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import threading
import time
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Generator, Optional

import pytest
from sqlalchemy.engine import Engine

from booking_engine.db.engine import build_engine
from booking_engine.db.writers.resources import insert_resources
from booking_engine.models import availability, bookings, coupons, pricing, refunds, resources  # noqa: F401
from booking_engine.models.base import Base
from booking_engine.network.payments import SettlementResult, SettlementStatus
from booking_engine.schemas.bookings import Actor, CreateBookingRequest, GuestCounts, Role
from booking_engine.schemas.resources import Resource
from booking_engine.services.bookings import BookingService
from booking_engine.services.catalog import SqlResourceCatalog
from booking_engine.services.notifications import NotificationDispatcher
from booking_engine.services.pricing_config import rate_cache

T0 = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

GUEST = Actor(user_id="guest-1", role=Role.GUEST)
OTHER_GUEST = Actor(user_id="guest-2", role=Role.GUEST)
HOST = Actor(user_id="host-1", role=Role.HOST)
ADMIN = Actor(user_id="admin-1", role=Role.ADMIN)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeGateway:
    """Payment gateway returning a fixed result, optionally after a delay."""

    def __init__(self, result: Optional[SettlementResult] = None, delay: float = 0.0):
        self.result = result or SettlementResult(status=SettlementStatus.SUCCEEDED, transaction_id="txn-1")
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def settle(self, amount: Decimal, currency: str, method: str, idempotency_key: str) -> SettlementResult:
        with self._lock:
            self.calls.append(
                {"amount": amount, "currency": currency, "method": method, "key": idempotency_key}
            )
        if self.delay:
            time.sleep(self.delay)
        return self.result


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.fail = fail

    def notify(self, user_id: str, template_id: str, data: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append((user_id, template_id, data))

    def templates_for(self, user_id: str) -> list[str]:
        return [template for uid, template, _ in self.sent if uid == user_id]


def make_resource(**overrides: Any) -> Resource:
    payload: dict[str, Any] = {
        "id": "lst-daily",
        "kind": "listing",
        "host_id": HOST.user_id,
        "booking_mode": "daily",
        "tariff": {
            "base_price": "1000",
            "extra_guest_price": "500",
            "cleaning_fee": "200",
            "service_fee": "50",
            "security_deposit": "200",
        },
        "cancellation_policy": "moderate",
        "max_guests": 4,
    }
    payload.update(overrides)
    return Resource.model_validate(payload)


CATALOG = [
    make_resource(),
    make_resource(id="lst-strict", cancellation_policy="strict"),
    make_resource(id="lst-super", cancellation_policy="super_strict"),
    make_resource(id="lst-flex", cancellation_policy="flexible"),
    make_resource(id="lst-closed", is_active=False),
    make_resource(
        id="lst-24h",
        booking_mode="24hour",
        tariff={"base_price": "1000", "base_price_24h": "1500", "cleaning_fee": "100"},
        cancellation_policy="flexible",
        host_buffer_hours=2,
    ),
    make_resource(
        id="svc-1",
        kind="service",
        booking_mode="slot",
        tariff={"base_price": "800"},
        cancellation_policy="strict",
        min_hours=1,
        max_hours=4,
        max_guests=None,
    ),
]


def daily_request(
    listing_id: str = "lst-daily",
    check_in: date = date(2025, 6, 10),
    nights: int = 3,
    **kwargs: Any,
) -> CreateBookingRequest:
    return CreateBookingRequest(
        listing_id=listing_id,
        check_in=check_in,
        check_out=check_in + timedelta(days=nights),
        **kwargs,
    )


def adults(n: int) -> GuestCounts:
    return GuestCounts(adults=n)


@pytest.fixture(autouse=True)
def clear_rate_cache() -> Generator[None, None, None]:
    rate_cache.clear()
    yield
    rate_cache.clear()


@pytest.fixture
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """Fresh file-backed SQLite database per test (threads share it)."""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'bookings.db'}")
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def seeded_engine(engine: Engine) -> Engine:
    insert_resources(engine, CATALOG)
    return engine


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(
    seeded_engine: Engine, gateway: FakeGateway, notifier: RecordingNotifier, clock: FakeClock
) -> Generator[BookingService, None, None]:
    svc = BookingService(
        engine=seeded_engine,
        catalog=SqlResourceCatalog(seeded_engine),
        gateway=gateway,
        dispatcher=NotificationDispatcher(notifier, synchronous=True),
        payment_timeout=2.0,
        clock=clock,
    )
    yield svc
    svc.close()

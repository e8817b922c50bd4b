"""
Integration tests for BookingService.create_booking and quote_price.
"""

from __future__ import annotations

import threading
import time
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from conftest import (
    GUEST,
    HOST,
    OTHER_GUEST,
    T0,
    FakeGateway,
    RecordingNotifier,
    adults,
    daily_request,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from booking_engine.errors import (
    Inconsistent,
    NotFound,
    ResourceConflict,
    Unauthorized,
    UpstreamFailure,
    ValidationError,
)
from booking_engine.network.payments import SettlementResult, SettlementStatus
from booking_engine.schemas.bookings import Actor, BookingStatus, CreateBookingRequest, PaymentStatus, Role
from booking_engine.schemas.coupons import CouponCreatePayload, DiscountType
from booking_engine.schemas.refunds import RefundReason
from booking_engine.schemas.resources import ResourceKind, ResourceRef
from booking_engine.services import availability, notifications
from booking_engine.services.bookings import BookingService, settlement_key
from booking_engine.services.catalog import SqlResourceCatalog
from booking_engine.services.coupons import create_coupon, get_coupon
from booking_engine.services.notifications import NotificationDispatcher
from booking_engine.services.refunds import list_refunds

DAILY = ResourceRef(kind=ResourceKind.LISTING, id="lst-daily")


def stay_span(check_in: date = date(2025, 6, 10), nights: int = 3) -> availability.DateSpan:
    return availability.day_span(check_in, check_in + timedelta(days=nights))


@pytest.mark.integration
def test_create_daily_booking(service: BookingService, gateway: FakeGateway, notifier: RecordingNotifier) -> None:
    booking = service.create_booking(GUEST, daily_request(idempotency_key="k-1"))

    assert booking.status == BookingStatus.PENDING
    assert booking.payment_status == PaymentStatus.PENDING
    assert booking.transaction_id == "txn-1"
    assert booking.host_id == HOST.user_id
    assert booking.booking_type == "property"
    assert booking.total_amount == Decimal("4688.55")
    assert booking.host_earning == Decimal("2762.50")
    assert booking.pricing_breakdown.total_amount == booking.total_amount
    booking.pricing_breakdown.reconcile()

    assert gateway.calls[0]["amount"] == Decimal("4688.55")
    assert gateway.calls[0]["key"] == settlement_key("k-1", booking.id)

    with service.engine.connect() as conn:
        cells = availability.cells_for_booking(conn, booking.id)
    assert len(cells) == 3
    assert {c["status"] for c in cells} == {"booked"}

    assert notifier.templates_for(HOST.user_id) == [notifications.BOOKING_REQUESTED]


@pytest.mark.integration
def test_extra_adults_are_priced(service: BookingService) -> None:
    booking = service.create_booking(GUEST, daily_request(guests=adults(2)))
    assert booking.extra_guest_cost == Decimal("1500.00")
    assert booking.adults == 2


@pytest.mark.integration
def test_replayed_key_returns_original_booking(service: BookingService, gateway: FakeGateway) -> None:
    first = service.create_booking(GUEST, daily_request(idempotency_key="same-key"))
    second = service.create_booking(GUEST, daily_request(idempotency_key="same-key"))

    assert second.id == first.id
    assert len(gateway.calls) == 1


@pytest.mark.integration
def test_idempotency_keys_are_scoped_per_requester(service: BookingService) -> None:
    mine = service.create_booking(GUEST, daily_request(idempotency_key="k"))
    theirs = service.create_booking(
        OTHER_GUEST, daily_request(check_in=date(2025, 6, 20), idempotency_key="k")
    )
    assert mine.id != theirs.id


@pytest.mark.integration
def test_overlapping_request_is_a_conflict(service: BookingService, gateway: FakeGateway) -> None:
    service.create_booking(GUEST, daily_request())

    with pytest.raises(ResourceConflict):
        service.create_booking(OTHER_GUEST, daily_request(check_in=date(2025, 6, 12)))
    assert len(gateway.calls) == 1


@pytest.mark.integration
def test_simultaneous_creates_for_the_same_dates(service: BookingService) -> None:
    """Two guests race for overlapping dates: one booking, one conflict."""
    barrier = threading.Barrier(2)
    outcomes: dict[str, object] = {}

    def book(actor: Actor, check_in: date) -> None:
        barrier.wait()
        try:
            outcomes[actor.user_id] = service.create_booking(actor, daily_request(check_in=check_in))
        except ResourceConflict as exc:
            outcomes[actor.user_id] = exc

    threads = [
        threading.Thread(target=book, args=(GUEST, date(2025, 6, 10))),
        threading.Thread(target=book, args=(OTHER_GUEST, date(2025, 6, 11))),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    results = list(outcomes.values())
    assert sum(isinstance(r, ResourceConflict) for r in results) == 1
    assert sum(not isinstance(r, ResourceConflict) for r in results) == 1


@pytest.mark.integration
def test_declined_payment_rolls_back_everything(service: BookingService, gateway: FakeGateway) -> None:
    gateway.result = SettlementResult(status=SettlementStatus.DECLINED, message="insufficient funds")

    with pytest.raises(UpstreamFailure) as exc_info:
        service.create_booking(GUEST, daily_request(idempotency_key="retry-me"))

    failed = service.get_booking(GUEST, exc_info.value.details["booking_id"])
    assert failed.status == BookingStatus.CANCELLED
    assert failed.payment_status == PaymentStatus.FAILED
    assert failed.cancellation_reason == "payment_failed"
    with service.engine.connect() as conn:
        assert availability.is_available(conn, DAILY, stay_span())

    # The same key may be retried once payment goes through
    gateway.result = SettlementResult(status=SettlementStatus.SUCCEEDED, transaction_id="txn-2")
    retried = service.create_booking(GUEST, daily_request(idempotency_key="retry-me"))
    assert retried.id != failed.id
    assert retried.status == BookingStatus.PENDING


@pytest.mark.integration
def test_payment_timeout_fails_closed_and_reverses_late_charge(
    seeded_engine: Engine, notifier: RecordingNotifier, clock: object
) -> None:
    slow = FakeGateway(delay=0.5)
    service = BookingService(
        engine=seeded_engine,
        catalog=SqlResourceCatalog(seeded_engine),
        gateway=slow,
        dispatcher=NotificationDispatcher(notifier, synchronous=True),
        payment_timeout=0.05,
        clock=clock,  # type: ignore[arg-type]
    )

    with pytest.raises(UpstreamFailure) as exc_info:
        service.create_booking(GUEST, daily_request())
    booking_id = exc_info.value.details["booking_id"]

    with seeded_engine.connect() as conn:
        assert availability.is_available(conn, DAILY, stay_span())

    # Wait for the abandoned settlement to land
    service.close()

    with seeded_engine.connect() as conn:
        refunds = list_refunds(conn, booking_id=booking_id)
    assert len(refunds) == 1
    assert refunds[0].reason == RefundReason.SETTLEMENT_REVERSAL
    booking = service.get_booking(GUEST, booking_id)
    assert refunds[0].amount == booking.total_amount
    assert booking.status == BookingStatus.CANCELLED
    assert booking.transaction_id == "txn-1"


class KeyedGateway:
    """Gateway that replays the stored outcome for a key it has seen before."""

    def __init__(self, first_delay: float = 0.0):
        self.first_delay = first_delay
        self.keys: list[str] = []
        self._results: dict[str, SettlementResult] = {}
        self._lock = threading.Lock()

    def settle(self, amount: Decimal, currency: str, method: str, idempotency_key: str) -> SettlementResult:
        with self._lock:
            self.keys.append(idempotency_key)
            if idempotency_key in self._results:
                return self._results[idempotency_key]
            result = SettlementResult(
                status=SettlementStatus.SUCCEEDED, transaction_id=f"txn-{len(self._results) + 1}"
            )
            self._results[idempotency_key] = result
            delay = self.first_delay if len(self._results) == 1 else 0.0
        if delay:
            time.sleep(delay)
        return result


@pytest.mark.integration
def test_retry_after_timeout_is_charged_separately(
    seeded_engine: Engine, notifier: RecordingNotifier, clock: object
) -> None:
    gateway = KeyedGateway(first_delay=0.5)
    service = BookingService(
        engine=seeded_engine,
        catalog=SqlResourceCatalog(seeded_engine),
        gateway=gateway,
        dispatcher=NotificationDispatcher(notifier, synchronous=True),
        payment_timeout=0.05,
        clock=clock,  # type: ignore[arg-type]
    )

    with pytest.raises(UpstreamFailure) as exc_info:
        service.create_booking(GUEST, daily_request(idempotency_key="retry-key"))
    abandoned_id = exc_info.value.details["booking_id"]

    service.payment_timeout = 2.0
    retried = service.create_booking(GUEST, daily_request(idempotency_key="retry-key"))
    service.close()

    assert retried.id != abandoned_id
    assert retried.status == BookingStatus.PENDING
    assert len(set(gateway.keys)) == 2
    assert gateway.keys == [
        settlement_key("retry-key", abandoned_id),
        settlement_key("retry-key", retried.id),
    ]

    # The late charge is reversed against the abandoned booking only
    abandoned = service.get_booking(GUEST, abandoned_id)
    assert abandoned.transaction_id == "txn-1"
    assert retried.transaction_id == "txn-2"
    with seeded_engine.connect() as conn:
        (reversal,) = list_refunds(conn, booking_id=abandoned_id)
        assert list_refunds(conn, booking_id=retried.id) == []
    assert reversal.reason == RefundReason.SETTLEMENT_REVERSAL


@pytest.mark.integration
def test_notification_failure_does_not_fail_booking(seeded_engine: Engine, clock: object) -> None:
    service = BookingService(
        engine=seeded_engine,
        catalog=SqlResourceCatalog(seeded_engine),
        gateway=FakeGateway(),
        dispatcher=NotificationDispatcher(RecordingNotifier(fail=True), synchronous=True),
        clock=clock,  # type: ignore[arg-type]
    )
    try:
        booking = service.create_booking(GUEST, daily_request())
    finally:
        service.close()
    assert booking.status == BookingStatus.PENDING


@pytest.mark.integration
def test_24_hour_stay_respects_host_buffer(service: BookingService) -> None:
    start = T0 + timedelta(days=2)
    first = service.create_booking(GUEST, CreateBookingRequest(listing_id="lst-24h", check_in_at=start))

    assert first.booking_duration == "24hour"
    assert first.total_amount == Decimal("2204.40")
    assert first.ends_at == start + timedelta(hours=24)

    with pytest.raises(ResourceConflict):
        service.create_booking(
            OTHER_GUEST, CreateBookingRequest(listing_id="lst-24h", check_in_at=start + timedelta(hours=25))
        )
    after_buffer = service.create_booking(
        OTHER_GUEST, CreateBookingRequest(listing_id="lst-24h", check_in_at=start + timedelta(hours=26))
    )
    assert after_buffer.status == BookingStatus.PENDING


@pytest.mark.integration
def test_service_slot_booking(service: BookingService) -> None:
    start = T0 + timedelta(days=1)
    booking = service.create_booking(
        GUEST, CreateBookingRequest(service_id="svc-1", slot_start=start, slot_end=start + timedelta(hours=2))
    )

    assert booking.booking_type == "service"
    assert booking.slot_start == start
    assert booking.total_amount == Decimal("1117.20")


@pytest.mark.integration
def test_quote_does_not_reserve(service: BookingService, gateway: FakeGateway) -> None:
    quote = service.quote_price(GUEST, daily_request())

    assert quote.total_amount == Decimal("4688.55")
    assert gateway.calls == []
    with service.engine.connect() as conn:
        assert availability.is_available(conn, DAILY, stay_span())


@pytest.mark.integration
def test_create_guards(service: BookingService) -> None:
    with pytest.raises(Unauthorized):
        service.create_booking(HOST, daily_request())
    with pytest.raises(ValidationError, match="own"):
        service.create_booking(Actor(user_id=HOST.user_id, role=Role.GUEST), daily_request())
    with pytest.raises(ValidationError, match="not available"):
        service.create_booking(GUEST, daily_request(listing_id="lst-closed"))
    with pytest.raises(NotFound):
        service.create_booking(GUEST, daily_request(listing_id="missing"))
    with pytest.raises(ValidationError, match="guests"):
        service.create_booking(GUEST, daily_request(guests=adults(5)))


@pytest.mark.integration
def test_coupon_is_redeemed_once_per_user(service: BookingService) -> None:
    create_coupon(
        service.engine,
        CouponCreatePayload(
            code="WELCOME10",
            discount_type=DiscountType.PERCENTAGE,
            amount=Decimal("10"),
            valid_from=T0 - timedelta(days=1),
            valid_to=T0 + timedelta(days=30),
        ),
    )

    booking = service.create_booking(GUEST, daily_request(coupon_code="welcome10"))
    assert booking.coupon_code == "WELCOME10"
    assert booking.discount_amount == Decimal("325.00")
    assert booking.pricing_breakdown.host_subtotal == Decimal("2925.00")

    with pytest.raises(ValidationError, match="already used"):
        service.create_booking(GUEST, daily_request(check_in=date(2025, 6, 20), coupon_code="WELCOME10"))

    other = service.create_booking(OTHER_GUEST, daily_request(check_in=date(2025, 6, 20), coupon_code="WELCOME10"))
    assert other.discount_amount == Decimal("325.00")


@pytest.mark.integration
def test_failed_payment_revokes_coupon_redemption(service: BookingService, gateway: FakeGateway) -> None:
    create_coupon(
        service.engine,
        CouponCreatePayload(
            code="FLAT500",
            discount_type=DiscountType.FIXED,
            amount=Decimal("500"),
            valid_from=T0 - timedelta(days=1),
            valid_to=T0 + timedelta(days=30),
            usage_limit=1,
        ),
    )
    gateway.result = SettlementResult(status=SettlementStatus.DECLINED)

    with pytest.raises(UpstreamFailure):
        service.create_booking(GUEST, daily_request(coupon_code="FLAT500"))

    with service.engine.connect() as conn:
        assert get_coupon(conn, "FLAT500").used_count == 0  # type: ignore[union-attr]

    gateway.result = SettlementResult(status=SettlementStatus.SUCCEEDED, transaction_id="txn-3")
    booking = service.create_booking(GUEST, daily_request(coupon_code="FLAT500"))
    assert booking.discount_amount == Decimal("500.00")


@pytest.mark.integration
def test_constraint_failure_is_not_reported_as_coupon_reuse(service: BookingService) -> None:
    failure = IntegrityError(
        "INSERT INTO bookings", {}, Exception("CHECK constraint failed: ck_bookings_one_resource")
    )
    with patch("booking_engine.services.bookings.insert_booking", side_effect=failure):
        with pytest.raises(Inconsistent) as exc_info:
            service.create_booking(GUEST, daily_request(idempotency_key="k-check"))
    assert not isinstance(exc_info.value, ValidationError)

    # Everything rolled back: the span is free and the key is usable again
    with service.engine.connect() as conn:
        assert availability.is_available(conn, DAILY, stay_span())
    booking = service.create_booking(GUEST, daily_request(idempotency_key="k-check"))
    assert booking.status == BookingStatus.PENDING


@pytest.mark.integration
def test_concurrent_coupon_redemption_is_rejected(service: BookingService) -> None:
    create_coupon(
        service.engine,
        CouponCreatePayload(
            code="RACE10",
            discount_type=DiscountType.PERCENTAGE,
            amount=Decimal("10"),
            valid_from=T0 - timedelta(days=1),
            valid_to=T0 + timedelta(days=30),
        ),
    )
    duplicate = IntegrityError("INSERT INTO coupon_redemptions", {}, Exception("UNIQUE constraint failed"))
    with patch("booking_engine.services.bookings.redeem_coupon", side_effect=duplicate):
        with pytest.raises(ValidationError, match="already used"):
            service.create_booking(GUEST, daily_request(coupon_code="RACE10"))

    with service.engine.connect() as conn:
        assert availability.is_available(conn, DAILY, stay_span())

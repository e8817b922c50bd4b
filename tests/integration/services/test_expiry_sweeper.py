"""
Integration tests for the ExpirySweeper jobs and lifecycle.
"""

from __future__ import annotations

from datetime import date, timedelta

import pytest
from conftest import GUEST, HOST, OTHER_GUEST, T0, RecordingNotifier, daily_request
from sqlalchemy import update

from booking_engine.models.availability import AvailabilityCell
from booking_engine.models.bookings import Booking as BookingRow
from booking_engine.schemas.availability import CellStatus
from booking_engine.schemas.bookings import Booking, BookingStatus, PaymentStatus
from booking_engine.schemas.refunds import RefundReason
from booking_engine.schemas.resources import ResourceKind, ResourceRef
from booking_engine.services import availability, notifications
from booking_engine.services.bookings import BookingService
from booking_engine.services.refunds import list_refunds
from booking_engine.services.sweeper import ExpirySweeper

DAILY = ResourceRef(kind=ResourceKind.LISTING, id="lst-daily")


def stuck_in_processing(service: BookingService, booking: Booking) -> None:
    """Rewind a booking to look like its settlement never came back."""
    with service.engine.begin() as conn:
        conn.execute(
            update(BookingRow)
            .where(BookingRow.id == booking.id)
            .values(status=BookingStatus.PROCESSING.value)
        )
        conn.execute(
            update(AvailabilityCell)
            .where(AvailabilityCell.booking_id == booking.id)
            .values(status=CellStatus.HELD.value)
        )


@pytest.fixture
def sweeper(service: BookingService) -> ExpirySweeper:
    return ExpirySweeper(service, interval_seconds=3600, approval_interval_seconds=3600)


@pytest.mark.integration
def test_sweep_reclaims_stuck_processing_booking(service: BookingService, sweeper: ExpirySweeper) -> None:
    stuck = service.create_booking(GUEST, daily_request())
    stuck_in_processing(service, stuck)
    waiting = service.create_booking(OTHER_GUEST, daily_request(check_in=date(2025, 6, 20)))

    counts = sweeper.sweep_once(now=T0 + timedelta(minutes=11))

    assert counts["reclaimed"] == 1
    reclaimed = service.get_booking(GUEST, stuck.id)
    assert reclaimed.status == BookingStatus.CANCELLED
    assert reclaimed.payment_status == PaymentStatus.FAILED
    assert reclaimed.cancellation_reason == "payment_timeout"
    with service.engine.connect() as conn:
        assert availability.cells_for_booking(conn, stuck.id) == []
        assert availability.is_available(conn, DAILY, availability.day_span(date(2025, 6, 10), date(2025, 6, 13)))

    # Pending bookings wait for the approval job, however old
    assert service.get_booking(OTHER_GUEST, waiting.id).status == BookingStatus.PENDING


@pytest.mark.integration
def test_sweep_leaves_processing_inside_grace_window(service: BookingService, sweeper: ExpirySweeper) -> None:
    stuck = service.create_booking(GUEST, daily_request())
    stuck_in_processing(service, stuck)

    counts = sweeper.sweep_once(now=T0 + timedelta(minutes=5))

    assert counts == {"reclaimed": 0, "orphaned_holds_released": 0}
    assert service.get_booking(GUEST, stuck.id).status == BookingStatus.PROCESSING


@pytest.mark.integration
def test_sweep_releases_orphaned_holds(service: BookingService, sweeper: ExpirySweeper) -> None:
    """Held cells whose booking is finished, or that have no booking, are freed."""
    booking = service.create_booking(GUEST, daily_request(nights=1))
    service.reject_booking(HOST, booking.id)

    with service.engine.begin() as conn:
        availability.hold(conn, DAILY, availability.day_span(date(2025, 6, 20), date(2025, 6, 21)), booking.id, now=T0)
        availability.hold(conn, DAILY, availability.day_span(date(2025, 6, 25), date(2025, 6, 26)), "tmp", now=T0)
        conn.execute(
            update(AvailabilityCell)
            .where(AvailabilityCell.booking_id == "tmp")
            .values(booking_id=None)
        )

    counts = sweeper.sweep_once(now=T0 + timedelta(minutes=11))

    assert counts == {"reclaimed": 0, "orphaned_holds_released": 2}
    with service.engine.connect() as conn:
        assert availability.is_available(conn, DAILY, availability.day_span(date(2025, 6, 20), date(2025, 6, 26)))


@pytest.mark.integration
def test_expire_pending_after_approval_window(
    service: BookingService, sweeper: ExpirySweeper, notifier: RecordingNotifier
) -> None:
    pending = service.create_booking(GUEST, daily_request())
    accepted = service.create_booking(OTHER_GUEST, daily_request(check_in=date(2025, 6, 20)))
    service.accept_booking(HOST, accepted.id)

    assert sweeper.expire_pending_once(now=T0 + timedelta(hours=23)) == 0
    assert sweeper.expire_pending_once(now=T0 + timedelta(hours=25)) == 1

    expired = service.get_booking(GUEST, pending.id)
    assert expired.status == BookingStatus.EXPIRED
    assert expired.refund_amount == expired.total_amount
    with service.engine.connect() as conn:
        (refund,) = list_refunds(conn, booking_id=pending.id)
        assert availability.cells_for_booking(conn, pending.id) == []
    assert refund.reason == RefundReason.APPROVAL_TIMEOUT
    assert notifications.BOOKING_EXPIRED in notifier.templates_for(GUEST.user_id)

    assert service.get_booking(HOST, accepted.id).status == BookingStatus.CONFIRMED
    # A second pass has nothing left to do
    assert sweeper.expire_pending_once(now=T0 + timedelta(hours=26)) == 0


@pytest.mark.integration
def test_complete_finished_stays(
    service: BookingService, sweeper: ExpirySweeper, notifier: RecordingNotifier
) -> None:
    finished = service.accept_booking(HOST, service.create_booking(GUEST, daily_request()).id)
    unanswered = service.create_booking(OTHER_GUEST, daily_request(check_in=date(2025, 6, 14)))
    upcoming = service.accept_booking(
        HOST, service.create_booking(OTHER_GUEST, daily_request(check_in=date(2025, 6, 20))).id
    )

    # Mid-stay nothing is due
    assert sweeper.complete_finished_once(now=T0 + timedelta(days=11)) == 0

    after_checkout = T0 + timedelta(days=17)
    assert sweeper.complete_finished_once(now=after_checkout) == 1

    completed = service.get_booking(GUEST, finished.id)
    assert completed.status == BookingStatus.COMPLETED
    assert completed.completed_at == after_checkout
    assert notifier.templates_for(GUEST.user_id)[-1] == notifications.BOOKING_COMPLETED

    # Only confirmed stays are completed
    assert service.get_booking(OTHER_GUEST, unanswered.id).status == BookingStatus.PENDING
    assert service.get_booking(OTHER_GUEST, upcoming.id).status == BookingStatus.CONFIRMED

    assert sweeper.complete_finished_once(now=after_checkout) == 0
    # A stale snapshot loses the race quietly
    assert service.complete_finished(finished, after_checkout) is False


@pytest.mark.integration
def test_sweeper_start_and_stop(sweeper: ExpirySweeper) -> None:
    assert sweeper.running is False

    sweeper.start()
    sweeper.start()
    try:
        assert sweeper.running is True
        assert len(sweeper._threads) == 3
        assert {t.name for t in sweeper._threads} == {
            "sweeper-processing",
            "sweeper-approval",
            "sweeper-completion",
        }
    finally:
        sweeper.stop(timeout=5)

    assert sweeper.running is False

"""
Expiry Sweeper.

Three jobs on their own clocks, never sharing a threshold:

- ``sweep_once`` (every few minutes): cancels bookings stuck in ``processing``
  past a short grace window and releases orphaned ``held`` availability.
- ``expire_pending_once`` (much slower): expires ``pending`` bookings the host
  has not answered within the approval SLA.
- ``complete_finished_once`` (hourly): completes ``confirmed`` bookings whose
  stay has ended, so they no longer count as open.

A ``pending`` booking is only ever touched by the second job, however old it is.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from booking_engine.config import (
    APPROVAL_SWEEP_INTERVAL_SECONDS,
    COMPLETION_SWEEP_INTERVAL_SECONDS,
    PENDING_APPROVAL_HOURS,
    PROCESSING_GRACE_SECONDS,
    SWEEP_INTERVAL_SECONDS,
)
from booking_engine.db.readers.bookings import find_bookings, get_booking_statuses
from booking_engine.logging_config import log_context
from booking_engine.metrics import sweeper_reclaimed, sweeper_running, sweeper_runs
from booking_engine.schemas.bookings import BookingStatus
from booking_engine.services import availability
from booking_engine.services.bookings import BookingService

logger = structlog.get_logger(__name__)


class ExpirySweeper:
    """
    Background reclamation with an explicit lifecycle.

    Example:
        >>> sweeper = ExpirySweeper(service)
        >>> sweeper.start()   # runs a startup sweep, then every interval
        >>> sweeper.stop()    # signals every job thread and joins it
    """

    def __init__(
        self,
        service: BookingService,
        interval_seconds: int = SWEEP_INTERVAL_SECONDS,
        grace_seconds: int = PROCESSING_GRACE_SECONDS,
        approval_interval_seconds: int = APPROVAL_SWEEP_INTERVAL_SECONDS,
        approval_hours: int = PENDING_APPROVAL_HOURS,
        completion_interval_seconds: int = COMPLETION_SWEEP_INTERVAL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.service = service
        self.engine = service.engine
        self.interval_seconds = interval_seconds
        self.grace = timedelta(seconds=grace_seconds)
        self.approval_interval_seconds = approval_interval_seconds
        self.approval_window = timedelta(hours=approval_hours)
        self.completion_interval_seconds = completion_interval_seconds
        self.clock = clock or service.clock
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def sweep_once(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Reclaim stale ``processing`` bookings and orphaned holds.

        Returns:
            dict[str, int]: Counts of reclaimed bookings and released holds
        """
        now = now or self.clock()
        cutoff = now - self.grace

        with self.engine.connect() as conn:
            stale = find_bookings(conn, BookingStatus.PROCESSING, created_before=cutoff)

        reclaimed = 0
        for booking in stale:
            with log_context(booking_id=booking.id):
                try:
                    if self.service.reclaim_processing(booking, now):
                        reclaimed += 1
                except Exception as e:
                    logger.exception("reclaim_failed", error=str(e))

        orphans = self._release_orphaned_holds(cutoff, now)

        sweeper_runs.labels(job="processing", status="success").inc()
        sweeper_reclaimed.labels(job="processing").inc(reclaimed)
        sweeper_reclaimed.labels(job="orphaned_holds").inc(orphans)
        logger.info(
            "sweep_completed",
            stale_processing=len(stale),
            reclaimed=reclaimed,
            orphaned_holds_released=orphans,
        )
        return {"reclaimed": reclaimed, "orphaned_holds_released": orphans}

    def _release_orphaned_holds(self, cutoff: datetime, now: datetime) -> int:
        """
        Release ``held`` rows whose booking is gone or no longer settling.

        Holds of bookings still in ``processing`` are left to ``reclaim_processing``.
        """
        released = 0
        with self.engine.begin() as conn:
            owners = availability.stale_held_booking_ids(conn, cutoff)
            statuses = get_booking_statuses(conn, [o for o in owners if o is not None])
            for booking_id in owners:
                if booking_id is None:
                    continue
                if statuses.get(booking_id) == BookingStatus.PROCESSING:
                    continue
                released += availability.release_booking(conn, booking_id, now)
                logger.warning(
                    "orphaned_hold_released",
                    booking_id=booking_id,
                    booking_status=statuses.get(booking_id),
                )
            released += availability.release_unowned_holds(conn, cutoff, now)
        return released

    def expire_pending_once(self, now: Optional[datetime] = None) -> int:
        """
        Expire ``pending`` bookings older than the approval SLA.

        Returns:
            int: Number of bookings expired
        """
        now = now or self.clock()
        with self.engine.connect() as conn:
            overdue = find_bookings(
                conn, BookingStatus.PENDING, created_before=now - self.approval_window
            )

        expired = 0
        for booking in overdue:
            with log_context(booking_id=booking.id):
                try:
                    if self.service.expire_pending(booking, now):
                        expired += 1
                except Exception as e:
                    logger.exception("expire_failed", error=str(e))

        sweeper_runs.labels(job="approval", status="success").inc()
        sweeper_reclaimed.labels(job="approval").inc(expired)
        logger.info("approval_sweep_completed", overdue=len(overdue), expired=expired)
        return expired

    def complete_finished_once(self, now: Optional[datetime] = None) -> int:
        """
        Complete ``confirmed`` bookings whose stay has ended.

        Returns:
            int: Number of bookings completed
        """
        now = now or self.clock()
        with self.engine.connect() as conn:
            finished = find_bookings(conn, BookingStatus.CONFIRMED, ended_before=now)

        completed = 0
        for booking in finished:
            with log_context(booking_id=booking.id):
                try:
                    if self.service.complete_finished(booking, now):
                        completed += 1
                except Exception as e:
                    logger.exception("complete_failed", error=str(e))

        sweeper_runs.labels(job="completion", status="success").inc()
        sweeper_reclaimed.labels(job="completion").inc(completed)
        logger.info("completion_sweep_completed", finished=len(finished), completed=completed)
        return completed

    def _loop(self, job: Callable[[], object], interval: int, name: str) -> None:
        # Startup pass, then one pass per interval until stopped
        while not self._stop.is_set():
            with log_context(job=name):
                try:
                    job()
                except Exception as e:
                    sweeper_runs.labels(job=name, status="failure").inc()
                    logger.exception("sweeper_job_failed", error=str(e))
            self._stop.wait(interval)

    def start(self) -> None:
        """Start every job on its own daemon thread. Calling twice is a no-op."""
        if self._threads:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=(self.sweep_once, self.interval_seconds, "processing"),
                name="sweeper-processing",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=(self.expire_pending_once, self.approval_interval_seconds, "approval"),
                name="sweeper-approval",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=(self.complete_finished_once, self.completion_interval_seconds, "completion"),
                name="sweeper-completion",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()
        sweeper_running.set(1)
        logger.info(
            "sweeper_started",
            interval_seconds=self.interval_seconds,
            approval_interval_seconds=self.approval_interval_seconds,
            completion_interval_seconds=self.completion_interval_seconds,
        )

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Signal every job to stop and wait for them to finish their current pass."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        sweeper_running.set(0)
        logger.info("sweeper_stopped")

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

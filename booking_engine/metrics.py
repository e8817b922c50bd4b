"""
Prometheus metrics for bookings, availability, settlement and the sweeper.

Metrics are exposed via the /metrics endpoint for scraping by Prometheus.

Metric Types:
    - Counter: Cumulative metrics that only increase (e.g., bookings created)
    - Histogram: Observations bucketed by value (e.g., gateway latency)
    - Gauge: Point-in-time value that can go up or down (e.g., sweeper running)

Example:
    >>> from booking_engine.metrics import booking_transitions
    >>> booking_transitions.labels(transition="accept", status="success").inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Booking Metrics
# =============================================================================

bookings_created = Counter(
    "booking_engine_bookings_created_total",
    "Booking creation attempts by outcome",
    ["booking_type", "outcome"],
)
"""
Counter for booking creation attempts.

Labels:
    booking_type: property or service
    outcome: created, replayed, conflict, payment_failed, rejected, error
"""

booking_transitions = Counter(
    "booking_engine_transitions_total",
    "Booking state machine transitions",
    ["transition", "status"],
)
"""
Counter for state machine transitions.

Labels:
    transition: accept, reject, cancel, check_in, complete, expire, reclaim
    status: success or failure
"""

# =============================================================================
# Availability Metrics
# =============================================================================

hold_conflicts = Counter(
    "booking_engine_hold_conflicts_total",
    "Availability holds refused because the span was taken",
    ["resource_kind"],
)

cells_released = Counter(
    "booking_engine_cells_released_total",
    "Availability cells and slots returned to available",
)

# =============================================================================
# Money Metrics
# =============================================================================

refunds_issued = Counter(
    "booking_engine_refunds_issued_total",
    "Refund rows filed",
    ["reason"],
)

refund_amount = Counter(
    "booking_engine_refund_amount_total",
    "Sum of refund amounts filed, in booking currency units",
    ["reason"],
)

# =============================================================================
# Collaborator Metrics
# =============================================================================

payment_requests = Counter(
    "booking_engine_payment_requests_total",
    "Payment gateway settlement requests",
    ["status"],
)
"""
Counter for settlement requests.

Labels:
    status: succeeded, declined, timeout, error
"""

payment_latency = Histogram(
    "booking_engine_payment_latency_seconds",
    "Payment gateway settlement latency in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf")),
)

notification_failures = Counter(
    "booking_engine_notification_failures_total",
    "Notifications that could not be delivered",
    ["template"],
)

# =============================================================================
# Sweeper Metrics
# =============================================================================

sweeper_runs = Counter(
    "booking_engine_sweeper_runs_total",
    "Sweeper passes by job",
    ["job", "status"],
)

sweeper_reclaimed = Counter(
    "booking_engine_sweeper_reclaimed_total",
    "Bookings and orphaned holds reclaimed by the sweeper",
    ["job"],
)

sweeper_running = Gauge(
    "booking_engine_sweeper_running",
    "1 while the background sweeper threads are alive",
)

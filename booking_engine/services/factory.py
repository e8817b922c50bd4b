"""Wiring of the booking service and sweeper from configuration."""

from sqlalchemy.engine import Engine

from booking_engine.config import (
    NOTIFY_WEBHOOK_URL,
    PAYMENT_GATEWAY_API_KEY,
    PAYMENT_GATEWAY_URL,
    PAYMENT_TIMEOUT_SECONDS,
)
from booking_engine.network.payments import (
    HttpPaymentGateway,
    PaymentGateway,
    UnconfiguredPaymentGateway,
)
from booking_engine.services.bookings import BookingService
from booking_engine.services.catalog import SqlResourceCatalog
from booking_engine.services.notifications import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
    WebhookNotifier,
)
from booking_engine.services.sweeper import ExpirySweeper


def build_booking_service(engine: Engine) -> BookingService:
    """
    Construct a BookingService with collaborators chosen from the environment.

    Args:
        engine: SQLAlchemy engine

    Returns:
        BookingService: Ready to use; call ``close()`` on shutdown
    """
    gateway: PaymentGateway = (
        HttpPaymentGateway(PAYMENT_GATEWAY_URL, PAYMENT_GATEWAY_API_KEY, PAYMENT_TIMEOUT_SECONDS)
        if PAYMENT_GATEWAY_URL
        else UnconfiguredPaymentGateway()
    )
    notifier: Notifier = WebhookNotifier(NOTIFY_WEBHOOK_URL) if NOTIFY_WEBHOOK_URL else LoggingNotifier()
    return BookingService(
        engine=engine,
        catalog=SqlResourceCatalog(engine),
        gateway=gateway,
        dispatcher=NotificationDispatcher(notifier),
    )


def build_sweeper(engine: Engine) -> ExpirySweeper:
    """Sweeper over a freshly wired BookingService."""
    return ExpirySweeper(build_booking_service(engine))

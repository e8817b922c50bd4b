"""
Best-effort notification side-channel.

Notifications are dispatched only after the transaction they describe has
committed and never feed back into the booking's success or failure: any
delivery error is logged, counted and dropped.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Optional, Protocol

import requests
import structlog

from booking_engine.metrics import notification_failures

logger = structlog.get_logger(__name__)

# Template ids
BOOKING_REQUESTED = "booking_requested"
BOOKING_ACCEPTED = "booking_accepted"
BOOKING_REJECTED = "booking_rejected"
BOOKING_CANCELLED = "booking_cancelled"
BOOKING_EXPIRED = "booking_expired"
BOOKING_CHECKED_IN = "booking_checked_in"
BOOKING_COMPLETED = "booking_completed"
REFUND_ISSUED = "refund_issued"


class Notifier(Protocol):
    def notify(self, user_id: str, template_id: str, data: dict[str, Any]) -> None:
        """Deliver one notification; may raise on failure."""
        ...


class LoggingNotifier:
    """Notifier that only logs; used when no webhook is configured."""

    def notify(self, user_id: str, template_id: str, data: dict[str, Any]) -> None:
        logger.info("notification", user_id=user_id, template_id=template_id, **data)


class WebhookNotifier:
    """POSTs each notification as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def notify(self, user_id: str, template_id: str, data: dict[str, Any]) -> None:
        res = requests.post(
            self.url,
            json={"user_id": user_id, "template_id": template_id, "data": data},
            timeout=self.timeout,
        )
        res.raise_for_status()


class NotificationDispatcher:
    """
    Fire-and-forget wrapper around a ``Notifier``.

    With ``synchronous=True`` deliveries run inline (tests, one-shot scripts);
    otherwise they run on a small thread pool. Either way ``send`` never raises.
    """

    def __init__(self, notifier: Notifier, max_workers: int = 2, synchronous: bool = False):
        self.notifier = notifier
        self.synchronous = synchronous
        self._executor: Optional[ThreadPoolExecutor] = (
            None if synchronous else ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        )

    def _deliver(self, user_id: str, template_id: str, data: dict[str, Any]) -> None:
        try:
            self.notifier.notify(user_id, template_id, data)
        except Exception:
            notification_failures.labels(template=template_id).inc()
            logger.exception("notification_failed", user_id=user_id, template_id=template_id)

    def send(self, user_id: str, template_id: str, **data: Any) -> Optional[Future]:
        if self._executor is None:
            self._deliver(user_id, template_id, data)
            return None
        return self._executor.submit(self._deliver, user_id, template_id, data)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

"""
Payment Gateway collaborator.

The booking engine treats settlement as a synchronous call returning a
``SettlementResult``. ``HttpPaymentGateway`` talks to an HTTP settlement API
with bounded timeouts and retries on transient failures; every attempt carries
the booking's idempotency key so a retried request can never charge twice.
"""

import time
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Protocol
from urllib.parse import urljoin

import requests
import structlog
from pydantic import BaseModel

from booking_engine.metrics import payment_latency, payment_requests

logger = structlog.get_logger(__name__)

MAX_RETRIES = 2
RETRY_DELAY = 0.5


class SettlementStatus(str, Enum):
    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    TIMEOUT = "timeout"
    ERROR = "error"


class SettlementResult(BaseModel):
    status: SettlementStatus
    transaction_id: Optional[str] = None
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SettlementStatus.SUCCEEDED


class PaymentGateway(Protocol):
    def settle(
        self, amount: Decimal, currency: str, method: str, idempotency_key: str
    ) -> SettlementResult:
        """Charge ``amount`` and report the outcome; never raises for a decline."""
        ...


def should_retry(res: Optional[requests.Response], err: Optional[Exception]) -> bool:
    """
    Determine whether the settlement request should be retried.

    Args:
        res (Optional[requests.Response]): Response object if available.
        err (Optional[Exception]): Exception raised by the request, if any.

    Returns:
        bool: True if the request should be retried, False otherwise.
    """
    if res is not None and res.status_code == 429:
        return True
    if isinstance(err, (requests.Timeout, requests.ConnectionError)):
        return True
    if res is not None and 500 <= res.status_code < 600:
        return True
    return False


class HttpPaymentGateway:
    """
    Settlement over HTTP.

    Example:
        >>> gateway = HttpPaymentGateway("https://pay.example.com/", api_key="sk_test")
        >>> result = gateway.settle(Decimal("4960.35"), "INR", "card", "idem-123")
        >>> result.status
        <SettlementStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.api_key = api_key
        self.timeout = timeout
        self.session = requests.Session()

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        headers = {"Idempotency-Key": idempotency_key, "Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def settle(
        self, amount: Decimal, currency: str, method: str, idempotency_key: str
    ) -> SettlementResult:
        url = urljoin(self.base_url, "settlements")
        body = {
            "amount": str(amount),
            "currency": currency,
            "method": method,
            "reference": idempotency_key,
        }

        retries = 0
        while True:
            res: Optional[requests.Response] = None
            try:
                start_time = time.time()
                res = self.session.post(
                    url, json=body, headers=self._headers(idempotency_key), timeout=self.timeout
                )
                payment_latency.observe(time.time() - start_time)

                if res.status_code == 402:
                    return self._result(SettlementStatus.DECLINED, res)
                res.raise_for_status()
                return self._parse(res)

            except requests.RequestException as err:
                retries += 1
                logger.warning(
                    "payment_request_failed",
                    attempt=retries,
                    error=str(err),
                    status_code=res.status_code if res is not None else None,
                )
                if retries > MAX_RETRIES or not should_retry(res, err):
                    status = (
                        SettlementStatus.TIMEOUT
                        if isinstance(err, requests.Timeout)
                        else SettlementStatus.ERROR
                    )
                    payment_requests.labels(status=status.value).inc()
                    return SettlementResult(status=status, message=str(err))
                time.sleep(RETRY_DELAY * retries)

    def _parse(self, res: requests.Response) -> SettlementResult:
        try:
            data: dict[str, Any] = res.json()
        except ValueError:
            payment_requests.labels(status=SettlementStatus.ERROR.value).inc()
            return SettlementResult(status=SettlementStatus.ERROR, message="invalid gateway response")

        status = SettlementStatus.SUCCEEDED if data.get("status") == "succeeded" else SettlementStatus.DECLINED
        payment_requests.labels(status=status.value).inc()
        return SettlementResult(
            status=status,
            transaction_id=data.get("transaction_id"),
            message=data.get("message"),
        )

    def _result(self, status: SettlementStatus, res: requests.Response) -> SettlementResult:
        payment_requests.labels(status=status.value).inc()
        return SettlementResult(status=status, message=res.text[:200] or None)


class UnconfiguredPaymentGateway:
    """Fails every settlement closed; used when PAYMENT_GATEWAY_URL is unset."""

    def settle(
        self, amount: Decimal, currency: str, method: str, idempotency_key: str
    ) -> SettlementResult:
        logger.error("payment_gateway_not_configured", idempotency_key=idempotency_key)
        payment_requests.labels(status=SettlementStatus.ERROR.value).inc()
        return SettlementResult(status=SettlementStatus.ERROR, message="payment gateway not configured")

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from booking_engine.utils.datetime import ensure_utc


class RefundReason(str, Enum):
    GUEST_REQUEST = "guest_request"
    HOST_CANCEL = "host_cancel"
    SECURITY_DEPOSIT_ONLY = "security_deposit_only"
    APPROVAL_TIMEOUT = "approval_timeout"
    SETTLEMENT_REVERSAL = "settlement_reversal"


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    SECURITY_DEPOSIT_ONLY = "security_deposit_only"


class RefundState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


# Refunds in these states no longer count against the refundable balance
VOID_REFUND_STATES = frozenset({RefundState.REJECTED, RefundState.FAILED})


class RefundQuote(BaseModel):
    """Output of the Refund Policy Engine."""

    model_config = ConfigDict(frozen=True)

    percentage: Decimal
    amount: Decimal
    policy: Optional[str] = None
    reason: RefundReason = RefundReason.GUEST_REQUEST
    hours_until_check_in: Optional[float] = None
    description: str = ""

    @property
    def refund_type(self) -> RefundType:
        if self.reason == RefundReason.SECURITY_DEPOSIT_ONLY:
            return RefundType.SECURITY_DEPOSIT_ONLY
        if self.percentage == Decimal("100"):
            return RefundType.FULL
        return RefundType.PARTIAL


class Refund(BaseModel):
    """Refund row as returned to callers."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    guest_id: str
    host_id: str
    amount: Decimal
    percentage: Decimal
    currency: str
    reason: RefundReason
    refund_type: RefundType
    status: RefundState
    reference: str
    breakdown: Optional[dict[str, Any]] = None
    admin_notes: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("approved_at", "processed_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

"""
Booking State Machine.

``BookingService`` is the single entry point for every booking operation. It
owns no mutable state besides its collaborators, all injected at construction:
the engine, the resource catalog, the payment gateway and the notification
dispatcher.

States::

    processing -> pending -> confirmed -> completed
         |           |           |
         +-----------+-----------+--> cancelled
                     |
                     +--> expired

Every transition is a compare-and-swap on ``(id, status, version)`` and runs
in one transaction together with its side effects on availability and the
refund ledger. Notifications go out only after that transaction commits.

Creation is split around the payment call so no database transaction is open
while the gateway is contacted:

1. claim the idempotency key, redeem the coupon, insert the booking as
   ``processing`` and hold its availability (one transaction);
2. settle payment with a bounded timeout;
3. on success move the booking to ``pending`` and flip its cells to
   ``booked``; on failure cancel it, release the hold, revoke the coupon and
   free the idempotency key (one transaction each).
"""

import functools
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

import structlog
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from booking_engine.config import PAYMENT_TIMEOUT_SECONDS
from booking_engine.db.readers.bookings import get_booking, get_booking_by_idempotency_key
from booking_engine.db.writers.bookings import (
    claim_idempotency_key,
    insert_booking,
    release_idempotency_key,
    transition_booking,
)
from booking_engine.errors import (
    AlreadyCheckedIn,
    Inconsistent,
    InvalidTransition,
    NotFound,
    ResourceConflict,
    Unauthorized,
    UpstreamFailure,
    ValidationError,
)
from booking_engine.logging_config import log_context
from booking_engine.metrics import booking_transitions, bookings_created
from booking_engine.network.payments import PaymentGateway, SettlementResult, SettlementStatus
from booking_engine.schemas.availability import CellStatus, Span, TimeSpan
from booking_engine.schemas.bookings import (
    Actor,
    Booking,
    BookingStatus,
    CancellationPreview,
    CreateBookingRequest,
    PaymentStatus,
    Role,
)
from booking_engine.schemas.coupons import Coupon
from booking_engine.schemas.pricing import HOURLY_EXTENSION_RATES, PricingBreakdown, PricingInput
from booking_engine.schemas.refunds import Refund, RefundQuote, RefundReason
from booking_engine.schemas.resources import BookingMode, Resource, ResourceKind, ResourceRef
from booking_engine.services import availability, notifications
from booking_engine.services.catalog import ResourceCatalog
from booking_engine.services.coupons import redeem_coupon, resolve_discount, revoke_redemption
from booking_engine.services.notifications import NotificationDispatcher
from booking_engine.services.pricing import compute_pricing, pre_discount_amount
from booking_engine.services.pricing_config import get_current_platform_fee_rate
from booking_engine.services.refund_policy import (
    HUNDRED,
    cancellation_allowed,
    compute_refund,
    refund_for_reason,
)
from booking_engine.services.refunds import issue_refund, lock_booking, refunded_total
from booking_engine.utils.datetime import combine_utc, hours_between, utc_now
from booking_engine.utils.money import ZERO, round2

logger = structlog.get_logger(__name__)

MIN_24H_STAY_HOURS = 24
MAX_24H_STAY_HOURS = 168

OPEN_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


@dataclass(frozen=True)
class StayShape:
    """Temporal shape of a request, resolved against the resource's rules."""

    booking_duration: BookingMode
    span: Span
    starts_at: datetime
    ends_at: datetime
    duration: int
    is_time_boxed: bool
    base_price: Decimal
    host_buffer_hours: int = 0
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    check_in_time: Optional[str] = None
    check_out_time: Optional[str] = None
    slot_start: Optional[datetime] = None
    slot_end: Optional[datetime] = None


def resolve_stay_shape(resource: Resource, request: CreateBookingRequest, now: datetime) -> StayShape:
    """
    Validate the requested stay or slot against the resource's booking rules.

    Args:
        resource: Catalog entry being booked
        request: Reservation request
        now: Evaluation time

    Returns:
        StayShape: The span to hold and the stay's start and end instants

    Raises:
        ValidationError: If fields are missing or the stay breaks a rule
    """
    ext = request.extension_hours
    if ext and ext not in HOURLY_EXTENSION_RATES:
        raise ValidationError(
            f"extension_hours must be one of {sorted(HOURLY_EXTENSION_RATES)}", extension_hours=ext
        )

    tariff = resource.tariff

    if resource.booking_mode == BookingMode.DAILY:
        if request.check_in is None or request.check_out is None:
            raise ValidationError("check_in and check_out are required")
        if request.check_out <= request.check_in:
            raise ValidationError("check_out must be after check_in")
        if request.check_in < now.date():
            raise ValidationError("check_in cannot be in the past")
        nights = (request.check_out - request.check_in).days
        if nights < resource.min_nights:
            raise ValidationError(
                f"minimum stay is {resource.min_nights} nights", nights=nights
            )
        return StayShape(
            booking_duration=BookingMode.DAILY,
            span=availability.day_span(request.check_in, request.check_out, extra_day=bool(ext)),
            starts_at=combine_utc(request.check_in, resource.check_in_time),
            ends_at=combine_utc(request.check_out, resource.check_out_time) + timedelta(hours=ext),
            duration=nights,
            is_time_boxed=False,
            base_price=tariff.base_price,
            check_in=request.check_in,
            check_out=request.check_out,
            check_in_time=resource.check_in_time,
            check_out_time=resource.check_out_time,
        )

    if resource.booking_mode == BookingMode.TWENTY_FOUR_HOUR:
        if request.check_in_at is None:
            raise ValidationError("check_in_at is required for 24-hour stays")
        if request.check_in_at <= now:
            raise ValidationError("check_in_at cannot be in the past")
        total_hours = MIN_24H_STAY_HOURS + ext
        min_hours = resource.min_hours or MIN_24H_STAY_HOURS
        max_hours = resource.max_hours or MAX_24H_STAY_HOURS
        if not min_hours <= total_hours <= max_hours:
            raise ValidationError(
                f"24-hour stays must last between {min_hours} and {max_hours} hours",
                total_hours=total_hours,
            )
        ends_at = request.check_in_at + timedelta(hours=total_hours)
        return StayShape(
            booking_duration=BookingMode.TWENTY_FOUR_HOUR,
            span=TimeSpan(
                start=request.check_in_at,
                end=ends_at + timedelta(hours=resource.host_buffer_hours),
            ),
            starts_at=request.check_in_at,
            ends_at=ends_at,
            duration=1,
            is_time_boxed=True,
            base_price=tariff.base_price_24h if tariff.base_price_24h is not None else tariff.base_price,
            host_buffer_hours=resource.host_buffer_hours,
            check_in=request.check_in_at.date(),
            check_out=ends_at.date(),
            check_in_time=f"{request.check_in_at:%H:%M}",
            check_out_time=f"{ends_at:%H:%M}",
        )

    if request.slot_start is None or request.slot_end is None:
        raise ValidationError("slot_start and slot_end are required for services")
    if request.slot_end <= request.slot_start:
        raise ValidationError("slot_end must be after slot_start")
    if request.slot_start <= now:
        raise ValidationError("slot_start cannot be in the past")
    if ext:
        raise ValidationError("services cannot be extended")
    hours = hours_between(request.slot_start, request.slot_end)
    if resource.min_hours and hours < resource.min_hours:
        raise ValidationError(f"minimum booking is {resource.min_hours} hours", hours=hours)
    if resource.max_hours and hours > resource.max_hours:
        raise ValidationError(f"maximum booking is {resource.max_hours} hours", hours=hours)
    return StayShape(
        booking_duration=BookingMode.SLOT,
        span=TimeSpan(start=request.slot_start, end=request.slot_end),
        starts_at=request.slot_start,
        ends_at=request.slot_end,
        duration=1,
        is_time_boxed=True,
        base_price=tariff.base_price,
        slot_start=request.slot_start,
        slot_end=request.slot_end,
    )


def build_pricing_input(resource: Resource, request: CreateBookingRequest, shape: StayShape) -> PricingInput:
    """Pricing Engine input for a validated request, before any discount."""
    guests = request.guests
    if resource.max_guests is not None and guests.occupying > resource.max_guests:
        raise ValidationError(
            f"maximum {resource.max_guests} guests allowed", guests=guests.occupying
        )
    tariff = resource.tariff
    return PricingInput(
        base_price=shape.base_price,
        duration=shape.duration,
        is_time_boxed=shape.is_time_boxed,
        extra_guest_price=tariff.extra_guest_price,
        extra_guests=max(guests.adults - 1, 0),
        cleaning_fee=tariff.cleaning_fee,
        service_fee=tariff.service_fee,
        security_deposit=tariff.security_deposit,
        extension_hours=request.extension_hours,
        currency=resource.currency,
    )


def settlement_key(idempotency_key: str, booking_id: str) -> str:
    """Gateway idempotency key for one settlement attempt of a booking."""
    return f"{idempotency_key}:{booking_id}"


def booking_scoped(method: Callable[..., Any]) -> Callable[..., Any]:
    """Run a ``(self, actor, booking_id, ...)`` operation inside the booking's log context."""

    @functools.wraps(method)
    def wrapper(self: Any, actor: Actor, booking_id: str, *args: Any, **kwargs: Any) -> Any:
        with log_context(booking_id=booking_id, actor_id=actor.user_id, actor_role=actor.role.value):
            return method(self, actor, booking_id, *args, **kwargs)

    return wrapper


class BookingService:
    """
    Booking lifecycle operations.

    Example:
        >>> service = BookingService(engine, SqlResourceCatalog(engine), gateway, dispatcher)
        >>> booking = service.create_booking(Actor(user_id="g1", role="guest"), request)
        >>> service.accept_booking(Actor(user_id="h1", role="host"), booking.id)
    """

    def __init__(
        self,
        engine: Engine,
        catalog: ResourceCatalog,
        gateway: PaymentGateway,
        dispatcher: NotificationDispatcher,
        payment_timeout: float = PAYMENT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        settlement_workers: int = 8,
    ):
        self.engine = engine
        self.catalog = catalog
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.payment_timeout = payment_timeout
        self.clock = clock
        self._settlement_pool = ThreadPoolExecutor(
            max_workers=settlement_workers, thread_name_prefix="settle"
        )

    def close(self) -> None:
        """Wait for in-flight settlements and stop the settlement pool."""
        self._settlement_pool.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self, booking_id: str) -> Booking:
        with self.engine.connect() as conn:
            booking = get_booking(conn, booking_id)
        if booking is None:
            raise NotFound("booking not found", booking_id=booking_id)
        return booking

    def get_booking(self, actor: Actor, booking_id: str) -> Booking:
        """
        Fetch a booking for its guest, its host, an admin or the system.

        Raises:
            NotFound: If the booking does not exist
            Unauthorized: If the actor is unrelated to the booking
        """
        booking = self._load(booking_id)
        self._authorize(actor, booking, guest=True, host=True, admin=True, system=True)
        return booking

    @staticmethod
    def _authorize(
        actor: Actor,
        booking: Booking,
        guest: bool = False,
        host: bool = False,
        admin: bool = False,
        system: bool = False,
    ) -> None:
        if guest and actor.user_id == booking.guest_id:
            return
        if host and actor.user_id == booking.host_id:
            return
        if admin and actor.role == Role.ADMIN:
            return
        if system and actor.role == Role.SYSTEM:
            return
        raise Unauthorized(
            "actor may not perform this operation on the booking",
            user_id=actor.user_id,
            booking_id=booking.id,
        )

    # ------------------------------------------------------------------
    # Quote and create
    # ------------------------------------------------------------------

    def _price(
        self,
        conn: Connection,
        actor: Actor,
        resource: Resource,
        request: CreateBookingRequest,
        now: datetime,
    ) -> tuple[StayShape, PricingBreakdown, Optional[Coupon]]:
        shape = resolve_stay_shape(resource, request, now)
        params = build_pricing_input(resource, request, shape)

        coupon: Optional[Coupon] = None
        if request.coupon_code:
            coupon, discount = resolve_discount(
                conn, request.coupon_code, actor.user_id, resource.ref, pre_discount_amount(params), now
            )
            params = params.model_copy(update={"discount_amount": discount})

        rate = get_current_platform_fee_rate(conn, now)
        breakdown = compute_pricing(params, rate)
        try:
            breakdown.reconcile()
        except Inconsistent:
            logger.critical("pricing_not_reconciled", resource_id=resource.id, **breakdown.model_dump(mode="json"))
            raise
        return shape, breakdown, coupon

    def _resource_for(self, request: CreateBookingRequest) -> Resource:
        resource = self.catalog.get(request.resource)
        if not resource.is_active:
            raise ValidationError(f"{resource.kind.value} is not available for booking", resource_id=resource.id)
        return resource

    def quote_price(self, actor: Actor, request: CreateBookingRequest) -> PricingBreakdown:
        """
        Price a request without reserving anything.

        Applies the same validation and coupon rules as ``create_booking``; the
        coupon is checked but not redeemed.

        Raises:
            ValidationError: If the request or coupon is invalid
            NotFound: If the resource does not exist
            UpstreamFailure: If the catalog could not be read
        """
        now = self.clock()
        resource = self._resource_for(request)
        with self.engine.connect() as conn:
            _, breakdown, _ = self._price(conn, actor, resource, request, now)
        return breakdown

    def create_booking(self, actor: Actor, request: CreateBookingRequest) -> Booking:
        """
        Create a booking: price it, hold availability, settle payment.

        Replaying a request with an idempotency key already used by the same
        guest returns the original booking without holding or charging again.

        Args:
            actor: Guest making the reservation
            request: Reservation request

        Returns:
            Booking: The new (or replayed) booking, ``pending`` host approval

        Raises:
            ValidationError: If the request, stay shape or coupon is invalid
            NotFound: If the resource does not exist
            ResourceConflict: If the span is already held or booked
            UpstreamFailure: If the catalog or payment settlement failed;
                nothing stays held and the key may be retried
        """
        if actor.role != Role.GUEST:
            raise Unauthorized("only guests can create bookings", user_id=actor.user_id)

        key = request.idempotency_key or uuid.uuid4().hex
        with log_context(actor_id=actor.user_id, idempotency_key=key):
            return self._create_booking(actor, request, key)

    def _create_booking(self, actor: Actor, request: CreateBookingRequest, key: str) -> Booking:
        with self.engine.connect() as conn:
            existing = get_booking_by_idempotency_key(conn, actor.user_id, key)
        if existing is not None:
            return self._replayed(existing)

        now = self.clock()
        resource = self._resource_for(request)
        if resource.host_id == actor.user_id:
            raise ValidationError("hosts cannot book their own resources", resource_id=resource.id)

        with self.engine.connect() as conn:
            shape, breakdown, coupon = self._price(conn, actor, resource, request, now)

        booking_id = str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(booking_id=booking_id)
        row = self._booking_row(booking_id, key, actor, resource, request, shape, breakdown, now)
        booking_type = "property" if resource.kind == ResourceKind.LISTING else "service"

        try:
            with self.engine.begin() as conn:
                if not claim_idempotency_key(conn, actor.user_id, key, booking_id, now):
                    replay = get_booking_by_idempotency_key(conn, actor.user_id, key)
                    if replay is None:
                        raise UpstreamFailure("idempotency key is being processed; retry", idempotency_key=key)
                    return self._replayed(replay)
                if coupon is not None:
                    try:
                        redeem_coupon(conn, coupon, actor.user_id, booking_id, now)
                    except IntegrityError as exc:
                        raise ValidationError(
                            "coupon already used by this user", coupon_code=request.coupon_code
                        ) from exc
                insert_booking(conn, row)
                availability.hold(conn, resource.ref, shape.span, booking_id, CellStatus.HELD, now=now)
        except IntegrityError as exc:
            bookings_created.labels(booking_type=booking_type, outcome="error").inc()
            logger.critical(
                "booking_insert_rejected",
                booking_id=booking_id,
                resource_id=resource.id,
                error=str(exc.orig),
            )
            raise Inconsistent("booking row rejected by the database", booking_id=booking_id) from exc
        except ResourceConflict:
            bookings_created.labels(booking_type=booking_type, outcome="conflict").inc()
            raise
        except ValidationError:
            bookings_created.labels(booking_type=booking_type, outcome="rejected").inc()
            raise

        logger.info(
            "booking_processing",
            booking_id=booking_id,
            guest_id=actor.user_id,
            resource_id=resource.id,
            total_amount=str(breakdown.total_amount),
        )

        result, in_flight = self._settle(booking_id, breakdown, request.payment_method, key)
        if not result.succeeded:
            self._abort_creation(booking_id, actor.user_id, key, request.coupon_code, result)
            if in_flight is not None:
                in_flight.add_done_callback(lambda f: self._late_settlement(booking_id, f))
            bookings_created.labels(booking_type=booking_type, outcome="payment_failed").inc()
            raise UpstreamFailure(
                "payment settlement failed",
                booking_id=booking_id,
                settlement_status=result.status.value,
                idempotency_key=key,
            )

        booking = self._finalize_creation(booking_id, result)
        bookings_created.labels(booking_type=booking_type, outcome="created").inc()
        logger.info(
            "booking_created",
            booking_id=booking.id,
            guest_id=booking.guest_id,
            host_id=booking.host_id,
            total_amount=str(booking.total_amount),
            transaction_id=result.transaction_id,
        )
        self.dispatcher.send(
            booking.host_id,
            notifications.BOOKING_REQUESTED,
            booking_id=booking.id,
            guest_id=booking.guest_id,
            starts_at=booking.starts_at.isoformat(),
            total_amount=str(booking.total_amount),
        )
        return booking

    def _replayed(self, booking: Booking) -> Booking:
        bookings_created.labels(booking_type=booking.booking_type, outcome="replayed").inc()
        logger.info("booking_replayed", booking_id=booking.id, idempotency_key=booking.idempotency_key)
        return booking

    def _booking_row(
        self,
        booking_id: str,
        key: str,
        actor: Actor,
        resource: Resource,
        request: CreateBookingRequest,
        shape: StayShape,
        breakdown: PricingBreakdown,
        now: datetime,
    ) -> dict[str, Any]:
        return {
            "id": booking_id,
            "idempotency_key": key,
            "guest_id": actor.user_id,
            "host_id": resource.host_id,
            "listing_id": request.listing_id,
            "service_id": request.service_id,
            "booking_type": "property" if resource.kind == ResourceKind.LISTING else "service",
            "booking_duration": shape.booking_duration.value,
            "check_in": shape.check_in,
            "check_out": shape.check_out,
            "check_in_time": shape.check_in_time,
            "check_out_time": shape.check_out_time,
            "slot_start": shape.slot_start,
            "slot_end": shape.slot_end,
            "starts_at": shape.starts_at,
            "ends_at": shape.ends_at,
            "extension_hours": request.extension_hours,
            "host_buffer_hours": shape.host_buffer_hours,
            "adults": request.guests.adults,
            "children": request.guests.children,
            "infants": request.guests.infants,
            "currency": breakdown.currency,
            "base_amount": breakdown.base_amount,
            "extra_guest_cost": breakdown.extra_guest_cost,
            "cleaning_fee": breakdown.cleaning_fee,
            "service_fee": breakdown.service_fee,
            "security_deposit": breakdown.security_deposit,
            "hourly_extension_cost": breakdown.hourly_extension_cost,
            "discount_amount": breakdown.discount_amount,
            "subtotal": breakdown.subtotal,
            "platform_fee": breakdown.platform_fee,
            "gst": breakdown.gst,
            "processing_fee": breakdown.processing_fee,
            "total_amount": breakdown.total_amount,
            "host_earning": breakdown.host_earning,
            "pricing_breakdown": breakdown.model_dump(mode="json"),
            "coupon_code": request.coupon_code.upper() if request.coupon_code else None,
            "cancellation_policy": resource.cancellation_policy.value,
            "status": BookingStatus.PROCESSING.value,
            "payment_status": PaymentStatus.PENDING.value,
            "refund_amount": ZERO,
            "refund_status": "not_applicable",
            "special_requests": request.special_requests,
            "request_metadata": {
                "client_ip": request.client_ip,
                "user_agent": request.user_agent,
                "payment_method": request.payment_method,
            },
            "created_at": now,
            "updated_at": now,
        }

    def _settle(
        self, booking_id: str, breakdown: PricingBreakdown, method: str, key: str
    ) -> tuple[SettlementResult, Optional[Future]]:
        """
        Run settlement with a bounded wait; a timeout fails closed.

        The gateway sees one key per booking attempt, so a retry under the same
        request key after a failed or timed-out attempt is a new charge.

        Returns the result and, on timeout, the still-running future.
        """
        future = self._settlement_pool.submit(
            self.gateway.settle,
            breakdown.total_amount,
            breakdown.currency,
            method,
            settlement_key(key, booking_id),
        )
        try:
            return future.result(timeout=self.payment_timeout), None
        except FutureTimeout:
            logger.warning("payment_timeout", booking_id=booking_id, timeout=self.payment_timeout)
            return SettlementResult(status=SettlementStatus.TIMEOUT, message="settlement timed out"), future
        except Exception as exc:
            logger.exception("payment_error", booking_id=booking_id)
            return SettlementResult(status=SettlementStatus.ERROR, message=str(exc)), None

    def _late_settlement(self, booking_id: str, future: Future) -> None:
        """A settlement that finished after we gave up on it must be reversed."""
        if future.cancelled() or future.exception() is not None:
            return
        result: SettlementResult = future.result()
        if not result.succeeded:
            return
        logger.critical(
            "settlement_after_timeout",
            booking_id=booking_id,
            transaction_id=result.transaction_id,
        )
        with self.engine.begin() as conn:
            booking = get_booking(conn, booking_id)
            if booking is None:
                return
            self._reverse_settlement(conn, booking, result, self.clock())

    def _reverse_settlement(
        self, conn: Connection, booking: Booking, result: SettlementResult, now: datetime
    ) -> None:
        transition_booking(
            conn,
            booking.id,
            [booking.status],
            booking.version,
            now,
            payment_status=PaymentStatus.PAID,
            transaction_id=result.transaction_id,
        )
        reversal = refund_for_reason(
            RefundReason.SETTLEMENT_REVERSAL,
            booking.total_amount,
            policy=booking.cancellation_policy,
        )
        issue_refund(conn, booking, reversal, now)

    def _abort_creation(
        self,
        booking_id: str,
        requester_id: str,
        key: str,
        coupon_code: Optional[str],
        result: SettlementResult,
    ) -> None:
        now = self.clock()
        with self.engine.begin() as conn:
            booking = get_booking(conn, booking_id)
            transition_booking(
                conn,
                booking_id,
                [BookingStatus.PROCESSING],
                booking.version if booking else 1,
                now,
                status=BookingStatus.CANCELLED,
                payment_status=PaymentStatus.FAILED,
                cancelled_by=Actor.system().user_id,
                cancelled_at=now,
                cancellation_reason="payment_failed",
            )
            availability.release_booking(conn, booking_id, now)
            if coupon_code:
                revoke_redemption(conn, coupon_code, booking_id)
            release_idempotency_key(conn, requester_id, key, booking_id)
        logger.warning(
            "booking_payment_failed",
            booking_id=booking_id,
            settlement_status=result.status.value,
            message=result.message,
        )

    def _finalize_creation(self, booking_id: str, result: SettlementResult) -> Booking:
        now = self.clock()
        with self.engine.begin() as conn:
            moved = transition_booking(
                conn,
                booking_id,
                [BookingStatus.PROCESSING],
                1,
                now,
                status=BookingStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                transaction_id=result.transaction_id,
            )
            if moved:
                availability.confirm_booking_cells(conn, booking_id, now)
                return get_booking(conn, booking_id)  # type: ignore[return-value]

            # Reclaimed while the gateway was settling: the charge must be undone
            booking = get_booking(conn, booking_id)
            if booking is not None:
                self._reverse_settlement(conn, booking, result, now)

        logger.error("booking_reclaimed_during_settlement", booking_id=booking_id)
        raise UpstreamFailure(
            "booking expired before payment completed; the charge will be refunded",
            booking_id=booking_id,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _apply(
        self,
        booking: Booking,
        sources: Iterable[BookingStatus],
        transition: str,
        now: datetime,
        after: Optional[Callable[[Connection], None]] = None,
        **values: Any,
    ) -> Booking:
        """Compare-and-swap ``booking`` and run ``after`` in the same transaction."""
        target = values.get("status", booking.status)
        target_value = getattr(target, "value", target)
        with self.engine.begin() as conn:
            if not transition_booking(conn, booking.id, sources, booking.version, now, **values):
                current = get_booking(conn, booking.id)
                booking_transitions.labels(transition=transition, status="failure").inc()
                raise InvalidTransition(
                    "booking was modified concurrently",
                    current=current.status.value if current else None,
                    target=target_value,
                    booking_id=booking.id,
                )
            if after is not None:
                after(conn)
            updated = get_booking(conn, booking.id)

        booking_transitions.labels(transition=transition, status="success").inc()
        logger.info(
            "booking_transition",
            booking_id=booking.id,
            transition=transition,
            from_status=booking.status.value,
            to_status=target_value,
        )
        return updated  # type: ignore[return-value]

    @staticmethod
    def _require_status(booking: Booking, allowed: Iterable[BookingStatus], target: BookingStatus) -> None:
        if booking.status not in allowed:
            booking_transitions.labels(transition=target.value, status="failure").inc()
            raise InvalidTransition(
                f"cannot move a {booking.status.value} booking to {target.value}",
                current=booking.status.value,
                target=target.value,
                booking_id=booking.id,
            )

    @booking_scoped
    def accept_booking(self, actor: Actor, booking_id: str, host_message: Optional[str] = None) -> Booking:
        """
        Host accepts a pending booking: ``pending -> confirmed``, payment ``paid``.

        Raises:
            NotFound, Unauthorized, InvalidTransition
        """
        booking = self._load(booking_id)
        self._authorize(actor, booking, host=True)
        self._require_status(booking, [BookingStatus.PENDING], BookingStatus.CONFIRMED)

        now = self.clock()
        updated = self._apply(
            booking,
            [BookingStatus.PENDING],
            "accept",
            now,
            status=BookingStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            accepted_at=now,
            host_message=host_message,
        )
        self.dispatcher.send(
            booking.guest_id,
            notifications.BOOKING_ACCEPTED,
            booking_id=booking.id,
            host_message=host_message,
        )
        return updated

    @booking_scoped
    def reject_booking(self, actor: Actor, booking_id: str, reason: Optional[str] = None) -> Booking:
        """
        Host rejects a pending booking: ``pending -> cancelled``.

        The guest is refunded in full whatever the cancellation policy, and the
        availability is released.

        Raises:
            NotFound, Unauthorized, InvalidTransition
        """
        booking = self._load(booking_id)
        self._authorize(actor, booking, host=True)
        self._require_status(booking, [BookingStatus.PENDING], BookingStatus.CANCELLED)

        now = self.clock()
        quote = refund_for_reason(
            RefundReason.HOST_CANCEL, booking.total_amount, policy=booking.cancellation_policy
        )

        def after(conn: Connection) -> None:
            availability.release_booking(conn, booking.id, now)
            issue_refund(conn, booking, quote, now)

        updated = self._apply(
            booking,
            [BookingStatus.PENDING],
            "reject",
            now,
            after=after,
            status=BookingStatus.CANCELLED,
            rejected_at=now,
            cancelled_by=actor.user_id,
            cancelled_at=now,
            cancellation_reason=reason or "rejected_by_host",
        )
        self.dispatcher.send(
            booking.guest_id,
            notifications.BOOKING_REJECTED,
            booking_id=booking.id,
            refund_amount=str(quote.amount),
            reason=reason,
        )
        return updated

    def _cancellation_terms(
        self, actor: Actor, booking: Booking, now: datetime
    ) -> tuple[bool, Optional[str], RefundQuote]:
        """Whether ``actor`` may cancel now, why not, and the refund it would get."""
        by_guest = actor.user_id == booking.guest_id and actor.role != Role.ADMIN

        if by_guest and booking.status == BookingStatus.PENDING:
            quote = RefundQuote(
                percentage=HUNDRED,
                amount=round2(booking.total_amount),
                policy=booking.cancellation_policy,
                reason=RefundReason.GUEST_REQUEST,
                hours_until_check_in=round(hours_between(now, booking.starts_at), 2),
                description="Full refund: cancelled before the host accepted",
            )
        elif by_guest:
            quote = compute_refund(
                booking.cancellation_policy, now, booking.starts_at, booking.total_amount
            )
        else:
            quote = refund_for_reason(
                RefundReason.HOST_CANCEL, booking.total_amount, policy=booking.cancellation_policy
            )

        if booking.status not in OPEN_STATUSES:
            return False, f"booking is {booking.status.value}", quote
        if booking.checked_in:
            return False, "guest has already checked in", quote
        if now >= booking.starts_at:
            return False, "stay has already started", quote
        if (
            by_guest
            and booking.status == BookingStatus.CONFIRMED
            and not cancellation_allowed(booking.cancellation_policy, now, booking.starts_at)
        ):
            return False, "cancellation not allowed by the host's cancellation policy", quote
        return True, None, quote

    @booking_scoped
    def get_cancellation_preview(self, actor: Actor, booking_id: str) -> CancellationPreview:
        """
        What cancelling right now would do, without doing it.

        Raises:
            NotFound, Unauthorized
        """
        booking = self._load(booking_id)
        self._authorize(actor, booking, guest=True, host=True, admin=True)
        allowed, reason, quote = self._cancellation_terms(actor, booking, self.clock())
        return CancellationPreview(booking_id=booking.id, allowed=allowed, reason=reason, refund=quote)

    @booking_scoped
    def cancel_booking(self, actor: Actor, booking_id: str, reason: Optional[str] = None) -> Booking:
        """
        Cancel a pending or confirmed booking before the stay starts.

        Guests get a full refund while the booking is pending and the policy
        refund once it is confirmed; host and admin cancellations always refund
        in full. Availability is released in the same transaction.

        Raises:
            NotFound, Unauthorized
            AlreadyCheckedIn: If the guest has checked in
            InvalidTransition: If the booking is not open, has started, or the
                policy forbids cancelling now
        """
        booking = self._load(booking_id)
        self._authorize(actor, booking, guest=True, host=True, admin=True)

        now = self.clock()
        if booking.checked_in:
            booking_transitions.labels(transition="cancel", status="failure").inc()
            raise AlreadyCheckedIn("cannot cancel after check-in", booking_id=booking.id)
        allowed, why_not, quote = self._cancellation_terms(actor, booking, now)
        if not allowed:
            booking_transitions.labels(transition="cancel", status="failure").inc()
            raise InvalidTransition(
                why_not or "cancellation not allowed",
                current=booking.status.value,
                target=BookingStatus.CANCELLED.value,
                booking_id=booking.id,
            )

        def after(conn: Connection) -> None:
            availability.release_booking(conn, booking.id, now)
            issue_refund(conn, booking, quote, now)

        updated = self._apply(
            booking,
            OPEN_STATUSES,
            "cancel",
            now,
            after=after,
            status=BookingStatus.CANCELLED,
            cancelled_by=actor.user_id,
            cancelled_at=now,
            cancellation_reason=reason or quote.reason.value,
        )

        for user_id in {booking.guest_id, booking.host_id} - {actor.user_id}:
            self.dispatcher.send(
                user_id,
                notifications.BOOKING_CANCELLED,
                booking_id=booking.id,
                cancelled_by=actor.user_id,
                refund_amount=str(quote.amount),
            )
        return updated

    @booking_scoped
    def check_in(self, actor: Actor, booking_id: str) -> Booking:
        """
        Host records the guest's arrival on a confirmed booking.

        Allowed from the stay's start date onwards, once.

        Raises:
            NotFound, Unauthorized, InvalidTransition, AlreadyCheckedIn
        """
        booking = self._load(booking_id)
        self._authorize(actor, booking, host=True)
        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidTransition(
                f"cannot check in to a {booking.status.value} booking",
                current=booking.status.value,
                target=BookingStatus.CONFIRMED.value,
                booking_id=booking.id,
            )
        if booking.checked_in:
            raise AlreadyCheckedIn("guest already checked in", booking_id=booking.id)

        now = self.clock()
        if now.date() < booking.starts_at.date():
            raise InvalidTransition(
                "check-in is not open before the start date",
                current=booking.status.value,
                target=BookingStatus.CONFIRMED.value,
                booking_id=booking.id,
            )

        updated = self._apply(
            booking,
            [BookingStatus.CONFIRMED],
            "check_in",
            now,
            checked_in=True,
            checked_in_at=now,
            checked_in_by=actor.user_id,
        )
        self.dispatcher.send(booking.guest_id, notifications.BOOKING_CHECKED_IN, booking_id=booking.id)
        return updated

    @booking_scoped
    def complete_booking(self, actor: Actor, booking_id: str) -> Booking:
        """
        Close a confirmed booking once its stay has ended.

        Raises:
            NotFound, Unauthorized, InvalidTransition
        """
        booking = self._load(booking_id)
        self._authorize(actor, booking, host=True, admin=True, system=True)
        self._require_status(booking, [BookingStatus.CONFIRMED], BookingStatus.COMPLETED)

        now = self.clock()
        if now < booking.ends_at:
            raise InvalidTransition(
                "stay has not ended yet",
                current=booking.status.value,
                target=BookingStatus.COMPLETED.value,
                booking_id=booking.id,
            )
        return self._complete(booking, now)

    def _complete(self, booking: Booking, now: datetime) -> Booking:
        updated = self._apply(
            booking,
            [BookingStatus.CONFIRMED],
            "complete",
            now,
            status=BookingStatus.COMPLETED,
            completed_at=now,
        )
        self.dispatcher.send(booking.guest_id, notifications.BOOKING_COMPLETED, booking_id=booking.id)
        return updated

    # ------------------------------------------------------------------
    # Refunds and admin operations
    # ------------------------------------------------------------------

    @booking_scoped
    def refund_security_deposit(self, actor: Actor, booking_id: str, notes: Optional[str] = None) -> Refund:
        """
        Return the security deposit of a finished booking.

        The refund is limited to the part of the deposit not yet returned and
        to what is left of the booking's refundable balance.

        Raises:
            NotFound, Unauthorized, InvalidTransition
            ValidationError: If there is no deposit left to return
        """
        booking = self._load(booking_id)
        self._authorize(actor, booking, host=True, admin=True)
        if booking.status not in (BookingStatus.COMPLETED, BookingStatus.CANCELLED):
            raise InvalidTransition(
                "security deposit can only be returned once the booking is over",
                current=booking.status.value,
                booking_id=booking.id,
            )
        if booking.security_deposit <= ZERO:
            raise ValidationError("booking has no security deposit", booking_id=booking.id)

        now = self.clock()
        with self.engine.begin() as conn:
            # Deposit already returned and refundable balance are read under the lock
            lock_booking(conn, booking.id, now)
            remaining = round2(booking.total_amount - refunded_total(conn, booking.id))
            returned = refunded_total(conn, booking.id, reason=RefundReason.SECURITY_DEPOSIT_ONLY)
            amount = min(round2(booking.security_deposit - returned), remaining)
            if amount <= ZERO:
                raise ValidationError("nothing left to refund", booking_id=booking.id)
            quote = refund_for_reason(
                RefundReason.SECURITY_DEPOSIT_ONLY,
                booking.total_amount,
                security_deposit=amount,
                policy=booking.cancellation_policy,
            )
            refund = issue_refund(conn, booking, quote, now, admin_notes=notes)

        self.dispatcher.send(
            booking.guest_id,
            notifications.REFUND_ISSUED,
            booking_id=booking.id,
            amount=str(quote.amount),
            reason=quote.reason.value,
        )
        return refund  # type: ignore[return-value]

    def admin_release_resource(
        self, actor: Actor, resource: ResourceRef, span: Span, reason: Optional[str] = None
    ) -> list[Booking]:
        """
        Free a span on a resource, cancelling whatever holds it.

        Open bookings are cancelled with a full refund; bookings still
        settling are cancelled without one (their settlement is reversed).
        Cells left without a live owner are released too.

        Returns:
            list[Booking]: The bookings that were cancelled

        Raises:
            Unauthorized: If the actor is not an admin
        """
        if actor.role != Role.ADMIN:
            raise Unauthorized("only admins can release resources", user_id=actor.user_id)

        now = self.clock()
        with self.engine.connect() as conn:
            owners = availability.owners_in_span(conn, resource, span)

        cancelled: list[Booking] = []
        for booking_id in sorted(owners):
            booking = self._load(booking_id)
            if booking.is_terminal:
                continue
            quote = refund_for_reason(
                RefundReason.HOST_CANCEL, booking.total_amount, policy=booking.cancellation_policy
            )
            settled = booking.status != BookingStatus.PROCESSING

            def after(conn: Connection, booking: Booking = booking, settled: bool = settled) -> None:
                availability.release_booking(conn, booking.id, now)
                if settled:
                    issue_refund(conn, booking, quote, now)

            cancelled.append(
                self._apply(
                    booking,
                    [BookingStatus.PROCESSING, *OPEN_STATUSES],
                    "admin_release",
                    now,
                    after=after,
                    status=BookingStatus.CANCELLED,
                    cancelled_by=actor.user_id,
                    cancelled_at=now,
                    cancellation_reason=reason or "admin_release",
                )
            )
            if settled:
                self.dispatcher.send(
                    booking.guest_id,
                    notifications.BOOKING_CANCELLED,
                    booking_id=booking.id,
                    cancelled_by=actor.user_id,
                    refund_amount=str(quote.amount),
                )

        with self.engine.begin() as conn:
            leftover = availability.release(conn, resource, span, now=now)

        logger.info(
            "resource_released",
            resource_kind=resource.kind.value,
            resource_id=resource.id,
            cancelled=len(cancelled),
            leftover_cells=leftover,
            admin_id=actor.user_id,
        )
        return cancelled

    # ------------------------------------------------------------------
    # System transitions (sweeper)
    # ------------------------------------------------------------------

    def reclaim_processing(self, booking: Booking, now: Optional[datetime] = None) -> bool:
        """
        Cancel a booking stuck in ``processing`` and release its hold.

        Returns:
            bool: False if the booking moved on before it could be reclaimed
        """
        now = now or self.clock()
        try:
            self._apply(
                booking,
                [BookingStatus.PROCESSING],
                "reclaim",
                now,
                after=lambda conn: availability.release_booking(conn, booking.id, now),
                status=BookingStatus.CANCELLED,
                payment_status=PaymentStatus.FAILED,
                cancelled_by=Actor.system().user_id,
                cancelled_at=now,
                cancellation_reason="payment_timeout",
            )
        except InvalidTransition:
            return False
        return True

    def expire_pending(self, booking: Booking, now: Optional[datetime] = None) -> bool:
        """
        Expire a booking the host never answered, refunding the guest in full.

        Returns:
            bool: False if the host acted before it could be expired
        """
        now = now or self.clock()
        quote = refund_for_reason(
            RefundReason.APPROVAL_TIMEOUT, booking.total_amount, policy=booking.cancellation_policy
        )

        def after(conn: Connection) -> None:
            availability.release_booking(conn, booking.id, now)
            issue_refund(conn, booking, quote, now)

        try:
            self._apply(
                booking,
                [BookingStatus.PENDING],
                "expire",
                now,
                after=after,
                status=BookingStatus.EXPIRED,
                cancelled_by=Actor.system().user_id,
                cancelled_at=now,
                cancellation_reason="approval_timeout",
            )
        except InvalidTransition:
            return False

        self.dispatcher.send(
            booking.guest_id,
            notifications.BOOKING_EXPIRED,
            booking_id=booking.id,
            refund_amount=str(quote.amount),
        )
        return True

    def complete_finished(self, booking: Booking, now: Optional[datetime] = None) -> bool:
        """
        Complete a confirmed booking whose stay has ended.

        Returns:
            bool: False if the stay has not ended or the booking moved on first
        """
        now = now or self.clock()
        if booking.status != BookingStatus.CONFIRMED or now < booking.ends_at:
            return False
        try:
            self._complete(booking, now)
        except InvalidTransition:
            return False
        return True

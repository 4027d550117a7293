"""
Dispatch orchestration: booking creation, vendor notification fan-out and
the race between vendors for a booking.

Every mutation runs in one `session.begin()` block with the booking row
locked; the `version` column catches writers that raced past the lock
(backends without row locks), and those losers are told precisely what
beat them.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from shared.database import utcnow

from . import events, state_machine
from .config import BOOKING_REQUEST_TIMEOUT_SECONDS, VENDOR_RESPONSE_TIMEOUT_SECONDS
from .db import SessionLocal
from .enums import (
    SEARCHABLE_STATUSES,
    ActorKind,
    BookingStatus,
    CandidateResponse,
    NotificationStatus,
    PaymentStatus,
)
from .errors import (
    BookingAlreadyAssigned,
    BookingExpired,
    BookingNotAvailable,
    Forbidden,
    PricingLocked,
    ValidationFailed,
    VendorAlreadyResponded,
    VendorNotEligible,
)
from .matching import EligibleVendor, VendorMatcher
from .models import AddOn, Booking, BookingCandidate, VendorNotification
from .notifications import Delivery, PushNotifier, booking_request_payload, fan_out
from .pricing import apply_add_ons, calculate_pricing, money
from .rabbitmq import publisher as default_publisher
from .repository import get_booking, get_service, get_vendor
from .schemas import (
    AddOnItem,
    CommissionSnapshot,
    CreateBookingRequest,
    MatchRequest,
    PricingPreviewRequest,
    PricingSnapshot,
)
from .settings import load_settings
from .settlement import SettlementEngine

logger = logging.getLogger(__name__)

TIME_SLOT_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)-([01]\d|2[0-3]):([0-5]\d)$")

# lifecycle steps an assigned vendor drives
VENDOR_PROGRESS_STATUSES = (
    BookingStatus.ACCEPTED.value,
    BookingStatus.CONFIRMED.value,
    BookingStatus.ON_ROUTE.value,
    BookingStatus.ARRIVED.value,
    BookingStatus.IN_PROGRESS.value,
    BookingStatus.COMPLETED.value,
)

ADD_ON_STATUSES = (BookingStatus.ARRIVED.value, BookingStatus.IN_PROGRESS.value)

CANCELLED_STATUS_BY_ACTOR = {
    ActorKind.USER.value: BookingStatus.CANCELLED_BY_USER,
    ActorKind.VENDOR.value: BookingStatus.CANCELLED_BY_VENDOR,
    ActorKind.ADMIN.value: BookingStatus.CANCELLED_BY_ADMIN,
    ActorKind.SYSTEM.value: BookingStatus.CANCELLED_BY_SYSTEM,
}

RACE_LOST_ERRORS = (BookingAlreadyAssigned, BookingExpired, BookingNotAvailable, VendorAlreadyResponded)


@dataclass(frozen=True)
class Actor:
    id: str | None
    kind: str

    @property
    def is_admin(self) -> bool:
        return self.kind == ActorKind.ADMIN.value


def validate_time_slot(time_slot: str) -> None:
    m = TIME_SLOT_RE.match(time_slot or "")
    if not m:
        raise ValidationFailed("time_slot must look like HH:MM-HH:MM", time_slot=time_slot)
    start = int(m.group(1)) * 60 + int(m.group(2))
    end = int(m.group(3)) * 60 + int(m.group(4))
    if end <= start:
        raise ValidationFailed("time_slot must end after it starts", time_slot=time_slot)


class DispatchService:
    def __init__(
        self,
        session_factory=SessionLocal,
        notifier=None,
        publisher=None,
        clock=utcnow,
        matcher: VendorMatcher | None = None,
        settlement: SettlementEngine | None = None,
        request_timeout_seconds: int = BOOKING_REQUEST_TIMEOUT_SECONDS,
        vendor_response_timeout_seconds: int = VENDOR_RESPONSE_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or PushNotifier()
        self.publisher = publisher or default_publisher
        self.clock = clock
        self.matcher = matcher or VendorMatcher()
        self.settlement = settlement or SettlementEngine()
        self.request_timeout_seconds = request_timeout_seconds
        self.vendor_response_timeout_seconds = vendor_response_timeout_seconds

    # ---------------- creation ----------------

    async def create_booking(self, request: CreateBookingRequest, requester: Actor) -> Booking:
        now = self.clock()
        validate_time_slot(request.time_slot)
        if request.date < now.date():
            raise ValidationFailed("Booking date cannot be in the past", date=str(request.date))
        if request.quantity < 1:
            raise ValidationFailed("quantity must be at least 1")

        booking_id = str(uuid.uuid4())

        async with self.session_factory() as session:
            async with session.begin():
                settings = await load_settings(session)
                service = await get_service(session, request.service_id)

                candidates = await self.matcher.find_eligible_vendors(
                    session,
                    request.service_id,
                    request.date,
                    request.time_slot,
                    request.latitude,
                    request.longitude,
                    settings,
                    now,
                )
                pricing = await calculate_pricing(
                    session,
                    service,
                    requester.id,
                    settings,
                    quantity=request.quantity,
                    coupon_code=request.coupon_code,
                )

                total_rate = service.commission_rate
                if total_rate is None:
                    total_rate = settings.commission_per_billing

                booking = Booking(
                    id=booking_id,
                    requester_id=requester.id,
                    service_id=service.id,
                    date=request.date,
                    time_slot=request.time_slot,
                    address_id=request.address_id,
                    latitude=request.latitude,
                    longitude=request.longitude,
                    notes=request.notes,
                    payment_status=PaymentStatus.UNPAID.value,
                    pricing=pricing,
                    add_ons=[],
                    commission=CommissionSnapshot(total_rate=Decimal(total_rate)),
                    search_radius_km=max(c.distance_km for c in candidates),
                    search_attempts=1,
                    request_timeout_seconds=self.request_timeout_seconds,
                    vendor_response_timeout_seconds=self.vendor_response_timeout_seconds,
                    search_timeout=now + timedelta(seconds=self.request_timeout_seconds),
                    created_at=now,
                    updated_at=now,
                )
                state_machine.start(booking, requester.id, requester.kind, "Booking created", now)

                for position, candidate in enumerate(candidates):
                    booking.candidates.append(
                        BookingCandidate(
                            booking_id=booking_id,
                            vendor_id=candidate.vendor_id,
                            position=position,
                            distance_km=candidate.distance_km,
                            notified_at=now,
                            response=CandidateResponse.PENDING.value,
                        )
                    )
                session.add(booking)
                service_title = service.title

        logger.info("booking %s created with %d candidate(s)", booking_id, len(candidates))
        await self._emit(
            events.BOOKING_CREATED,
            {
                "booking_id": booking_id,
                "requester_id": requester.id,
                "service_id": request.service_id,
                "date": request.date.isoformat(),
                "time_slot": request.time_slot,
                "candidate_ids": [c.vendor_id for c in candidates],
                "total_amount": pricing.total_amount,
            },
        )

        deliveries = await fan_out(
            self.notifier,
            candidates,
            lambda c: booking_request_payload(booking_id, service_title, c.distance_km, self.request_timeout_seconds),
        )
        return await self._record_deliveries(booking_id, deliveries)

    async def _record_deliveries(self, booking_id: str, deliveries: list[Delivery]) -> Booking:
        now = self.clock()
        delivered = [d for d in deliveries if d.delivered]
        for d in deliveries:
            if not d.delivered:
                logger.warning("booking %s: notification to vendor %s failed: %s", booking_id, d.vendor_id, d.error)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for d in deliveries:
                        session.add(
                            VendorNotification(
                                booking_id=booking_id,
                                vendor_id=d.vendor_id,
                                kind="new_booking_request",
                                status=NotificationStatus.DELIVERED.value if d.delivered else NotificationStatus.FAILED.value,
                                error=d.error,
                                sent_at=now,
                            )
                        )

                    booking = await get_booking(session, booking_id, for_update=bool(delivered))
                    if delivered and booking.status == BookingStatus.PENDING.value:
                        state_machine.transition(
                            booking,
                            BookingStatus.SEARCHING,
                            None,
                            ActorKind.SYSTEM,
                            f"Notified {len(delivered)} of {len(deliveries)} vendor(s)",
                            now,
                        )
        except StaleDataError:
            # a vendor accepted while the notifications were going out
            logger.info("booking %s moved on during fan-out; leaving status as is", booking_id)

        return await self.get_booking(booking_id)

    # ---------------- vendor race ----------------

    async def accept_booking(self, booking_id: str, vendor_id: str) -> Booking:
        now = self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    booking = await get_booking(session, booking_id, for_update=True)
                    vendor = await get_vendor(session, vendor_id)
                    settings = await load_settings(session)
                    result = await self.settlement.settle_acceptance(session, booking, vendor, settings, now)
        except RACE_LOST_ERRORS as e:
            logger.info("vendor %s lost booking %s: %s", vendor_id, booking_id, e.code)
            raise
        except StaleDataError:
            await self._raise_race_lost(booking_id, vendor_id)

        logger.info(
            "booking %s assigned to vendor %s (commission %s)",
            booking_id, vendor_id, result.commission_amount,
        )
        await self._emit(
            events.BOOKING_ASSIGNED,
            {
                "booking_id": booking_id,
                "vendor_id": vendor_id,
                "commission_amount": result.commission_amount,
                "reference_group": result.reference_group,
            },
        )
        return booking

    async def _raise_race_lost(self, booking_id: str, vendor_id: str):
        """Another writer changed the booking under us; explain what it did."""
        booking = await self.get_booking(booking_id)
        if booking.assigned_vendor_id is not None:
            error = BookingAlreadyAssigned(booking_id=booking_id)
        elif booking.status == BookingStatus.EXPIRED.value:
            error = BookingExpired(booking_id=booking_id)
        else:
            candidate = booking.candidate_for(vendor_id)
            if candidate is not None and candidate.response != CandidateResponse.PENDING.value:
                error = VendorAlreadyResponded(booking_id=booking_id, response=candidate.response)
            else:
                error = BookingNotAvailable(booking_id=booking_id, status=booking.status)
        logger.info("vendor %s lost booking %s: %s", vendor_id, booking_id, error.code)
        raise error

    async def decline_booking(self, booking_id: str, vendor_id: str) -> Booking:
        now = self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    booking = await get_booking(session, booking_id, for_update=True)
                    if booking.status not in SEARCHABLE_STATUSES:
                        raise BookingNotAvailable(booking_id=booking_id, status=booking.status)

                    candidate = booking.candidate_for(vendor_id)
                    if candidate is None:
                        raise VendorNotEligible(booking_id=booking_id, vendor_id=vendor_id)
                    if candidate.response != CandidateResponse.PENDING.value:
                        raise VendorAlreadyResponded(booking_id=booking_id, response=candidate.response)

                    candidate.response = CandidateResponse.REJECTED.value
                    candidate.responded_at = now
                    booking.updated_at = now

                    if all(c.response == CandidateResponse.REJECTED.value for c in booking.candidates):
                        state_machine.transition(
                            booking,
                            BookingStatus.REJECTED,
                            None,
                            ActorKind.SYSTEM,
                            "All notified vendors declined",
                            now,
                        )
                        booking.search_timeout = None
        except StaleDataError:
            await self._raise_race_lost(booking_id, vendor_id)

        if booking.status == BookingStatus.REJECTED.value:
            await self._emit_status(booking, None)
        return booking

    # ---------------- lifecycle ----------------

    async def advance_booking(self, booking_id: str, actor: Actor, status: str, reason: str | None = None) -> Booking:
        now = self.clock()
        target = getattr(status, "value", status)
        if target not in VENDOR_PROGRESS_STATUSES:
            raise ValidationFailed(f"Status {target} cannot be set directly", status=target)

        async with self.session_factory() as session:
            async with session.begin():
                booking = await get_booking(session, booking_id, for_update=True)
                if not actor.is_admin and booking.assigned_vendor_id != actor.id:
                    raise Forbidden(booking_id=booking_id)

                if target == BookingStatus.ARRIVED.value and booking.date > now.date():
                    raise ValidationFailed(
                        "Cannot mark arrived before the scheduled date",
                        scheduled_date=booking.date.isoformat(),
                    )

                state_machine.transition(booking, target, actor.id, actor.kind, reason, now)

        await self._emit_status(booking, actor)
        return booking

    async def cancel_booking(self, booking_id: str, actor: Actor, reason: str | None = None) -> Booking:
        now = self.clock()
        target = CANCELLED_STATUS_BY_ACTOR.get(actor.kind)
        if target is None:
            raise Forbidden(f"Actor kind {actor.kind} cannot cancel bookings")

        async with self.session_factory() as session:
            async with session.begin():
                booking = await get_booking(session, booking_id, for_update=True)
                if actor.kind == ActorKind.USER.value and booking.requester_id != actor.id:
                    raise Forbidden(booking_id=booking_id)
                if actor.kind == ActorKind.VENDOR.value and booking.assigned_vendor_id != actor.id:
                    raise Forbidden(booking_id=booking_id)

                state_machine.transition(booking, target, actor.id, actor.kind, reason, now)
                booking.search_timeout = None

        logger.info("booking %s cancelled by %s %s", booking_id, actor.kind, actor.id)
        await self._emit_status(booking, actor)
        return booking

    async def add_add_ons(self, booking_id: str, vendor_id: str, items: list[AddOnItem]) -> Booking:
        if not items:
            raise ValidationFailed("At least one add-on is required")
        if any(item.quantity < 1 for item in items):
            raise ValidationFailed("Add-on quantity must be at least 1")

        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                booking = await get_booking(session, booking_id, for_update=True)
                if booking.assigned_vendor_id != vendor_id:
                    raise Forbidden(booking_id=booking_id)
                if booking.payment_status != PaymentStatus.UNPAID.value:
                    raise PricingLocked(booking_id=booking_id)
                if booking.status not in ADD_ON_STATUSES:
                    raise ValidationFailed(
                        "Add-ons can only be added while the vendor is on site",
                        status=booking.status,
                    )

                ids = {item.add_on_id for item in items}
                res = await session.execute(select(AddOn).where(AddOn.id.in_(ids), AddOn.is_active.is_(True)))
                catalogue = {a.id: a for a in res.scalars().all()}

                lines = list(booking.add_ons or [])
                for item in items:
                    add_on = catalogue.get(item.add_on_id)
                    if add_on is None or booking.service_id not in (add_on.service_ids or []):
                        raise ValidationFailed("Unknown add-on for this service", add_on_id=item.add_on_id)
                    price = money(add_on.price)
                    lines.append(
                        {
                            "add_on_id": add_on.id,
                            "name": add_on.name,
                            "price": str(price),
                            "quantity": item.quantity,
                            "total": str(money(price * item.quantity)),
                            "notes": item.notes,
                            "added_at": now.isoformat(),
                        }
                    )

                settings = await load_settings(session)
                add_ons_total = sum((Decimal(line["total"]) for line in lines), Decimal("0"))
                booking.add_ons = lines
                booking.pricing = apply_add_ons(booking.pricing, add_ons_total, settings)
                booking.updated_at = now

        logger.info("booking %s add-ons updated; total now %s", booking_id, booking.pricing.total_amount)
        return booking

    # ---------------- read-only ----------------

    async def get_booking(self, booking_id: str) -> Booking:
        async with self.session_factory() as session:
            return await get_booking(session, booking_id)

    async def preview_eligible_vendors(self, request: MatchRequest) -> list[EligibleVendor]:
        validate_time_slot(request.time_slot)
        async with self.session_factory() as session:
            settings = await load_settings(session)
            await get_service(session, request.service_id)
            return await self.matcher.find_eligible_vendors(
                session,
                request.service_id,
                request.date,
                request.time_slot,
                request.latitude,
                request.longitude,
                settings,
                self.clock(),
            )

    async def preview_pricing(self, request: PricingPreviewRequest, requester: Actor) -> PricingSnapshot:
        if request.quantity < 1:
            raise ValidationFailed("quantity must be at least 1")
        async with self.session_factory() as session:
            settings = await load_settings(session)
            service = await get_service(session, request.service_id)
            return await calculate_pricing(
                session,
                service,
                requester.id,
                settings,
                quantity=request.quantity,
                coupon_code=request.coupon_code,
            )

    # ---------------- events ----------------

    async def _emit_status(self, booking: Booking, actor: Actor | None):
        await self._emit(
            events.BOOKING_STATUS_CHANGED,
            {
                "booking_id": booking.id,
                "status": booking.status,
                "actor_id": actor.id if actor else None,
                "actor_kind": actor.kind if actor else ActorKind.SYSTEM.value,
            },
        )

    async def _emit(self, event_type: str, data: dict):
        try:
            await self.publisher.emit(event_type, data)
        except Exception as e:
            logger.error("failed to publish %s: %s", event_type, e)

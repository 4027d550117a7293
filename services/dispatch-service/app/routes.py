import logging
from typing import List

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.idempotency import is_processed, mark_processed

from .db import SessionLocal
from .dispatch import Actor, DispatchService
from .enums import PartyKind
from .errors import Forbidden
from .expiry_worker import publish_expired, suspend_stale_vendors, sweep_expirations
from .models import Transaction
from .payments import PaymentService
from .rbac import actor_for
from .repository import get_booking as load_booking
from .repository import get_wallet as load_wallet
from .schemas import (
    AddOnsRequest,
    CancelBookingRequest,
    CreateBookingRequest,
    MatchRequest,
    PaymentRequest,
    PricingPreviewRequest,
    StatusUpdateRequest,
    TopUpRequest,
)
from .security import get_current_user
from .views import (
    BookingView,
    EligibleVendorView,
    format_booking,
    format_candidates,
    format_transaction,
    format_wallet,
)

logger = logging.getLogger(__name__)

router = APIRouter()

_dispatch_service: DispatchService | None = None
_payment_service: PaymentService | None = None


def get_session_factory():
    return SessionLocal


async def get_db(session_factory=Depends(get_session_factory)):
    async with session_factory() as session:
        yield session


def get_dispatch_service() -> DispatchService:
    global _dispatch_service
    if _dispatch_service is None:
        _dispatch_service = DispatchService()
    return _dispatch_service


def get_payment_service() -> PaymentService:
    global _payment_service
    if _payment_service is None:
        _payment_service = PaymentService()
    return _payment_service


def _audience(actor: Actor) -> str:
    return "requester" if actor.kind == "user" else actor.kind


# ================= BOOKINGS =================

@router.post("/bookings", response_model=BookingView, status_code=201, tags=["Bookings"])
async def create_booking(
    data: CreateBookingRequest,
    user=Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service),
):
    actor = actor_for(user, ["user"])
    booking = await service.create_booking(data, actor)
    return format_booking(booking, "requester")


@router.get("/bookings/{booking_id}", response_model=BookingView, tags=["Bookings"])
async def get_booking(booking_id: str, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    actor = actor_for(user, ["user", "vendor", "admin"])
    booking = await load_booking(db, booking_id)

    if actor.kind == "user" and booking.requester_id != actor.id:
        raise Forbidden(booking_id=booking_id)
    if actor.kind == "vendor" and booking.assigned_vendor_id != actor.id and booking.candidate_for(actor.id) is None:
        raise Forbidden(booking_id=booking_id)

    return format_booking(booking, _audience(actor))


@router.post("/bookings/{booking_id}/accept", response_model=BookingView, tags=["Bookings"])
async def accept_booking(
    booking_id: str,
    user=Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service),
):
    actor = actor_for(user, ["vendor"])
    booking = await service.accept_booking(booking_id, actor.id)
    return format_booking(booking, "vendor")


@router.post("/bookings/{booking_id}/decline", response_model=BookingView, tags=["Bookings"])
async def decline_booking(
    booking_id: str,
    user=Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service),
):
    actor = actor_for(user, ["vendor"])
    booking = await service.decline_booking(booking_id, actor.id)
    return format_booking(booking, "vendor")


@router.post("/bookings/{booking_id}/status", response_model=BookingView, tags=["Bookings"])
async def update_status(
    booking_id: str,
    data: StatusUpdateRequest,
    user=Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service),
):
    actor = actor_for(user, ["vendor", "admin"])
    booking = await service.advance_booking(booking_id, actor, data.status, data.reason)
    return format_booking(booking, _audience(actor))


@router.post("/bookings/{booking_id}/cancel", response_model=BookingView, tags=["Bookings"])
async def cancel_booking(
    booking_id: str,
    data: CancelBookingRequest,
    user=Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service),
):
    actor = actor_for(user, ["user", "vendor", "admin"])
    booking = await service.cancel_booking(booking_id, actor, data.reason)
    return format_booking(booking, _audience(actor))


@router.post("/bookings/{booking_id}/add-ons", response_model=BookingView, tags=["Bookings"])
async def add_add_ons(
    booking_id: str,
    data: AddOnsRequest,
    user=Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service),
):
    actor = actor_for(user, ["vendor"])
    booking = await service.add_add_ons(booking_id, actor.id, data.items)
    return format_booking(booking, "vendor")


@router.post("/bookings/{booking_id}/payments", tags=["Payments"])
async def pay_booking(
    booking_id: str,
    data: PaymentRequest,
    user=Depends(get_current_user),
    payments: PaymentService = Depends(get_payment_service),
):
    actor = actor_for(user, ["user", "vendor", "admin"])
    result = await payments.initiate_payment(booking_id, actor, data.method)

    body = {
        "status": result["status"],
        "booking": format_booking(result["booking"], _audience(actor)),
    }
    if "order_ref" in result:
        body["order_ref"] = result["order_ref"]
        body["amount"] = str(result["amount"])
    return body


# ================= MATCHING / PRICING =================

@router.post("/match", response_model=List[EligibleVendorView], tags=["Match"])
async def match(
    data: MatchRequest,
    user=Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service),
):
    actor_for(user, ["user", "admin"])
    candidates = await service.preview_eligible_vendors(data)
    return format_candidates(candidates)


@router.post("/pricing/preview", tags=["Match"])
async def pricing_preview(
    data: PricingPreviewRequest,
    user=Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service),
):
    actor = actor_for(user, ["user", "admin"])
    return await service.preview_pricing(data, actor)


# ================= PAYMENTS =================

@router.post("/payments/webhook", tags=["Payments"])
async def payment_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
    payments: PaymentService = Depends(get_payment_service),
):
    raw_body = await request.body()

    if x_razorpay_event_id and await _seen(x_razorpay_event_id):
        return {"status": "already_processed", "event_id": x_razorpay_event_id}

    result = await payments.handle_webhook(raw_body, x_razorpay_signature, event_id=x_razorpay_event_id)

    if result.get("status") in ("settled", "already_processed") and result.get("event_id"):
        await _remember(result["event_id"])
    return result


async def _seen(event_id: str) -> bool:
    # fast path only; the processed_events table decides
    try:
        return await is_processed(event_id)
    except Exception as e:
        logger.warning("idempotency cache unavailable: %s", e)
        return False


async def _remember(event_id: str) -> None:
    try:
        await mark_processed(event_id)
    except Exception as e:
        logger.warning("idempotency cache unavailable: %s", e)


# ================= WALLETS =================

@router.get("/wallets/{party_kind}/{party_id}", tags=["Wallets"])
async def get_wallet(party_kind: PartyKind, party_id: str, user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    actor = actor_for(user, ["vendor", "admin"])
    if not actor.is_admin and (party_kind != PartyKind.VENDOR or party_id != actor.id):
        raise Forbidden("Not allowed to view this wallet")

    wallet = await load_wallet(db, party_id, party_kind.value)
    res = await db.execute(select(Transaction).where(Transaction.id.in_(wallet.recent_transaction_ids or [])))
    by_id = {t.id: t for t in res.scalars().all()}
    recent = [format_transaction(by_id[i]) for i in wallet.recent_transaction_ids or [] if i in by_id]

    return {"wallet": format_wallet(wallet), "recent_transactions": recent}


@router.post("/wallets/{vendor_id}/top-up", tags=["Wallets"])
async def top_up_wallet(
    vendor_id: str,
    data: TopUpRequest,
    user=Depends(get_current_user),
    payments: PaymentService = Depends(get_payment_service),
):
    actor = actor_for(user, ["vendor", "admin"])
    if not actor.is_admin and vendor_id != actor.id:
        raise Forbidden("Not allowed to top up this wallet")

    result = await payments.top_up_wallet(vendor_id, data.amount, data.reference)
    return {
        "wallet": format_wallet(result["wallet"]),
        "transaction": format_transaction(result["transaction"]),
        "recovered_reference_groups": result["recovered"],
    }


# ================= SYSTEM =================

@router.post("/system/expirations/sweep", tags=["System"])
async def run_sweep(user=Depends(get_current_user), session_factory=Depends(get_session_factory)):
    actor_for(user, ["admin"])
    expired = await sweep_expirations(session_factory)
    await publish_expired(expired)
    blocked = await suspend_stale_vendors(session_factory)
    return {"expired": expired, "blocked_vendors": blocked}

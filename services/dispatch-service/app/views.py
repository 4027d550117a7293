from datetime import date, datetime
from decimal import Decimal
from typing import List

from pydantic import BaseModel

from .matching import EligibleVendor
from .models import Booking, Transaction, Wallet
from .schemas import CommissionSnapshot, PricingSnapshot
from .settlement import payment_breakdown

AUDIENCES = ("requester", "vendor", "admin")

STATUS_MESSAGES = {
    "pending": "Looking for vendors near you",
    "searching": "Vendors have been notified",
    "vendor_assigned": "A vendor has been assigned to your booking",
    "accepted": "Your booking has been accepted by the vendor",
    "confirmed": "Your booking is confirmed",
    "on_route": "The vendor is on the way",
    "arrived": "The vendor has arrived",
    "in_progress": "Service is now in progress",
    "completed": "Service completed successfully",
    "cancelled_by_user": "Booking cancelled by you",
    "cancelled_by_vendor": "Booking cancelled by vendor",
    "cancelled_by_system": "Booking cancelled by system",
    "cancelled_by_admin": "Booking cancelled by support",
    "rejected": "Vendor rejected the booking",
    "failed": "Service failed",
    "expired": "Booking expired",
}


class StatusEntryView(BaseModel):
    status: str
    actor_id: str | None = None
    actor_kind: str
    reason: str | None = None
    created_at: datetime


class CandidateView(BaseModel):
    vendor_id: str
    distance_km: float
    response: str
    notified_at: datetime
    responded_at: datetime | None = None


class BookingView(BaseModel):
    id: str
    service_id: str
    date: date
    time_slot: str
    status: str
    status_message: str
    payment_status: str
    payment_method: str | None = None
    pricing: PricingSnapshot
    add_ons: list = []
    notes: str | None = None
    assigned_vendor_id: str | None = None
    assigned_distance_km: float | None = None
    search_timeout: datetime | None = None
    actual_start: datetime | None = None
    actual_end: datetime | None = None
    duration_minutes: int | None = None
    created_at: datetime
    updated_at: datetime

    # vendor and admin
    requester_id: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    commission: CommissionSnapshot | None = None
    vendor_earning: Decimal | None = None

    # admin only
    status_history: List[StatusEntryView] | None = None
    candidates: List[CandidateView] | None = None
    version: int | None = None


class EligibleVendorView(BaseModel):
    vendor_id: str
    distance_km: float


class TransactionView(BaseModel):
    id: str
    reference_group: str | None = None
    booking_id: str | None = None
    amount: Decimal
    currency: str
    direction: str
    status: str
    purpose: str
    balance_before: Decimal | None = None
    balance_after: Decimal | None = None
    description: str | None = None
    created_at: datetime


class WalletView(BaseModel):
    id: str
    party_id: str
    party_kind: str
    balance: Decimal
    pending_balance: Decimal
    available_balance: Decimal
    pending_since: datetime | None = None
    currency: str
    status: str
    recent_transaction_ids: List[str] = []


def format_booking(booking: Booking, audience: str) -> BookingView:
    """
    One projection of a booking per audience: requesters never see commission
    or candidate data, vendors see what they will earn, admins see everything.
    """
    if audience not in AUDIENCES:
        raise ValueError(f"unknown audience: {audience}")

    view = BookingView(
        id=booking.id,
        service_id=booking.service_id,
        date=booking.date,
        time_slot=booking.time_slot,
        status=booking.status,
        status_message=STATUS_MESSAGES.get(booking.status, f"Booking status updated to {booking.status}"),
        payment_status=booking.payment_status,
        payment_method=booking.payment_method,
        pricing=booking.pricing,
        add_ons=list(booking.add_ons or []),
        notes=booking.notes,
        assigned_vendor_id=booking.assigned_vendor_id,
        assigned_distance_km=booking.assigned_distance_km,
        search_timeout=booking.search_timeout,
        actual_start=booking.actual_start,
        actual_end=booking.actual_end,
        duration_minutes=booking.duration_minutes,
        created_at=booking.created_at,
        updated_at=booking.updated_at,
    )
    if audience == "requester":
        return view

    breakdown = payment_breakdown(booking.pricing, booking.commission)
    view = view.model_copy(
        update={
            "requester_id": booking.requester_id,
            "latitude": booking.latitude,
            "longitude": booking.longitude,
            "commission": booking.commission,
            "vendor_earning": breakdown.total_amount
            - booking.commission.booking_amount
            - breakdown.commission_amount,
        }
    )
    if audience == "vendor":
        return view

    return view.model_copy(
        update={
            "status_history": [
                StatusEntryView(
                    status=h.status,
                    actor_id=h.actor_id,
                    actor_kind=h.actor_kind,
                    reason=h.reason,
                    created_at=h.created_at,
                )
                for h in booking.status_history
            ],
            "candidates": [
                CandidateView(
                    vendor_id=c.vendor_id,
                    distance_km=c.distance_km,
                    response=c.response,
                    notified_at=c.notified_at,
                    responded_at=c.responded_at,
                )
                for c in booking.candidates
            ],
            "version": booking.version,
        }
    )


def format_candidates(candidates: list[EligibleVendor]) -> list[EligibleVendorView]:
    return [EligibleVendorView(vendor_id=c.vendor_id, distance_km=c.distance_km) for c in candidates]


def format_transaction(txn: Transaction) -> TransactionView:
    return TransactionView(
        id=txn.id,
        reference_group=txn.reference_group,
        booking_id=txn.booking_id,
        amount=txn.amount,
        currency=txn.currency,
        direction=txn.direction,
        status=txn.status,
        purpose=txn.purpose,
        balance_before=txn.balance_before,
        balance_after=txn.balance_after,
        description=txn.description,
        created_at=txn.created_at,
    )


def format_wallet(wallet: Wallet) -> WalletView:
    balance = Decimal(wallet.balance or 0)
    pending = Decimal(wallet.pending_balance or 0)
    return WalletView(
        id=wallet.id,
        party_id=wallet.party_id,
        party_kind=wallet.party_kind,
        balance=balance,
        pending_balance=pending,
        available_balance=balance - pending,
        pending_since=wallet.pending_since,
        currency=wallet.currency,
        status=wallet.status,
        recent_transaction_ids=list(wallet.recent_transaction_ids or []),
    )

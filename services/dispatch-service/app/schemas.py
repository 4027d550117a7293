from datetime import date, datetime
from decimal import Decimal
from typing import List

from pydantic import BaseModel, ConfigDict, Field

from .enums import BookingStatus, CommissionStatus, PaymentMethod


# ---- Embedded booking snapshots (stored as JSON, replaced wholesale) ----

class PricingSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_price: Decimal
    quantity: int = 1
    subtotal: Decimal
    coupon_code: str | None = None
    coupon_discount: Decimal = Decimal("0")
    membership_discount: Decimal = Decimal("0")
    final_price: Decimal
    add_ons_total: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    platform_fee: Decimal = Decimal("0")
    total_amount: Decimal


class CommissionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_rate: Decimal = Decimal("0")
    booking_rate: Decimal = Decimal("0")
    booking_amount: Decimal = Decimal("0")
    billing_rate: Decimal = Decimal("0")
    billing_amount: Decimal = Decimal("0")
    add_ons_rate: Decimal = Decimal("0")
    add_ons_amount: Decimal = Decimal("0")
    status: CommissionStatus = CommissionStatus.PENDING
    reference_groups: tuple[str, ...] = ()
    transaction_ids: tuple[str, ...] = ()
    deducted_at: datetime | None = None
    settled_at: datetime | None = None


# ---- Requests ----

class CreateBookingRequest(BaseModel):
    service_id: str
    date: date
    time_slot: str
    latitude: float
    longitude: float
    address_id: str | None = None
    quantity: int = 1
    coupon_code: str | None = None
    notes: str | None = Field(default=None, max_length=500)


class MatchRequest(BaseModel):
    service_id: str
    date: date
    time_slot: str
    latitude: float
    longitude: float


class PricingPreviewRequest(BaseModel):
    service_id: str
    quantity: int = 1
    coupon_code: str | None = None


class StatusUpdateRequest(BaseModel):
    status: BookingStatus
    reason: str | None = None


class CancelBookingRequest(BaseModel):
    reason: str | None = None


class AddOnItem(BaseModel):
    add_on_id: str
    quantity: int = 1
    notes: str | None = None


class AddOnsRequest(BaseModel):
    items: List[AddOnItem]


class PaymentRequest(BaseModel):
    method: PaymentMethod


class TopUpRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reference: str | None = None

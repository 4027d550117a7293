from sqlalchemy import (
    Boolean,
    Column,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from shared.database import Snapshot, UTCDateTime

from .db import Base
from .enums import ENGAGED_STATUSES
from .schemas import CommissionSnapshot, PricingSnapshot

Money = Numeric(12, 2)

_ENGAGED_SQL = "status IN ({})".format(", ".join(f"'{s}'" for s in ENGAGED_STATUSES))


# ---- Reference data ----

class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)

    is_online = Column(Boolean, nullable=False, default=False)
    is_available = Column(Boolean, nullable=False, default=True)
    is_blocked = Column(Boolean, nullable=False, default=False)
    block_reason = Column(String, nullable=True)

    service_ids = Column(JSON, nullable=False, default=list)
    service_radius_km = Column(Float, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    push_token = Column(String, nullable=True)
    push_platform = Column(String, nullable=True)  # android/ios


class Service(Base):
    __tablename__ = "services"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    base_price = Column(Money, nullable=False)
    commission_rate = Column(Numeric(5, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class AddOn(Base):
    __tablename__ = "add_ons"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Money, nullable=False)
    service_ids = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)


class Coupon(Base):
    __tablename__ = "coupons"

    code = Column(String, primary_key=True)
    discount_type = Column(String, nullable=False)  # percentage/flat
    discount_value = Column(Money, nullable=False)
    max_discount = Column(Money, nullable=True)
    min_purchase = Column(Money, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)


class Membership(Base):
    __tablename__ = "memberships"

    id = Column(Integer, primary_key=True)
    member_id = Column(String, unique=True, nullable=False, index=True)
    status = Column(String, nullable=False)  # ACTIVE/EXPIRED/CANCELLED/PENDING
    usage_remaining = Column(Money, nullable=False, default=0)


class PlatformSettings(Base):
    __tablename__ = "platform_settings"

    id = Column(Integer, primary_key=True)
    commission_per_service_booking = Column(Numeric(5, 2), nullable=False, default=0)
    commission_per_billing = Column(Numeric(5, 2), nullable=False, default=0)
    platform_fee = Column(Money, nullable=False, default=0)
    service_tax_rate = Column(Numeric(5, 2), nullable=False, default=0)
    membership_discount_rate = Column(Numeric(5, 2), nullable=False, default=0)
    minimum_wallet_balance = Column(Money, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")


# ---- Booking aggregate ----

class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True)
    requester_id = Column(String, nullable=False, index=True)
    service_id = Column(String, ForeignKey("services.id"), nullable=False, index=True)

    date = Column(Date, nullable=False)
    time_slot = Column(String, nullable=False)

    address_id = Column(String, nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    notes = Column(String, nullable=True)

    status = Column(String, nullable=False, index=True)
    payment_status = Column(String, nullable=False, default="unpaid", index=True)
    payment_method = Column(String, nullable=True)
    paid_at = Column(UTCDateTime, nullable=True)

    pricing = Column(Snapshot(PricingSnapshot), nullable=False)
    add_ons = Column(JSON, nullable=False, default=list)
    commission = Column(Snapshot(CommissionSnapshot), nullable=False)

    # vendor search
    search_radius_km = Column(Float, nullable=True)
    search_attempts = Column(Integer, nullable=False, default=1)
    assigned_vendor_id = Column(String, ForeignKey("vendors.id"), nullable=True, index=True)
    assigned_at = Column(UTCDateTime, nullable=True)
    assigned_distance_km = Column(Float, nullable=True)

    # timing
    request_timeout_seconds = Column(Integer, nullable=False)
    vendor_response_timeout_seconds = Column(Integer, nullable=False)
    search_timeout = Column(UTCDateTime, nullable=True, index=True)
    actual_start = Column(UTCDateTime, nullable=True)
    actual_end = Column(UTCDateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=True)

    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)

    version = Column(Integer, nullable=False)

    status_history = relationship(
        "BookingStatusHistory",
        order_by="BookingStatusHistory.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    candidates = relationship(
        "BookingCandidate",
        order_by="BookingCandidate.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_bookings_vendor_slot_engaged",
            "assigned_vendor_id",
            "date",
            "time_slot",
            unique=True,
            postgresql_where=text(_ENGAGED_SQL),
            sqlite_where=text(_ENGAGED_SQL),
        ),
    )

    def candidate_for(self, vendor_id: str):
        for candidate in self.candidates:
            if candidate.vendor_id == vendor_id:
                return candidate
        return None


class BookingStatusHistory(Base):
    __tablename__ = "booking_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, index=True)
    status = Column(String, nullable=False)
    actor_id = Column(String, nullable=True)
    actor_kind = Column(String, nullable=False)  # user/vendor/admin/system
    reason = Column(String, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)


class BookingCandidate(Base):
    __tablename__ = "booking_candidates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, index=True)
    vendor_id = Column(String, ForeignKey("vendors.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    distance_km = Column(Float, nullable=False)
    notified_at = Column(UTCDateTime, nullable=False)
    response = Column(String, nullable=False, default="pending")
    responded_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (UniqueConstraint("booking_id", "vendor_id", name="uq_candidate_booking_vendor"),)


class VendorNotification(Base):
    __tablename__ = "vendor_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, index=True)
    vendor_id = Column(String, ForeignKey("vendors.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)  # new_booking_request/...
    status = Column(String, nullable=False)  # delivered/failed
    error = Column(String, nullable=True)
    sent_at = Column(UTCDateTime, nullable=False)


# ---- Ledger ----

class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(String, primary_key=True)
    party_id = Column(String, nullable=False)
    party_kind = Column(String, nullable=False)  # vendor/platform

    balance = Column(Money, nullable=False, default=0)
    pending_balance = Column(Money, nullable=False, default=0)
    pending_since = Column(UTCDateTime, nullable=True)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String, nullable=False, default="active", index=True)

    recent_transaction_ids = Column(JSON, nullable=False, default=list)

    __table_args__ = (UniqueConstraint("party_id", "party_kind", name="uq_wallet_party"),)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True)
    reference_group = Column(String, nullable=True, index=True)
    reference_id = Column(String, unique=True, nullable=False)
    parent_transaction_id = Column(String, ForeignKey("transactions.id"), nullable=True)

    party_id = Column(String, nullable=False, index=True)
    party_kind = Column(String, nullable=False)
    wallet_id = Column(String, ForeignKey("wallets.id"), nullable=True, index=True)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=True, index=True)

    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False)
    direction = Column(String, nullable=False)  # debit/credit/liability
    status = Column(String, nullable=False, index=True)
    purpose = Column(String, nullable=False)
    payment_method = Column(String, nullable=True)
    gateway_order_ref = Column(String, nullable=True, index=True)

    balance_before = Column(Money, nullable=True)
    balance_after = Column(Money, nullable=True)
    description = Column(String, nullable=True)

    status_history = Column(JSON, nullable=False, default=list)
    created_at = Column(UTCDateTime, nullable=False)


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    booking_id = Column(String, nullable=True)
    processed_at = Column(UTCDateTime, nullable=False)

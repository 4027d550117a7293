"""
Commission settlement.

Commission is collected in two phases: a booking share when a vendor accepts
and the remainder (plus a share of any add-ons) when the customer pays.
Acceptance is refused when the vendor cannot cover its share; payment never
is, the shortfall becomes a liability on the vendor's wallet instead.

Lock order for every path here: booking row (taken by the caller), vendor
wallet, platform wallet.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import violates_unique

from . import ledger, state_machine
from .enums import (
    SEARCHABLE_STATUSES,
    ActorKind,
    BookingStatus,
    CandidateResponse,
    CommissionStatus,
    PartyKind,
    PaymentStatus,
    TxnPurpose,
    WalletStatus,
)
from .errors import (
    BookingAlreadyAssigned,
    BookingExpired,
    BookingNotAvailable,
    InsufficientBalance,
    PaymentAlreadyProcessed,
    PaymentNotAllowed,
    VendorAlreadyResponded,
    VendorNotEligible,
    VendorSlotConflict,
    WalletInactive,
)
from .matching import engaged_vendor_ids
from .models import Booking, Transaction, Vendor, Wallet
from .pricing import ZERO, load_membership, money, percent_of
from .repository import get_platform_wallet, get_wallet
from .schemas import CommissionSnapshot, PricingSnapshot
from .settings import SettingsSnapshot

logger = logging.getLogger(__name__)

PENDING_BALANCE_BLOCK_REASON = "PENDING_WALLET_BALANCE"
ENGAGED_SLOT_INDEX = "uq_bookings_vendor_slot_engaged"


@dataclass(frozen=True)
class PaymentBreakdown:
    total_amount: Decimal
    total_rate: Decimal
    billing_rate: Decimal
    billing_amount: Decimal
    add_ons_rate: Decimal
    add_ons_amount: Decimal
    commission_amount: Decimal
    vendor_earning: Decimal


@dataclass(frozen=True)
class SettlementResult:
    commission_amount: Decimal
    reference_group: str | None
    liability: bool = False


def payment_breakdown(pricing: PricingSnapshot, commission: CommissionSnapshot) -> PaymentBreakdown:
    total = money(pricing.total_amount)
    add_ons_total = money(pricing.add_ons_total)
    total_rate = Decimal(commission.total_rate)

    # the acceptance share already taken is not charged twice
    billing_rate = max(ZERO, total_rate - Decimal(commission.booking_rate))
    billing_amount = percent_of(max(ZERO, total - add_ons_total), billing_rate)
    add_ons_amount = percent_of(add_ons_total, total_rate)
    commission_amount = billing_amount + add_ons_amount

    return PaymentBreakdown(
        total_amount=total,
        total_rate=total_rate,
        billing_rate=billing_rate,
        billing_amount=billing_amount,
        add_ons_rate=total_rate,
        add_ons_amount=add_ons_amount,
        commission_amount=commission_amount,
        vendor_earning=total - commission_amount,
    )


class SettlementEngine:

    async def settle_acceptance(
        self,
        session: AsyncSession,
        booking: Booking,
        vendor: Vendor,
        settings: SettingsSnapshot,
        now: datetime,
    ) -> SettlementResult:
        """
        Close the matching race for `vendor`. The caller holds the booking row
        lock; every check below reads the locked row.
        """
        if booking.assigned_vendor_id is not None:
            raise BookingAlreadyAssigned(booking_id=booking.id)

        if booking.status == BookingStatus.EXPIRED.value or (
            booking.search_timeout is not None and now > booking.search_timeout
        ):
            raise BookingExpired(booking_id=booking.id)

        if booking.status not in SEARCHABLE_STATUSES:
            raise BookingNotAvailable(booking_id=booking.id, status=booking.status)

        candidate = booking.candidate_for(vendor.id)
        if candidate is None:
            raise VendorNotEligible(booking_id=booking.id, vendor_id=vendor.id)

        if candidate.response != CandidateResponse.PENDING.value:
            raise VendorAlreadyResponded(booking_id=booking.id, response=candidate.response)

        engaged = await engaged_vendor_ids(session, booking.date, booking.time_slot, exclude_booking_id=booking.id)
        if vendor.id in engaged:
            raise VendorSlotConflict(booking_id=booking.id, vendor_id=vendor.id)

        vendor_wallet = await get_wallet(session, vendor.id, PartyKind.VENDOR.value, for_update=True)
        if vendor_wallet.status != WalletStatus.ACTIVE.value:
            raise WalletInactive(wallet_id=vendor_wallet.id, status=vendor_wallet.status)

        rate = settings.commission_per_service_booking
        commission_amount = percent_of(booking.pricing.total_amount, rate)
        if money(vendor_wallet.balance or 0) < commission_amount:
            raise InsufficientBalance(
                wallet_id=vendor_wallet.id,
                balance=str(money(vendor_wallet.balance or 0)),
                required=str(commission_amount),
            )

        platform_wallet = await get_platform_wallet(session, settings.currency)

        group = None
        txn_ids: tuple[str, ...] = ()
        if commission_amount > 0:
            group, vendor_txn, platform_txn = ledger.transfer_commission(
                session,
                vendor_wallet,
                platform_wallet,
                commission_amount,
                TxnPurpose.BOOKING_COMMISSION.value,
                now,
                booking_id=booking.id,
                description=f"Booking commission for {booking.id}",
            )
            txn_ids = (vendor_txn.id, platform_txn.id)

        candidate.response = CandidateResponse.ACCEPTED.value
        candidate.responded_at = now

        booking.assigned_vendor_id = vendor.id
        booking.assigned_at = now
        booking.assigned_distance_km = candidate.distance_km
        booking.search_timeout = None

        snapshot = booking.commission
        booking.commission = snapshot.model_copy(
            update={
                "booking_rate": rate,
                "booking_amount": commission_amount,
                "status": CommissionStatus.PROCESSING,
                "reference_groups": snapshot.reference_groups + ((group,) if group else ()),
                "transaction_ids": snapshot.transaction_ids + txn_ids,
                "deducted_at": now,
            }
        )

        await self._consume_membership(session, booking)

        state_machine.transition(
            booking,
            BookingStatus.VENDOR_ASSIGNED,
            vendor.id,
            ActorKind.VENDOR,
            "Vendor accepted booking",
            now,
        )

        # a concurrent acceptance for the same vendor and slot trips the engaged-slot index
        try:
            async with session.begin_nested():
                await session.flush()
        except IntegrityError as e:
            if not violates_unique(e, ENGAGED_SLOT_INDEX, "bookings.assigned_vendor_id, bookings.date, bookings.time_slot"):
                raise
            logger.info("vendor %s already engaged in the slot of booking %s", vendor.id, booking.id)
            raise VendorSlotConflict(booking_id=booking.id, vendor_id=vendor.id)

        return SettlementResult(commission_amount=commission_amount, reference_group=group)

    async def settle_payment(
        self,
        session: AsyncSession,
        booking: Booking,
        method: str,
        settings: SettingsSnapshot,
        now: datetime,
    ) -> SettlementResult:
        method = getattr(method, "value", method)

        if booking.payment_status == PaymentStatus.PAID.value:
            raise PaymentAlreadyProcessed(booking_id=booking.id)
        if booking.status != BookingStatus.COMPLETED.value:
            raise PaymentNotAllowed(
                "Payment is only accepted for completed bookings",
                booking_id=booking.id,
                status=booking.status,
            )

        breakdown = payment_breakdown(booking.pricing, booking.commission)
        amount = breakdown.commission_amount

        vendor_wallet = await get_wallet(session, booking.assigned_vendor_id, PartyKind.VENDOR.value, for_update=True)
        platform_wallet = await get_platform_wallet(session, settings.currency)

        group = None
        txn_ids: tuple[str, ...] = ()
        liability = False
        if amount > 0:
            description = f"Billing commission for {booking.id}"
            if money(vendor_wallet.balance or 0) >= amount:
                group, vendor_txn, platform_txn = ledger.transfer_commission(
                    session,
                    vendor_wallet,
                    platform_wallet,
                    amount,
                    TxnPurpose.BILLING_COMMISSION.value,
                    now,
                    booking_id=booking.id,
                    description=description,
                    payment_method=method,
                )
            else:
                group, vendor_txn, platform_txn = ledger.record_liability(
                    session,
                    vendor_wallet,
                    platform_wallet,
                    amount,
                    now,
                    booking_id=booking.id,
                    description=description,
                    payment_method=method,
                )
                liability = True
            txn_ids = (vendor_txn.id, platform_txn.id)

        booking.payment_status = PaymentStatus.PAID.value
        booking.payment_method = method
        booking.paid_at = now
        booking.updated_at = now

        snapshot = booking.commission
        booking.commission = snapshot.model_copy(
            update={
                "billing_rate": breakdown.billing_rate,
                "billing_amount": breakdown.billing_amount,
                "add_ons_rate": breakdown.add_ons_rate,
                "add_ons_amount": breakdown.add_ons_amount,
                "status": CommissionStatus.OUTSTANDING if liability else CommissionStatus.COMPLETED,
                "reference_groups": snapshot.reference_groups + ((group,) if group else ()),
                "transaction_ids": snapshot.transaction_ids + txn_ids,
                "settled_at": now,
            }
        )

        logger.info(
            "payment settled booking=%s method=%s commission=%s liability=%s",
            booking.id, method, amount, liability,
        )
        return SettlementResult(commission_amount=amount, reference_group=group, liability=liability)

    async def recover_liabilities(
        self,
        session: AsyncSession,
        vendor: Vendor,
        vendor_wallet: Wallet,
        platform_wallet: Wallet,
        now: datetime,
    ) -> list[str]:
        """
        Settle outstanding liabilities oldest first while the balance covers
        them. Returns the reference groups that were settled.
        """
        settled = []
        for liability in await ledger.outstanding_liabilities(session, vendor_wallet):
            if money(vendor_wallet.balance or 0) < money(liability.amount):
                break
            await ledger.settle_liability(session, vendor_wallet, platform_wallet, liability, now)
            settled.append(liability.reference_group)

        if settled:
            await self._mark_commissions_completed(session, settled, now)

        if (
            vendor.is_blocked
            and vendor.block_reason == PENDING_BALANCE_BLOCK_REASON
            and money(vendor_wallet.pending_balance or 0) <= 0
        ):
            vendor.is_blocked = False
            vendor.block_reason = None
            logger.info("vendor %s unblocked after liabilities were recovered", vendor.id)

        return settled

    async def _mark_commissions_completed(self, session: AsyncSession, groups: list[str], now: datetime) -> None:
        res = await session.execute(
            select(Booking).where(
                Booking.id.in_(
                    select(Transaction.booking_id).where(
                        Transaction.reference_group.in_(groups),
                        Transaction.booking_id.is_not(None),
                    )
                )
            )
        )
        for booking in res.scalars().all():
            if booking.commission.status == CommissionStatus.OUTSTANDING:
                booking.commission = booking.commission.model_copy(
                    update={"status": CommissionStatus.COMPLETED, "settled_at": now}
                )

    async def _consume_membership(self, session: AsyncSession, booking: Booking) -> None:
        discount = money(booking.pricing.membership_discount)
        if discount <= 0:
            return
        membership = await load_membership(session, booking.requester_id, for_update=True)
        if membership is None:
            return
        remaining = money(membership.usage_remaining or 0) - discount
        membership.usage_remaining = max(ZERO, remaining)

from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Coupon, Membership, Service
from .schemas import PricingSnapshot
from .settings import SettingsSnapshot

CENT = Decimal("0.01")
ZERO = Decimal("0")

INACTIVE_MEMBERSHIP_STATUSES = ("EXPIRED", "CANCELLED", "PENDING")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount, rate) -> Decimal:
    return money(Decimal(amount) * Decimal(rate) / Decimal(100))


def coupon_discount(coupon: Coupon | None, subtotal: Decimal) -> Decimal:
    if not coupon or not coupon.is_active:
        return ZERO
    if subtotal < Decimal(coupon.min_purchase or 0):
        return ZERO

    if coupon.discount_type == "percentage":
        discount = percent_of(subtotal, coupon.discount_value)
        if coupon.max_discount:
            discount = min(discount, money(coupon.max_discount))
    else:
        # flat, applied once per order
        discount = money(coupon.discount_value)

    return min(discount, subtotal)


def membership_applies(membership: Membership | None) -> bool:
    if not membership:
        return False
    if (membership.status or "").upper() in INACTIVE_MEMBERSHIP_STATUSES:
        return False
    return Decimal(membership.usage_remaining or 0) > 0


def taxes_and_fees(price: Decimal, settings: SettingsSnapshot) -> tuple[Decimal, Decimal, Decimal]:
    """Tax is charged on the platform fee only, never on the service amount."""
    platform_fee = money(settings.platform_fee)
    tax_amount = percent_of(platform_fee, settings.service_tax_rate)
    total = money(price + platform_fee + tax_amount)
    return tax_amount, platform_fee, total


def price_booking(
    service: Service,
    settings: SettingsSnapshot,
    quantity: int = 1,
    coupon: Coupon | None = None,
    membership: Membership | None = None,
) -> PricingSnapshot:
    quantity = max(1, int(quantity or 1))
    base_price = money(service.base_price)
    subtotal = money(base_price * quantity)

    discount = coupon_discount(coupon, subtotal)
    after_coupon = subtotal - discount

    membership_discount = ZERO
    if membership_applies(membership):
        membership_discount = percent_of(after_coupon, settings.membership_discount_rate)
    final_price = money(after_coupon - membership_discount)

    tax_amount, platform_fee, total = taxes_and_fees(final_price, settings)

    return PricingSnapshot(
        base_price=base_price,
        quantity=quantity,
        subtotal=subtotal,
        coupon_code=coupon.code if discount > 0 else None,
        coupon_discount=discount,
        membership_discount=membership_discount,
        final_price=final_price,
        add_ons_total=ZERO,
        tax_amount=tax_amount,
        platform_fee=platform_fee,
        total_amount=total,
    )


def apply_add_ons(pricing: PricingSnapshot, add_ons_total, settings: SettingsSnapshot) -> PricingSnapshot:
    """Return a new snapshot with `add_ons_total` folded into the total."""
    add_ons_total = money(add_ons_total)
    tax_amount, platform_fee, total = taxes_and_fees(pricing.final_price + add_ons_total, settings)
    return pricing.model_copy(
        update={
            "add_ons_total": add_ons_total,
            "tax_amount": tax_amount,
            "platform_fee": platform_fee,
            "total_amount": total,
        }
    )


async def load_coupon(session: AsyncSession, code: str | None) -> Coupon | None:
    if not code or not code.strip():
        return None
    res = await session.execute(select(Coupon).where(Coupon.code == code.strip().upper()))
    return res.scalar_one_or_none()


async def load_membership(session: AsyncSession, member_id: str, for_update: bool = False) -> Membership | None:
    stmt = select(Membership).where(Membership.member_id == member_id)
    if for_update:
        stmt = stmt.with_for_update()
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def calculate_pricing(
    session: AsyncSession,
    service: Service,
    requester_id: str,
    settings: SettingsSnapshot,
    quantity: int = 1,
    coupon_code: str | None = None,
) -> PricingSnapshot:
    coupon = await load_coupon(session, coupon_code)
    membership = await load_membership(session, requester_id)
    return price_booking(
        service,
        settings,
        quantity=quantity,
        coupon=coupon,
        membership=membership,
    )

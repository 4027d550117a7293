"""Price computation: coupons, membership discount, platform fee and tax."""

from decimal import Decimal

import pytest

from app.models import Coupon, Membership, Service
from app.pricing import (
    apply_add_ons,
    calculate_pricing,
    coupon_discount,
    membership_applies,
    money,
    percent_of,
    price_booking,
)
from app.settings import SettingsSnapshot

from conftest import SERVICE_ID, seed_platform


def _settings(**overrides) -> SettingsSnapshot:
    values = {
        "commission_per_service_booking": Decimal("10"),
        "commission_per_billing": Decimal("20"),
        "platform_fee": Decimal("0"),
        "service_tax_rate": Decimal("0"),
        "membership_discount_rate": Decimal("0"),
        "minimum_wallet_balance": Decimal("0"),
    }
    values.update(overrides)
    return SettingsSnapshot(**values)


def _service(price="1000") -> Service:
    return Service(id=SERVICE_ID, title="Deep cleaning", base_price=Decimal(price), is_active=True)


def _coupon(**overrides) -> Coupon:
    values = {
        "code": "SAVE10",
        "discount_type": "percentage",
        "discount_value": Decimal("10"),
        "max_discount": None,
        "min_purchase": Decimal("0"),
        "is_active": True,
    }
    values.update(overrides)
    return Coupon(**values)


class TestMoney:
    def test_rounds_half_up_to_cents(self):
        assert money("10.005") == Decimal("10.01")
        assert money(Decimal("10.004")) == Decimal("10.00")

    def test_percent_of(self):
        assert percent_of(Decimal("1000"), Decimal("10")) == Decimal("100.00")
        assert percent_of(Decimal("333.33"), Decimal("7.5")) == Decimal("25.00")


class TestCouponDiscount:
    def test_percentage_coupon(self):
        assert coupon_discount(_coupon(), Decimal("1000")) == Decimal("100.00")

    def test_percentage_coupon_is_capped(self):
        coupon = _coupon(max_discount=Decimal("50"))
        assert coupon_discount(coupon, Decimal("1000")) == Decimal("50.00")

    def test_flat_coupon_never_exceeds_subtotal(self):
        coupon = _coupon(discount_type="flat", discount_value=Decimal("300"))
        assert coupon_discount(coupon, Decimal("1000")) == Decimal("300.00")
        assert coupon_discount(coupon, Decimal("200")) == Decimal("200")

    def test_minimum_purchase_not_met(self):
        coupon = _coupon(min_purchase=Decimal("1500"))
        assert coupon_discount(coupon, Decimal("1000")) == Decimal("0")

    def test_inactive_or_missing_coupon(self):
        assert coupon_discount(_coupon(is_active=False), Decimal("1000")) == Decimal("0")
        assert coupon_discount(None, Decimal("1000")) == Decimal("0")


class TestMembership:
    @pytest.mark.parametrize("status", ["EXPIRED", "cancelled", "PENDING"])
    def test_inactive_statuses(self, status):
        assert not membership_applies(Membership(member_id="user-1", status=status, usage_remaining=Decimal("100")))

    def test_exhausted_allowance(self):
        assert not membership_applies(Membership(member_id="user-1", status="ACTIVE", usage_remaining=Decimal("0")))

    def test_active_membership(self):
        assert membership_applies(Membership(member_id="user-1", status="ACTIVE", usage_remaining=Decimal("50")))


class TestPriceBooking:
    def test_plain_price(self):
        pricing = price_booking(_service(), _settings())

        assert pricing.subtotal == Decimal("1000.00")
        assert pricing.final_price == Decimal("1000.00")
        assert pricing.total_amount == Decimal("1000.00")
        assert pricing.coupon_code is None

    def test_quantity_multiplies_base_price(self):
        pricing = price_booking(_service("250"), _settings(), quantity=3)
        assert pricing.subtotal == Decimal("750.00")
        assert pricing.quantity == 3

    def test_tax_is_charged_on_the_platform_fee_only(self):
        settings = _settings(platform_fee=Decimal("50"), service_tax_rate=Decimal("18"))
        pricing = price_booking(_service(), settings)

        assert pricing.platform_fee == Decimal("50.00")
        assert pricing.tax_amount == Decimal("9.00")
        assert pricing.total_amount == Decimal("1059.00")

    def test_coupon_then_membership(self):
        settings = _settings(membership_discount_rate=Decimal("5"))
        membership = Membership(member_id="user-1", status="ACTIVE", usage_remaining=Decimal("500"))

        pricing = price_booking(_service(), settings, coupon=_coupon(), membership=membership)

        assert pricing.coupon_code == "SAVE10"
        assert pricing.coupon_discount == Decimal("100.00")
        # 5% of the post-coupon 900
        assert pricing.membership_discount == Decimal("45.00")
        assert pricing.final_price == Decimal("855.00")

    def test_coupon_code_dropped_when_no_discount_applies(self):
        pricing = price_booking(_service(), _settings(), coupon=_coupon(min_purchase=Decimal("5000")))
        assert pricing.coupon_code is None
        assert pricing.coupon_discount == Decimal("0")


class TestApplyAddOns:
    def test_add_ons_fold_into_total(self):
        settings = _settings(platform_fee=Decimal("50"), service_tax_rate=Decimal("18"))
        pricing = price_booking(_service(), settings)

        updated = apply_add_ons(pricing, Decimal("200"), settings)

        assert updated.add_ons_total == Decimal("200.00")
        assert updated.total_amount == Decimal("1259.00")
        assert updated.final_price == pricing.final_price
        # the input snapshot is untouched
        assert pricing.add_ons_total == Decimal("0")


class TestCalculatePricing:
    async def test_loads_coupon_case_insensitively(self, session_factory):
        await seed_platform(session_factory)
        async with session_factory() as session:
            async with session.begin():
                session.add(_coupon(code="WELCOME", discount_type="flat", discount_value=Decimal("150")))

        async with session_factory() as session:
            service = await session.get(Service, SERVICE_ID)
            pricing = await calculate_pricing(session, service, "user-1", _settings(), coupon_code=" welcome ")

        assert pricing.coupon_code == "WELCOME"
        assert pricing.total_amount == Decimal("850.00")

    async def test_unknown_coupon_is_ignored(self, session_factory):
        await seed_platform(session_factory)
        async with session_factory() as session:
            service = await session.get(Service, SERVICE_ID)
            pricing = await calculate_pricing(session, service, "user-1", _settings(), coupon_code="NOPE")

        assert pricing.coupon_discount == Decimal("0")
        assert pricing.total_amount == Decimal("1000.00")

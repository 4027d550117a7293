"""Vendor matching: availability, slot conflicts, service radius and wallet health."""

from datetime import timedelta
from decimal import Decimal

import pytest

from app.errors import NoVendorsAvailable
from app.matching import VendorMatcher, haversine, wallet_is_healthy
from app.models import Wallet
from app.settings import SettingsSnapshot, load_settings

from conftest import (
    NOW,
    ORIGIN,
    SLOT,
    TODAY,
    REQUESTER,
    add_vendor,
    booking_request,
    east_of,
    seed_platform,
)


def _settings(minimum="0") -> SettingsSnapshot:
    return SettingsSnapshot(
        commission_per_service_booking=Decimal("10"),
        commission_per_billing=Decimal("20"),
        platform_fee=Decimal("0"),
        service_tax_rate=Decimal("0"),
        membership_discount_rate=Decimal("0"),
        minimum_wallet_balance=Decimal(minimum),
    )


def _wallet(balance="100", pending="0", pending_since=None, status="active") -> Wallet:
    return Wallet(
        party_id="v",
        party_kind="vendor",
        balance=Decimal(balance),
        pending_balance=Decimal(pending),
        pending_since=pending_since,
        status=status,
    )


async def _match(session_factory, time_slot=SLOT, booking_date=TODAY):
    async with session_factory() as session:
        settings = await load_settings(session)
        return await VendorMatcher().find_eligible_vendors(
            session, "svc-deep-clean", booking_date, time_slot, ORIGIN[0], ORIGIN[1], settings, NOW
        )


class TestHaversine:
    def test_zero_distance(self):
        assert haversine(*ORIGIN, *ORIGIN) == 0

    def test_east_offset(self):
        assert haversine(*ORIGIN, *east_of(ORIGIN, 6.0)) == pytest.approx(6.0, abs=0.01)


class TestWalletHealth:
    def test_missing_or_inactive_wallet(self):
        assert not wallet_is_healthy(None, _settings(), NOW)
        assert not wallet_is_healthy(_wallet(status="suspended"), _settings(), NOW)

    def test_available_balance_below_minimum(self):
        # balance 100 minus pending 40 leaves 60
        wallet = _wallet(balance="100", pending="40", pending_since=NOW)
        assert wallet_is_healthy(wallet, _settings(minimum="60"), NOW)
        assert not wallet_is_healthy(wallet, _settings(minimum="61"), NOW)

    def test_recent_pending_balance_is_tolerated(self):
        wallet = _wallet(pending="10", pending_since=NOW - timedelta(days=6))
        assert wallet_is_healthy(wallet, _settings(), NOW)

    def test_pending_balance_past_grace_window(self):
        wallet = _wallet(pending="10", pending_since=NOW - timedelta(days=7))
        assert not wallet_is_healthy(wallet, _settings(), NOW)


class TestFindEligibleVendors:
    async def test_vendor_inside_radius(self, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a", km=6.0, radius_km=10.0)

        matched = await _match(session_factory)

        assert [m.vendor_id for m in matched] == ["vendor-a"]
        assert matched[0].distance_km == pytest.approx(6.0, abs=0.01)
        assert matched[0].push_token == "token-vendor-a"

    async def test_vendor_outside_radius(self, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a", km=6.0, radius_km=5.0)

        with pytest.raises(NoVendorsAvailable) as exc:
            await _match(session_factory)
        assert exc.value.code == "no_vendors_in_area"

    async def test_nobody_available(self, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "offline", is_online=False)
        await add_vendor(session_factory, "busy", is_available=False)
        await add_vendor(session_factory, "blocked", is_blocked=True)
        await add_vendor(session_factory, "plumber", service_ids=["svc-plumbing"])

        with pytest.raises(NoVendorsAvailable) as exc:
            await _match(session_factory)
        assert exc.value.code == "no_vendors_available"
        assert exc.value.http_status == 404

    async def test_unhealthy_wallet_excludes_vendor(self, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "debtor", pending="50", pending_since=NOW - timedelta(days=10))
        await add_vendor(session_factory, "frozen", wallet_status="frozen")

        with pytest.raises(NoVendorsAvailable) as exc:
            await _match(session_factory)
        assert exc.value.code == "no_vendors_available"

    async def test_engaged_vendor_is_fully_booked(self, session_factory, dispatch):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a")
        booking = await dispatch.create_booking(booking_request(), REQUESTER)
        await dispatch.accept_booking(booking.id, "vendor-a")

        with pytest.raises(NoVendorsAvailable) as exc:
            await _match(session_factory)
        assert exc.value.code == "vendors_fully_booked"

        # another slot the same day is still free
        matched = await _match(session_factory, time_slot="14:00-15:00")
        assert [m.vendor_id for m in matched] == ["vendor-a"]

    async def test_sorted_nearest_first(self, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "far", km=8.0)
        await add_vendor(session_factory, "near", km=1.0)
        await add_vendor(session_factory, "middle", km=4.0)

        matched = await _match(session_factory)

        assert [m.vendor_id for m in matched] == ["near", "middle", "far"]
        assert matched == sorted(matched, key=lambda m: m.distance_km)

    async def test_vendor_without_coordinates_is_skipped(self, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "unlocated", located=False)
        await add_vendor(session_factory, "located", km=3.0)

        matched = await _match(session_factory)

        assert [m.vendor_id for m in matched] == ["located"]

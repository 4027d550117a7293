"""Expiration sweep and stale-balance suspension."""

import asyncio
from datetime import timedelta

import pytest

from app.errors import BookingExpired
from app.expiry_worker import expiry_loop, suspend_stale_vendors, sweep_expirations
from app.models import Vendor
from app.settlement import PENDING_BALANCE_BLOCK_REASON

from conftest import NOW, REQUESTER, add_vendor, booking_request, load, seed_platform


async def _open_booking(session_factory, dispatch, vendors=("vendor-a",)):
    await seed_platform(session_factory)
    for vendor_id in vendors:
        await add_vendor(session_factory, vendor_id)
    return await dispatch.create_booking(booking_request(), REQUESTER)


class TestSweepExpirations:
    async def test_booking_expires_after_request_timeout(self, session_factory, dispatch):
        booking = await _open_booking(session_factory, dispatch)

        assert await sweep_expirations(session_factory, now=NOW + timedelta(seconds=149)) == []
        expired = await sweep_expirations(session_factory, now=NOW + timedelta(seconds=151))

        assert expired == [booking.id]
        stored = await dispatch.get_booking(booking.id)
        assert stored.status == "expired"
        assert stored.search_timeout is None
        assert stored.version == booking.version + 1
        last = stored.status_history[-1]
        assert last.status == "expired"
        assert last.actor_kind == "system"
        assert last.actor_id is None
        assert stored.candidate_for("vendor-a").response == "timeout"

    async def test_sweep_is_idempotent(self, session_factory, dispatch):
        booking = await _open_booking(session_factory, dispatch)
        later = NOW + timedelta(seconds=200)

        first = await sweep_expirations(session_factory, now=later)
        second = await sweep_expirations(session_factory, now=later)

        assert first == [booking.id]
        assert second == []
        stored = await dispatch.get_booking(booking.id)
        assert [h.status for h in stored.status_history].count("expired") == 1

    async def test_concurrent_sweeps_expire_once(self, session_factory, dispatch):
        booking = await _open_booking(session_factory, dispatch)
        later = NOW + timedelta(seconds=200)

        results = await asyncio.gather(
            sweep_expirations(session_factory, now=later),
            sweep_expirations(session_factory, now=later),
        )

        assert sorted(results, key=len) == [[], [booking.id]]

    async def test_accept_after_expiry_is_refused(self, session_factory, dispatch, clock):
        booking = await _open_booking(session_factory, dispatch)
        clock.advance(151)
        await sweep_expirations(session_factory, now=clock())

        with pytest.raises(BookingExpired) as exc:
            await dispatch.accept_booking(booking.id, "vendor-a")
        assert exc.value.http_status == 410

    async def test_accept_after_deadline_but_before_sweep_is_refused(self, session_factory, dispatch, clock):
        booking = await _open_booking(session_factory, dispatch)
        clock.advance(151)

        with pytest.raises(BookingExpired):
            await dispatch.accept_booking(booking.id, "vendor-a")

        assert (await dispatch.get_booking(booking.id)).status == "searching"

    async def test_assigned_booking_is_left_alone(self, session_factory, dispatch):
        booking = await _open_booking(session_factory, dispatch)
        await dispatch.accept_booking(booking.id, "vendor-a")

        assert await sweep_expirations(session_factory, now=NOW + timedelta(hours=1)) == []
        assert (await dispatch.get_booking(booking.id)).status == "vendor_assigned"


class TestSuspendStaleVendors:
    async def test_blocks_vendor_with_old_pending_balance(self, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "stale", pending="80", pending_since=NOW - timedelta(days=8))
        await add_vendor(session_factory, "recent", pending="80", pending_since=NOW - timedelta(days=2))
        await add_vendor(session_factory, "clean")

        blocked = await suspend_stale_vendors(session_factory, now=NOW)

        assert blocked == ["stale"]
        vendor = await load(session_factory, Vendor, "stale")
        assert vendor.is_blocked
        assert vendor.block_reason == PENDING_BALANCE_BLOCK_REASON
        assert not (await load(session_factory, Vendor, "recent")).is_blocked

    async def test_already_blocked_vendor_is_not_reported_again(self, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "stale", pending="80", pending_since=NOW - timedelta(days=8))

        assert await suspend_stale_vendors(session_factory, now=NOW) == ["stale"]
        assert await suspend_stale_vendors(session_factory, now=NOW) == []


class TestExpiryLoop:
    async def test_loop_stops_when_asked(self, session_factory, dispatch):
        booking = await _open_booking(session_factory, dispatch)
        stop = asyncio.Event()

        task = asyncio.create_task(expiry_loop(stop, session_factory, interval=0.01))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        # the loop sweeps with the wall clock, long after the fixed test clock
        assert (await dispatch.get_booking(booking.id)).status == "expired"

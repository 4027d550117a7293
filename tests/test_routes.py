"""HTTP surface: auth, role checks, audience-specific views and error bodies."""

import hashlib
import hmac
import json

import httpx
import pytest
from jose import jwt

from app import routes
from app.main import app
from app.config import JWT_ALGORITHM, JWT_SECRET

from conftest import TODAY, SLOT, ORIGIN, SERVICE_ID, add_vendor, seed_platform


def _token(sub: str, *roles: str) -> dict:
    token = jwt.encode({"sub": sub, "roles": list(roles)}, JWT_SECRET, algorithm=JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


USER = _token("user-1", "user")
OTHER_USER = _token("user-2", "user")
ADMIN = _token("admin-1", "admin")


def _vendor(vendor_id: str) -> dict:
    return _token(vendor_id, "vendor")


BOOKING_BODY = {
    "service_id": SERVICE_ID,
    "date": TODAY.isoformat(),
    "time_slot": SLOT,
    "latitude": ORIGIN[0],
    "longitude": ORIGIN[1],
}


@pytest.fixture
async def client(session_factory, dispatch, payments, monkeypatch):
    seen = set()

    async def is_processed(event_id):
        return event_id in seen

    async def mark_processed(event_id):
        seen.add(event_id)

    monkeypatch.setattr(routes, "is_processed", is_processed)
    monkeypatch.setattr(routes, "mark_processed", mark_processed)

    app.dependency_overrides[routes.get_session_factory] = lambda: session_factory
    app.dependency_overrides[routes.get_dispatch_service] = lambda: dispatch
    app.dependency_overrides[routes.get_payment_service] = lambda: payments
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://dispatch.test") as c:
            yield c
    finally:
        app.dependency_overrides.clear()


async def _create(client) -> dict:
    r = await client.post("/bookings", json=BOOKING_BODY, headers=USER)
    assert r.status_code == 201, r.text
    return r.json()


class TestAuth:
    async def test_health_is_open(self, client):
        r = await client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    async def test_missing_token(self, client):
        r = await client.post("/bookings", json=BOOKING_BODY)
        assert r.status_code == 401
        assert r.json()["code"] == "unauthorized"

    async def test_wrong_role(self, client, session_factory):
        r = await client.post("/bookings", json=BOOKING_BODY, headers=_vendor("vendor-a"))
        assert r.status_code == 403
        assert r.json()["code"] == "forbidden"

    async def test_request_id_is_echoed(self, client):
        r = await client.get("/health", headers={"X-Request-Id": "req-42"})
        assert r.headers["X-Request-Id"] == "req-42"


class TestBookingEndpoints:
    async def test_create_returns_requester_view(self, client, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a")

        body = await _create(client)

        assert body["status"] == "searching"
        assert body["status_message"] == "Vendors have been notified"
        assert body["pricing"]["total_amount"] == "1000.00"
        assert body["commission"] is None
        assert body["candidates"] is None

    async def test_no_vendors_renders_stage_code(self, client, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "far-away", km=30.0, radius_km=10.0)

        r = await client.post("/bookings", json=BOOKING_BODY, headers=USER)

        assert r.status_code == 404
        assert r.json()["code"] == "no_vendors_in_area"

    async def test_race_winner_and_loser(self, client, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a")
        await add_vendor(session_factory, "vendor-b")
        booking = await _create(client)

        won = await client.post(f"/bookings/{booking['id']}/accept", headers=_vendor("vendor-a"))
        lost = await client.post(f"/bookings/{booking['id']}/accept", headers=_vendor("vendor-b"))

        assert won.status_code == 200
        assert won.json()["commission"]["booking_amount"] == "100.00"
        assert won.json()["vendor_earning"] == "800.00"
        assert lost.status_code == 409
        assert lost.json()["code"] == "booking_already_assigned"

    async def test_views_per_audience(self, client, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a")
        booking = await _create(client)

        forbidden = await client.get(f"/bookings/{booking['id']}", headers=OTHER_USER)
        candidate = await client.get(f"/bookings/{booking['id']}", headers=_vendor("vendor-a"))
        admin = await client.get(f"/bookings/{booking['id']}", headers=ADMIN)

        assert forbidden.status_code == 403
        assert forbidden.json()["code"] == "forbidden"
        assert candidate.status_code == 200
        assert candidate.json()["status_history"] is None
        assert [h["status"] for h in admin.json()["status_history"]] == ["pending", "searching"]
        assert admin.json()["candidates"][0]["vendor_id"] == "vendor-a"

    async def test_illegal_status_change(self, client, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a")
        booking = await _create(client)
        await client.post(f"/bookings/{booking['id']}/accept", headers=_vendor("vendor-a"))

        r = await client.post(
            f"/bookings/{booking['id']}/status",
            json={"status": "completed"},
            headers=_vendor("vendor-a"),
        )

        assert r.status_code == 409
        assert r.json()["code"] == "invalid_transition"
        assert r.json()["details"]["current"] == "vendor_assigned"

    async def test_cancel(self, client, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a")
        booking = await _create(client)

        r = await client.post(f"/bookings/{booking['id']}/cancel", json={"reason": "plans changed"}, headers=USER)

        assert r.status_code == 200
        assert r.json()["status"] == "cancelled_by_user"

    async def test_match_preview(self, client, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a", km=3.0)

        r = await client.post("/match", json=BOOKING_BODY, headers=USER)

        assert r.status_code == 200
        assert [v["vendor_id"] for v in r.json()] == ["vendor-a"]


class TestPaymentEndpoints:
    async def _completed(self, client, session_factory) -> str:
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a")
        booking = await _create(client)
        vendor = _vendor("vendor-a")
        await client.post(f"/bookings/{booking['id']}/accept", headers=vendor)
        for status in ["accepted", "confirmed", "on_route", "arrived", "in_progress", "completed"]:
            r = await client.post(f"/bookings/{booking['id']}/status", json={"status": status}, headers=vendor)
            assert r.status_code == 200, r.text
        return booking["id"]

    async def test_cash_payment(self, client, session_factory):
        booking_id = await self._completed(client, session_factory)

        r = await client.post(f"/bookings/{booking_id}/payments", json={"method": "cash"}, headers=USER)

        assert r.status_code == 200
        assert r.json()["status"] == "settled"
        assert r.json()["booking"]["payment_status"] == "paid"

    async def test_webhook_signature_and_replay(self, client, session_factory):
        booking_id = await self._completed(client, session_factory)
        started = await client.post(f"/bookings/{booking_id}/payments", json={"method": "online"}, headers=USER)
        order_ref = started.json()["order_ref"]
        raw = json.dumps(
            {
                "id": "evt_http",
                "event": "payment.captured",
                "payload": {"payment": {"entity": {"id": "pay_1", "order_id": order_ref}}},
            }
        ).encode("utf-8")
        signature = hmac.new(b"whsec_test", raw, hashlib.sha256).hexdigest()

        bad = await client.post("/payments/webhook", content=raw, headers={"X-Razorpay-Signature": "0" * 64})
        ok = await client.post(
            "/payments/webhook",
            content=raw,
            headers={"X-Razorpay-Signature": signature, "X-Razorpay-Event-Id": "evt_http"},
        )
        replay = await client.post(
            "/payments/webhook",
            content=raw,
            headers={"X-Razorpay-Signature": signature, "X-Razorpay-Event-Id": "evt_http"},
        )

        assert bad.status_code == 401
        assert bad.json()["code"] == "invalid_signature"
        assert ok.json()["status"] == "settled"
        assert replay.json() == {"status": "already_processed", "event_id": "evt_http"}

    async def test_wallet_view_and_top_up(self, client, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a", balance="500")

        top_up = await client.post(
            "/wallets/vendor-a/top-up", json={"amount": "100", "reference": "upi-1"}, headers=_vendor("vendor-a")
        )
        mine = await client.get("/wallets/vendor/vendor-a", headers=_vendor("vendor-a"))
        theirs = await client.get("/wallets/vendor/vendor-a", headers=_vendor("vendor-b"))

        assert top_up.status_code == 200
        assert top_up.json()["wallet"]["balance"] == "600.00"
        assert mine.json()["wallet"]["available_balance"] == "600.00"
        assert mine.json()["recent_transactions"][0]["purpose"] == "wallet_topup"
        assert theirs.status_code == 403


class TestSystemEndpoints:
    async def test_sweep_requires_admin(self, client):
        r = await client.post("/system/expirations/sweep", headers=USER)
        assert r.status_code == 403

    async def test_sweep_expires_stale_bookings(self, client, session_factory):
        await seed_platform(session_factory)
        await add_vendor(session_factory, "vendor-a")
        booking = await _create(client)

        # runs on the wall clock, well past the fixed creation time
        r = await client.post("/system/expirations/sweep", headers=ADMIN)

        assert r.status_code == 200
        assert r.json()["expired"] == [booking["id"]]

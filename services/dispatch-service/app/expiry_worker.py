import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update

from shared.database import utcnow

from . import events
from .config import PENDING_GRACE_DAYS, SWEEP_INTERVAL_SECONDS
from .db import SessionLocal
from .enums import SEARCHABLE_STATUSES, ActorKind, BookingStatus, CandidateResponse, PartyKind
from .models import Booking, BookingCandidate, Vendor, Wallet
from .rabbitmq import publisher
from .settlement import PENDING_BALANCE_BLOCK_REASON
from .state_machine import history_record

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Booking request timed out"


async def sweep_expirations(session_factory=SessionLocal, now: datetime | None = None) -> list[str]:
    """
    Expire every open booking whose search deadline has passed.

    The status predicate is part of the UPDATE itself, so a booking a vendor
    accepted a moment earlier no longer matches, and two overlapping sweeps
    cannot both expire the same booking.
    """
    now = now or utcnow()

    async with session_factory() as session:
        async with session.begin():
            res = await session.execute(
                update(Booking)
                .where(
                    Booking.status.in_(SEARCHABLE_STATUSES),
                    Booking.search_timeout.is_not(None),
                    Booking.search_timeout <= now,
                )
                .values(
                    status=BookingStatus.EXPIRED.value,
                    search_timeout=None,
                    version=Booking.version + 1,
                    updated_at=now,
                )
                .returning(Booking.id)
                .execution_options(synchronize_session=False)
            )
            expired_ids = [row[0] for row in res.all()]

            if expired_ids:
                session.add_all(
                    [
                        history_record(
                            booking_id,
                            BookingStatus.EXPIRED,
                            None,
                            ActorKind.SYSTEM,
                            EXPIRY_REASON,
                            now,
                        )
                        for booking_id in expired_ids
                    ]
                )
                await session.execute(
                    update(BookingCandidate)
                    .where(
                        BookingCandidate.booking_id.in_(expired_ids),
                        BookingCandidate.response == CandidateResponse.PENDING.value,
                    )
                    .values(response=CandidateResponse.TIMEOUT.value, responded_at=now)
                    .execution_options(synchronize_session=False)
                )

    if expired_ids:
        logger.info("expired %d booking(s)", len(expired_ids))
    return expired_ids


async def suspend_stale_vendors(session_factory=SessionLocal, now: datetime | None = None) -> list[str]:
    """Block vendors that have carried a pending balance past the grace window."""
    now = now or utcnow()
    cutoff = now - timedelta(days=PENDING_GRACE_DAYS)

    async with session_factory() as session:
        async with session.begin():
            stale = (
                select(Wallet.party_id)
                .where(
                    Wallet.party_kind == PartyKind.VENDOR.value,
                    Wallet.pending_balance > 0,
                    Wallet.pending_since.is_not(None),
                    Wallet.pending_since <= cutoff,
                )
            )
            res = await session.execute(
                update(Vendor)
                .where(Vendor.id.in_(stale), Vendor.is_blocked.is_(False))
                .values(is_blocked=True, block_reason=PENDING_BALANCE_BLOCK_REASON)
                .returning(Vendor.id)
                .execution_options(synchronize_session=False)
            )
            blocked = [row[0] for row in res.all()]

    for vendor_id in blocked:
        logger.warning("vendor %s blocked: pending wallet balance older than %d days", vendor_id, PENDING_GRACE_DAYS)
    return blocked


async def publish_expired(booking_ids: list[str]):
    for booking_id in booking_ids:
        ev = events.build_event(events.BOOKING_EXPIRED, {"booking_id": booking_id})
        await publisher.publish(events.BOOKING_EXPIRED, events.to_json(ev))


async def expiry_loop(stop_event: asyncio.Event, session_factory=SessionLocal, interval: float = SWEEP_INTERVAL_SECONDS):
    while not stop_event.is_set():
        try:
            expired = await sweep_expirations(session_factory)
            await publish_expired(expired)
            await suspend_stale_vendors(session_factory)
        except Exception:
            # keep sweeping on the next tick
            logger.exception("expiration sweep failed")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import PENDING_GRACE_DAYS
from .enums import ENGAGED_STATUSES, PartyKind, WalletStatus
from .errors import NoVendorsAvailable
from .models import Booking, Vendor, Wallet
from .settings import SettingsSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EligibleVendor:
    vendor_id: str
    distance_km: float
    push_token: str | None = None
    push_platform: str | None = None


def haversine(lat1, lon1, lat2, lon2):
    R = 6371
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


def wallet_is_healthy(wallet: Wallet | None, settings: SettingsSnapshot, now: datetime) -> bool:
    """
    Active wallet, available balance (balance - pending) at or above the platform
    minimum, and either no pending liability or one younger than the grace window.
    """
    if wallet is None or wallet.status != WalletStatus.ACTIVE.value:
        return False

    balance = Decimal(wallet.balance or 0)
    pending = Decimal(wallet.pending_balance or 0)
    if balance - pending < settings.minimum_wallet_balance:
        return False

    if pending <= 0:
        return True
    grace_start = now - timedelta(days=PENDING_GRACE_DAYS)
    return wallet.pending_since is not None and wallet.pending_since > grace_start


async def engaged_vendor_ids(
    session: AsyncSession,
    booking_date: date,
    time_slot: str,
    exclude_booking_id: str | None = None,
) -> set[str]:
    stmt = select(Booking.assigned_vendor_id).where(
        Booking.date == booking_date,
        Booking.time_slot == time_slot,
        Booking.status.in_(ENGAGED_STATUSES),
        Booking.assigned_vendor_id.is_not(None),
    )
    if exclude_booking_id:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    res = await session.execute(stmt)
    return {row[0] for row in res.all()}


class VendorMatcher:
    """
    Narrows the vendor pool for one request in three stages; an empty result
    at any stage raises `NoVendorsAvailable` naming that stage.
    """

    async def find_eligible_vendors(
        self,
        session: AsyncSession,
        service_id: str,
        booking_date: date,
        time_slot: str,
        latitude: float,
        longitude: float,
        settings: SettingsSnapshot,
        now: datetime,
    ) -> list[EligibleVendor]:
        available = await self._available_vendors(session, service_id, settings, now)
        if not available:
            raise NoVendorsAvailable("no_vendors_available")

        engaged = await engaged_vendor_ids(session, booking_date, time_slot)
        free = [v for v in available if v.id not in engaged]
        if not free:
            raise NoVendorsAvailable("vendors_fully_booked")

        in_range = []
        for vendor in free:
            if vendor.latitude is None or vendor.longitude is None:
                logger.warning("vendor %s has no coordinates; skipped from matching", vendor.id)
                continue

            distance = haversine(latitude, longitude, vendor.latitude, vendor.longitude)
            if distance > (vendor.service_radius_km or 0):
                continue

            in_range.append(
                EligibleVendor(
                    vendor_id=vendor.id,
                    distance_km=round(distance, 2),
                    push_token=vendor.push_token,
                    push_platform=vendor.push_platform,
                )
            )

        if not in_range:
            raise NoVendorsAvailable("no_vendors_in_area")

        in_range.sort(key=lambda c: (c.distance_km, c.vendor_id))
        logger.info(
            "matched %d vendor(s) for service=%s date=%s slot=%s",
            len(in_range), service_id, booking_date, time_slot,
        )
        return in_range

    async def _available_vendors(
        self,
        session: AsyncSession,
        service_id: str,
        settings: SettingsSnapshot,
        now: datetime,
    ) -> list[Vendor]:
        stmt = (
            select(Vendor, Wallet)
            .join(
                Wallet,
                (Wallet.party_id == Vendor.id) & (Wallet.party_kind == PartyKind.VENDOR.value),
            )
            .where(
                Vendor.is_online.is_(True),
                Vendor.is_available.is_(True),
                Vendor.is_blocked.is_(False),
            )
        )
        res = await session.execute(stmt)

        vendors = []
        for vendor, wallet in res.all():
            if service_id not in (vendor.service_ids or []):
                continue
            if not wallet_is_healthy(wallet, settings, now):
                continue
            vendors.append(vendor)
        return vendors

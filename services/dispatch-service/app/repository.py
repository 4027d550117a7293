import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import violates_unique

from .config import PLATFORM_WALLET_ID
from .enums import PartyKind, WalletStatus
from .errors import BookingNotFound, ServiceNotFound, VendorNotFound, WalletNotFound
from .models import Booking, Service, Vendor, Wallet


async def get_booking(session: AsyncSession, booking_id: str, for_update: bool = False) -> Booking:
    stmt = select(Booking).where(Booking.id == booking_id)
    if for_update:
        # re-read a row another transaction may have changed since the identity map saw it
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    res = await session.execute(stmt)
    booking = res.scalar_one_or_none()
    if not booking:
        raise BookingNotFound(booking_id=booking_id)
    return booking


async def get_vendor(session: AsyncSession, vendor_id: str, for_update: bool = False) -> Vendor:
    stmt = select(Vendor).where(Vendor.id == vendor_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    res = await session.execute(stmt)
    vendor = res.scalar_one_or_none()
    if not vendor:
        raise VendorNotFound(vendor_id=vendor_id)
    return vendor


async def get_service(session: AsyncSession, service_id: str) -> Service:
    res = await session.execute(select(Service).where(Service.id == service_id))
    service = res.scalar_one_or_none()
    if not service or not service.is_active:
        raise ServiceNotFound(service_id=service_id)
    return service


async def find_wallet(session: AsyncSession, party_id: str, party_kind: str, for_update: bool = False) -> Wallet | None:
    stmt = select(Wallet).where(Wallet.party_id == party_id, Wallet.party_kind == party_kind)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def get_wallet(session: AsyncSession, party_id: str, party_kind: str, for_update: bool = False) -> Wallet:
    wallet = await find_wallet(session, party_id, party_kind, for_update=for_update)
    if not wallet:
        raise WalletNotFound(party_id=party_id, party_kind=party_kind)
    return wallet


async def get_platform_wallet(session: AsyncSession, currency: str, for_update: bool = True) -> Wallet:
    """
    The platform wallet is created on first use. Two first settlements may race
    to insert it; the loser rolls back its savepoint and reads the winner's row.
    """
    wallet = await find_wallet(session, PLATFORM_WALLET_ID, PartyKind.PLATFORM.value, for_update=for_update)
    if wallet:
        return wallet

    wallet = Wallet(
        id=str(uuid.uuid4()),
        party_id=PLATFORM_WALLET_ID,
        party_kind=PartyKind.PLATFORM.value,
        balance=0,
        pending_balance=0,
        currency=currency,
        status=WalletStatus.ACTIVE.value,
        recent_transaction_ids=[],
    )
    try:
        async with session.begin_nested():
            session.add(wallet)
    except IntegrityError as e:
        if not violates_unique(e, "uq_wallet_party", "wallets.party_id, wallets.party_kind"):
            raise
        return await get_wallet(session, PLATFORM_WALLET_ID, PartyKind.PLATFORM.value, for_update=for_update)
    return wallet

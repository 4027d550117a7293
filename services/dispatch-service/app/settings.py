from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import SettingsNotFound
from .models import PlatformSettings


@dataclass(frozen=True)
class SettingsSnapshot:
    """Platform settings as read once at the start of an operation."""

    commission_per_service_booking: Decimal
    commission_per_billing: Decimal
    platform_fee: Decimal
    service_tax_rate: Decimal
    membership_discount_rate: Decimal
    minimum_wallet_balance: Decimal
    currency: str = "INR"


async def load_settings(session: AsyncSession) -> SettingsSnapshot:
    res = await session.execute(select(PlatformSettings).order_by(PlatformSettings.id).limit(1))
    row = res.scalar_one_or_none()
    if not row:
        raise SettingsNotFound()

    return SettingsSnapshot(
        commission_per_service_booking=Decimal(row.commission_per_service_booking or 0),
        commission_per_billing=Decimal(row.commission_per_billing or 0),
        platform_fee=Decimal(row.platform_fee or 0),
        service_tax_rate=Decimal(row.service_tax_rate or 0),
        membership_discount_rate=Decimal(row.membership_discount_rate or 0),
        minimum_wallet_balance=Decimal(row.minimum_wallet_balance or 0),
        currency=row.currency or "INR",
    )

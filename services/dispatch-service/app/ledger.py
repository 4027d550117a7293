"""
Wallet ledger primitives.

A wallet balance only ever moves together with the Transaction row that
explains it, and both commission legs (vendor and platform) share one
reference group inside the caller's database transaction.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import RECENT_TRANSACTIONS_LIMIT
from .enums import TxnDirection, TxnPurpose, TxnStatus
from .errors import InsufficientBalance, ValidationFailed
from .models import Transaction, Wallet
from .pricing import money

logger = logging.getLogger(__name__)


def new_reference_group(prefix: str, booking_id: str | None = None) -> str:
    suffix = uuid.uuid4().hex[:12].upper()
    if booking_id:
        return f"{prefix}_{booking_id}_{suffix}"
    return f"{prefix}_{suffix}"


def _status_entry(status: str, now: datetime, note: str | None = None) -> dict:
    entry = {"status": status, "at": now.isoformat()}
    if note:
        entry["note"] = note
    return entry


def _remember(wallet: Wallet, txn_id: str) -> None:
    # JSON column: assign a new list so the change is tracked
    recent = [txn_id, *(wallet.recent_transaction_ids or [])]
    wallet.recent_transaction_ids = recent[:RECENT_TRANSACTIONS_LIMIT]


def write_entry(
    session: AsyncSession,
    wallet: Wallet,
    *,
    amount: Decimal,
    direction: str,
    status: str,
    purpose: str,
    now: datetime,
    reference_group: str | None = None,
    reference_id: str | None = None,
    booking_id: str | None = None,
    description: str | None = None,
    payment_method: str | None = None,
    gateway_order_ref: str | None = None,
    parent_transaction_id: str | None = None,
    balance_before: Decimal | None = None,
    balance_after: Decimal | None = None,
) -> Transaction:
    txn_id = str(uuid.uuid4())
    txn = Transaction(
        id=txn_id,
        reference_group=reference_group,
        reference_id=reference_id or txn_id,
        parent_transaction_id=parent_transaction_id,
        party_id=wallet.party_id,
        party_kind=wallet.party_kind,
        wallet_id=wallet.id,
        booking_id=booking_id,
        amount=money(amount),
        currency=wallet.currency,
        direction=direction,
        status=status,
        purpose=purpose,
        payment_method=payment_method,
        gateway_order_ref=gateway_order_ref,
        balance_before=balance_before,
        balance_after=balance_after,
        description=description,
        status_history=[_status_entry(status, now)],
        created_at=now,
    )
    session.add(txn)
    _remember(wallet, txn_id)
    return txn


def set_status(txn: Transaction, status: str, now: datetime, note: str | None = None) -> None:
    txn.status = status
    txn.status_history = [*(txn.status_history or []), _status_entry(status, now, note)]


def debit(wallet: Wallet, amount: Decimal) -> tuple[Decimal, Decimal]:
    before = money(wallet.balance or 0)
    if before < amount:
        raise InsufficientBalance(
            wallet_id=wallet.id,
            balance=str(before),
            required=str(amount),
        )
    wallet.balance = before - amount
    return before, wallet.balance


def credit(wallet: Wallet, amount: Decimal) -> tuple[Decimal, Decimal]:
    before = money(wallet.balance or 0)
    wallet.balance = before + amount
    return before, wallet.balance


def transfer_commission(
    session: AsyncSession,
    vendor_wallet: Wallet,
    platform_wallet: Wallet,
    amount: Decimal,
    purpose: str,
    now: datetime,
    booking_id: str | None = None,
    description: str | None = None,
    payment_method: str | None = None,
) -> tuple[str, Transaction, Transaction]:
    """Debit the vendor and credit the platform; both legs succeed together."""
    amount = money(amount)
    if amount < 0:
        raise ValidationFailed("Commission amount cannot be negative")

    group = new_reference_group("COMM", booking_id)

    v_before, v_after = debit(vendor_wallet, amount)
    vendor_txn = write_entry(
        session,
        vendor_wallet,
        amount=amount,
        direction=TxnDirection.DEBIT.value,
        status=TxnStatus.SUCCESS.value,
        purpose=purpose,
        now=now,
        reference_group=group,
        reference_id=f"{group}_VENDOR",
        booking_id=booking_id,
        description=description,
        payment_method=payment_method,
        balance_before=v_before,
        balance_after=v_after,
    )

    p_before, p_after = credit(platform_wallet, amount)
    platform_txn = write_entry(
        session,
        platform_wallet,
        amount=amount,
        direction=TxnDirection.CREDIT.value,
        status=TxnStatus.SUCCESS.value,
        purpose=purpose,
        now=now,
        reference_group=group,
        reference_id=f"{group}_PLATFORM",
        booking_id=booking_id,
        description=description,
        payment_method=payment_method,
        parent_transaction_id=vendor_txn.id,
        balance_before=p_before,
        balance_after=p_after,
    )

    logger.info(
        "commission %s transferred vendor_wallet=%s amount=%s group=%s",
        purpose, vendor_wallet.id, amount, group,
    )
    return group, vendor_txn, platform_txn


def record_liability(
    session: AsyncSession,
    vendor_wallet: Wallet,
    platform_wallet: Wallet,
    amount: Decimal,
    now: datetime,
    booking_id: str | None = None,
    description: str | None = None,
    payment_method: str | None = None,
) -> tuple[str, Transaction, Transaction]:
    """
    Book commission the vendor cannot cover right now. Balances stay as they
    are; the debt goes to `pending_balance` and a receivable sits on the
    platform side until the liability is recovered.
    """
    amount = money(amount)
    group = new_reference_group("COMM", booking_id)

    vendor_wallet.pending_balance = money(vendor_wallet.pending_balance or 0) + amount
    if vendor_wallet.pending_since is None:
        vendor_wallet.pending_since = now

    balance = money(vendor_wallet.balance or 0)
    vendor_txn = write_entry(
        session,
        vendor_wallet,
        amount=amount,
        direction=TxnDirection.LIABILITY.value,
        status=TxnStatus.OUTSTANDING.value,
        purpose=TxnPurpose.COMMISSION_PAYABLE.value,
        now=now,
        reference_group=group,
        reference_id=f"{group}_VENDOR",
        booking_id=booking_id,
        description=description,
        payment_method=payment_method,
        balance_before=balance,
        balance_after=balance,
    )

    platform_balance = money(platform_wallet.balance or 0)
    platform_txn = write_entry(
        session,
        platform_wallet,
        amount=amount,
        direction=TxnDirection.CREDIT.value,
        status=TxnStatus.PENDING.value,
        purpose=TxnPurpose.COMMISSION_PAYABLE.value,
        now=now,
        reference_group=group,
        reference_id=f"{group}_PLATFORM",
        booking_id=booking_id,
        description=description,
        payment_method=payment_method,
        parent_transaction_id=vendor_txn.id,
        balance_before=platform_balance,
        balance_after=platform_balance,
    )

    logger.info(
        "commission liability recorded vendor_wallet=%s amount=%s group=%s",
        vendor_wallet.id, amount, group,
    )
    return group, vendor_txn, platform_txn


def credit_top_up(
    session: AsyncSession,
    wallet: Wallet,
    amount: Decimal,
    now: datetime,
    reference: str | None = None,
) -> Transaction:
    amount = money(amount)
    if amount <= 0:
        raise ValidationFailed("Top-up amount must be positive")

    before, after = credit(wallet, amount)
    return write_entry(
        session,
        wallet,
        amount=amount,
        direction=TxnDirection.CREDIT.value,
        status=TxnStatus.SUCCESS.value,
        purpose=TxnPurpose.WALLET_TOPUP.value,
        now=now,
        reference_group=new_reference_group("TOPUP"),
        reference_id=reference,
        description="Wallet top-up",
        balance_before=before,
        balance_after=after,
    )


async def outstanding_liabilities(session: AsyncSession, wallet: Wallet) -> list[Transaction]:
    res = await session.execute(
        select(Transaction)
        .where(
            Transaction.wallet_id == wallet.id,
            Transaction.direction == TxnDirection.LIABILITY.value,
            Transaction.status == TxnStatus.OUTSTANDING.value,
        )
        .order_by(Transaction.created_at, Transaction.id)
    )
    return list(res.scalars().all())


async def receivable_for(session: AsyncSession, liability: Transaction) -> Transaction | None:
    res = await session.execute(
        select(Transaction).where(
            Transaction.reference_group == liability.reference_group,
            Transaction.id != liability.id,
            Transaction.status == TxnStatus.PENDING.value,
        )
    )
    return res.scalar_one_or_none()


async def settle_liability(
    session: AsyncSession,
    vendor_wallet: Wallet,
    platform_wallet: Wallet,
    liability: Transaction,
    now: datetime,
) -> None:
    """Collect one outstanding liability out of the vendor's balance."""
    amount = money(liability.amount)
    v_before, v_after = debit(vendor_wallet, amount)
    liability.balance_before = v_before
    liability.balance_after = v_after
    set_status(liability, TxnStatus.SUCCESS.value, now, note="recovered from balance")

    receivable = await receivable_for(session, liability)
    p_before, p_after = credit(platform_wallet, amount)
    if receivable is not None:
        receivable.balance_before = p_before
        receivable.balance_after = p_after
        set_status(receivable, TxnStatus.SUCCESS.value, now, note="recovered from balance")

    pending = money(vendor_wallet.pending_balance or 0) - amount
    if pending <= 0:
        vendor_wallet.pending_balance = Decimal("0.00")
        vendor_wallet.pending_since = None
    else:
        vendor_wallet.pending_balance = pending

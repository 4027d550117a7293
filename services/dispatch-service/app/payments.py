import hashlib
import hmac
import json
import logging
import uuid
from decimal import Decimal

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from shared.database import utcnow, violates_unique

from . import events, ledger
from .config import (
    GATEWAY_TIMEOUT_SECONDS,
    PAYMENT_GATEWAY_KEY,
    PAYMENT_GATEWAY_SECRET,
    PAYMENT_GATEWAY_URL,
    PAYMENT_WEBHOOK_SECRET,
)
from .db import SessionLocal
from .dispatch import Actor
from .enums import (
    ActorKind,
    BookingStatus,
    PartyKind,
    PaymentMethod,
    PaymentStatus,
    TxnDirection,
    TxnPurpose,
    TxnStatus,
)
from .errors import (
    Forbidden,
    GatewayUnavailable,
    PaymentAlreadyProcessed,
    PaymentNotAllowed,
    ValidationFailed,
    WebhookSignatureInvalid,
)
from .models import Booking, ProcessedEvent, Transaction
from .pricing import money
from .rabbitmq import publisher as default_publisher
from .repository import get_booking, get_platform_wallet, get_vendor, get_wallet
from .settings import load_settings
from .settlement import SettlementEngine

logger = logging.getLogger(__name__)

CAPTURED_EVENT = "payment.captured"


class PaymentGateway:
    """Thin client for the card/UPI gateway (Razorpay-style orders API)."""

    def __init__(
        self,
        base_url: str = PAYMENT_GATEWAY_URL,
        key_id: str | None = PAYMENT_GATEWAY_KEY,
        key_secret: str | None = PAYMENT_GATEWAY_SECRET,
        webhook_secret: str = PAYMENT_WEBHOOK_SECRET,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.transport = transport

    async def create_order(self, amount: Decimal, metadata: dict) -> str:
        body = {
            # minor units
            "amount": int(money(amount) * 100),
            "currency": metadata.get("currency", "INR"),
            "receipt": metadata.get("booking_id"),
            "notes": {k: str(v) for k, v in metadata.items()},
        }
        try:
            async with httpx.AsyncClient(timeout=GATEWAY_TIMEOUT_SECONDS, transport=self.transport) as client:
                r = await client.post(
                    f"{self.base_url}/orders",
                    json=body,
                    auth=(self.key_id or "", self.key_secret or ""),
                )
        except httpx.HTTPError as e:
            logger.error("payment gateway unreachable: %s", e)
            raise GatewayUnavailable()

        if r.status_code >= 300:
            logger.error("payment gateway rejected order: %s %s", r.status_code, r.text)
            raise GatewayUnavailable(status=r.status_code)

        return r.json()["id"]

    def verify_webhook(self, raw_body: bytes, signature: str | None) -> bool:
        if not signature or not self.webhook_secret:
            return False
        expected = hmac.new(self.webhook_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)


class PaymentService:
    def __init__(
        self,
        session_factory=SessionLocal,
        gateway: PaymentGateway | None = None,
        publisher=None,
        clock=utcnow,
        settlement: SettlementEngine | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway or PaymentGateway()
        self.publisher = publisher or default_publisher
        self.clock = clock
        self.settlement = settlement or SettlementEngine()

    async def initiate_payment(self, booking_id: str, actor: Actor, method: str) -> dict:
        method = getattr(method, "value", method)
        if method == PaymentMethod.CASH.value:
            return await self._settle_cash(booking_id, actor)
        if method == PaymentMethod.ONLINE.value:
            return await self._start_online(booking_id, actor)
        raise ValidationFailed(f"Unsupported payment method {method}")

    async def _settle_cash(self, booking_id: str, actor: Actor) -> dict:
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                booking = await get_booking(session, booking_id, for_update=True)
                _check_payer(booking, actor)
                if booking.payment_status == PaymentStatus.PENDING.value:
                    # the open gateway order may still be captured
                    raise PaymentNotAllowed(
                        "An online payment is already in progress",
                        booking_id=booking.id,
                    )
                settings = await load_settings(session)
                result = await self.settlement.settle_payment(
                    session, booking, PaymentMethod.CASH.value, settings, now
                )

        await self._emit_settled(booking, result)
        return {"booking": booking, "status": "settled", "commission": result}

    async def _start_online(self, booking_id: str, actor: Actor) -> dict:
        async with self.session_factory() as session:
            booking = await get_booking(session, booking_id)
            _check_payer(booking, actor)
            _check_payable(booking)
            amount = money(booking.pricing.total_amount)

        # the gateway call stays outside any database transaction
        order_ref = await self.gateway.create_order(
            amount,
            {"booking_id": booking_id, "requester_id": booking.requester_id},
        )

        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                booking = await get_booking(session, booking_id, for_update=True)
                _check_payable(booking)
                settings = await load_settings(session)

                txn_id = str(uuid.uuid4())
                session.add(
                    Transaction(
                        id=txn_id,
                        reference_group=None,
                        reference_id=f"ORDER_{order_ref}",
                        party_id=booking.requester_id,
                        party_kind=PartyKind.USER.value,
                        wallet_id=None,
                        booking_id=booking.id,
                        amount=amount,
                        currency=settings.currency,
                        direction=TxnDirection.CREDIT.value,
                        status=TxnStatus.PENDING.value,
                        purpose=TxnPurpose.BOOKING_PAYMENT.value,
                        payment_method=PaymentMethod.ONLINE.value,
                        gateway_order_ref=order_ref,
                        description=f"Online payment for {booking.id}",
                        status_history=[{"status": TxnStatus.PENDING.value, "at": now.isoformat()}],
                        created_at=now,
                    )
                )
                booking.payment_status = PaymentStatus.PENDING.value
                booking.payment_method = PaymentMethod.ONLINE.value
                booking.updated_at = now

        logger.info("online payment started booking=%s order=%s", booking_id, order_ref)
        return {"booking": booking, "status": "pending", "order_ref": order_ref, "amount": amount}

    async def handle_webhook(self, raw_body: bytes, signature: str | None, event_id: str | None = None) -> dict:
        if not self.gateway.verify_webhook(raw_body, signature):
            logger.warning("webhook rejected: bad signature")
            raise WebhookSignatureInvalid()

        try:
            body = json.loads(raw_body)
        except ValueError:
            raise ValidationFailed("Webhook body is not valid JSON")

        event_type = body.get("event")
        if event_type != CAPTURED_EVENT:
            return {"status": "ignored", "event": event_type}

        payment = ((body.get("payload") or {}).get("payment") or {}).get("entity") or {}
        order_ref = payment.get("order_id")
        payment_ref = payment.get("id")
        event_id = event_id or body.get("id") or payment_ref
        if not event_id or not order_ref:
            raise ValidationFailed("Webhook is missing the event or order reference")

        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                seen = await session.get(ProcessedEvent, event_id)
                if seen is not None:
                    logger.info("webhook %s already processed", event_id)
                    return {"status": "already_processed", "event_id": event_id}

                payment_txn = await _pending_payment_for(session, order_ref)
                booking_id = (payment.get("notes") or {}).get("booking_id")
                if payment_txn is not None:
                    booking_id = payment_txn.booking_id
                if not booking_id:
                    raise ValidationFailed("Webhook does not reference a booking", order_ref=order_ref)

                try:
                    async with session.begin_nested():
                        session.add(
                            ProcessedEvent(
                                event_id=event_id,
                                event_type=event_type,
                                booking_id=booking_id,
                                processed_at=now,
                            )
                        )
                except IntegrityError as e:
                    if not violates_unique(e, "processed_events_pkey", "processed_events.event_id"):
                        raise
                    # the same event committed in a concurrent delivery
                    logger.info("webhook %s already processed", event_id)
                    return {"status": "already_processed", "event_id": event_id}

                booking = await get_booking(session, booking_id, for_update=True)
                if booking.payment_status == PaymentStatus.PAID.value:
                    # a different event id for a payment already settled
                    if payment_txn is not None:
                        ledger.set_status(
                            payment_txn,
                            TxnStatus.REFUND_DUE.value,
                            now,
                            note=f"captured {payment_ref} after the booking was already paid",
                        )
                        logger.warning(
                            "order %s captured for paid booking %s; refund due", order_ref, booking_id
                        )
                    return {"status": "already_processed", "event_id": event_id}

                settings = await load_settings(session)
                result = await self.settlement.settle_payment(
                    session, booking, PaymentMethod.ONLINE.value, settings, now
                )
                if payment_txn is not None:
                    ledger.set_status(payment_txn, TxnStatus.SUCCESS.value, now, note=f"captured {payment_ref}")

        await self._emit_settled(booking, result)
        return {"status": "settled", "event_id": event_id, "booking_id": booking.id}

    async def top_up_wallet(self, vendor_id: str, amount: Decimal, reference: str | None = None) -> dict:
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                vendor = await get_vendor(session, vendor_id, for_update=True)
                vendor_wallet = await get_wallet(session, vendor_id, PartyKind.VENDOR.value, for_update=True)
                settings = await load_settings(session)
                platform_wallet = await get_platform_wallet(session, settings.currency)

                txn = ledger.credit_top_up(session, vendor_wallet, amount, now, reference=reference)
                try:
                    async with session.begin_nested():
                        await session.flush()
                except IntegrityError as e:
                    if not violates_unique(e, "transactions_reference_id_key", "transactions.reference_id"):
                        raise
                    logger.info("top-up reference %s already used", reference)
                    raise PaymentAlreadyProcessed("Top-up reference already used", reference=reference)

                recovered = await self.settlement.recover_liabilities(
                    session, vendor, vendor_wallet, platform_wallet, now
                )

        logger.info(
            "wallet %s topped up by %s; %d liability(ies) recovered",
            vendor_wallet.id, txn.amount, len(recovered),
        )
        await self._emit(
            events.WALLET_TOPPED_UP,
            {
                "vendor_id": vendor_id,
                "amount": txn.amount,
                "balance": vendor_wallet.balance,
                "pending_balance": vendor_wallet.pending_balance,
                "recovered_reference_groups": recovered,
            },
        )
        return {"wallet": vendor_wallet, "transaction": txn, "recovered": recovered}

    async def _emit_settled(self, booking: Booking, result):
        await self._emit(
            events.PAYMENT_SETTLED,
            {
                "booking_id": booking.id,
                "vendor_id": booking.assigned_vendor_id,
                "method": booking.payment_method,
                "commission_amount": result.commission_amount,
                "liability": result.liability,
                "reference_group": result.reference_group,
            },
        )

    async def _emit(self, event_type: str, data: dict):
        try:
            await self.publisher.emit(event_type, data)
        except Exception as e:
            logger.error("failed to publish %s: %s", event_type, e)


def _check_payer(booking: Booking, actor: Actor) -> None:
    if actor.kind == ActorKind.ADMIN.value:
        return
    if actor.kind == ActorKind.USER.value and booking.requester_id == actor.id:
        return
    if actor.kind == ActorKind.VENDOR.value and booking.assigned_vendor_id == actor.id:
        return
    raise Forbidden(booking_id=booking.id)


def _check_payable(booking: Booking) -> None:
    if booking.payment_status == PaymentStatus.PAID.value:
        raise PaymentAlreadyProcessed(booking_id=booking.id)
    if booking.status != BookingStatus.COMPLETED.value:
        raise PaymentNotAllowed(
            "Payment is only accepted for completed bookings",
            booking_id=booking.id,
            status=booking.status,
        )


async def _pending_payment_for(session, order_ref: str) -> Transaction | None:
    res = await session.execute(
        select(Transaction).where(
            Transaction.gateway_order_ref == order_ref,
            Transaction.purpose == TxnPurpose.BOOKING_PAYMENT.value,
            Transaction.status == TxnStatus.PENDING.value,
        )
    )
    return res.scalars().first()

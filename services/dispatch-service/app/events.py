import json
import uuid
from datetime import datetime, timezone

BOOKING_CREATED = "booking.created"
BOOKING_ASSIGNED = "booking.assigned"
BOOKING_STATUS_CHANGED = "booking.status_changed"
BOOKING_EXPIRED = "booking.expired"
PAYMENT_SETTLED = "payment.settled"
WALLET_TOPPED_UP = "wallet.topped_up"


def build_event(event_type: str, data: dict) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def to_json(event: dict) -> str:
    # Decimal amounts and dates go out as strings
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)

"""
Booking lifecycle.

    pending -> searching -> vendor_assigned -> accepted -> confirmed
            -> on_route -> arrived -> in_progress -> completed

Any non-terminal state may also leave through a cancellation, `rejected`,
`failed` or `expired`. Every change appends one row to the booking's
status history; nothing else writes `Booking.status`, except the bulk
expiration sweep, which writes the same history rows via `history_record`.
"""

from datetime import datetime

from .enums import BookingStatus as S
from .errors import InvalidTransition
from .models import Booking, BookingStatusHistory

_SIDE_EXITS = frozenset(
    {
        S.CANCELLED_BY_USER,
        S.CANCELLED_BY_VENDOR,
        S.CANCELLED_BY_SYSTEM,
        S.CANCELLED_BY_ADMIN,
        S.REJECTED,
        S.FAILED,
        S.EXPIRED,
    }
)

TERMINAL_STATES = frozenset({S.COMPLETED}) | _SIDE_EXITS

_FORWARD = {
    S.PENDING: {S.SEARCHING, S.VENDOR_ASSIGNED},
    S.SEARCHING: {S.VENDOR_ASSIGNED},
    S.VENDOR_ASSIGNED: {S.ACCEPTED},
    S.ACCEPTED: {S.CONFIRMED},
    S.CONFIRMED: {S.ON_ROUTE},
    S.ON_ROUTE: {S.ARRIVED},
    S.ARRIVED: {S.IN_PROGRESS},
    S.IN_PROGRESS: {S.COMPLETED},
}

TRANSITIONS = {
    state.value: frozenset(s.value for s in targets | _SIDE_EXITS)
    for state, targets in _FORWARD.items()
}
for _terminal in TERMINAL_STATES:
    TRANSITIONS[_terminal.value] = frozenset()

TERMINAL_VALUES = frozenset(s.value for s in TERMINAL_STATES)


def is_terminal(status: str) -> bool:
    return _value(status) in TERMINAL_VALUES


def can_transition(current: str, new: str) -> bool:
    return _value(new) in TRANSITIONS.get(_value(current), frozenset())


def history_record(
    booking_id: str,
    status: str,
    actor_id: str | None,
    actor_kind: str,
    reason: str | None,
    now: datetime,
) -> BookingStatusHistory:
    return BookingStatusHistory(
        booking_id=booking_id,
        status=_value(status),
        actor_id=actor_id,
        actor_kind=_value(actor_kind),
        reason=reason,
        created_at=now,
    )


def start(
    booking: Booking,
    actor_id: str | None,
    actor_kind: str,
    reason: str | None,
    now: datetime,
) -> None:
    """Put a freshly built booking into `pending` with its first history row."""
    if booking.status_history:
        raise InvalidTransition("Booking lifecycle already started", booking_id=booking.id)

    booking.status = S.PENDING.value
    booking.status_history.append(
        history_record(booking.id, S.PENDING, actor_id, actor_kind, reason, now)
    )
    booking.updated_at = now


def transition(
    booking: Booking,
    new_status: str,
    actor_id: str | None,
    actor_kind: str,
    reason: str | None,
    now: datetime,
) -> None:
    current = booking.status
    target = _value(new_status)

    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move booking from {current} to {target}",
            booking_id=booking.id,
            current=current,
            requested=target,
        )

    booking.status_history.append(
        history_record(booking.id, target, actor_id, actor_kind, reason, now)
    )
    booking.status = target
    booking.updated_at = now

    if target in (S.ARRIVED.value, S.IN_PROGRESS.value) and booking.actual_start is None:
        booking.actual_start = now

    if target == S.COMPLETED.value:
        booking.actual_end = now
        if booking.actual_start is not None:
            booking.duration_minutes = int((now - booking.actual_start).total_seconds() // 60)


def _value(status) -> str:
    return getattr(status, "value", status)

import enum


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    VENDOR_ASSIGNED = "vendor_assigned"
    ACCEPTED = "accepted"
    CONFIRMED = "confirmed"
    ON_ROUTE = "on_route"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED_BY_USER = "cancelled_by_user"
    CANCELLED_BY_VENDOR = "cancelled_by_vendor"
    CANCELLED_BY_SYSTEM = "cancelled_by_system"
    CANCELLED_BY_ADMIN = "cancelled_by_admin"
    REJECTED = "rejected"
    FAILED = "failed"
    EXPIRED = "expired"


# statuses in which a booking is still open for vendor acceptance
SEARCHABLE_STATUSES = (BookingStatus.PENDING.value, BookingStatus.SEARCHING.value)

# statuses in which the assigned vendor is holding the time slot
ENGAGED_STATUSES = (
    BookingStatus.VENDOR_ASSIGNED.value,
    BookingStatus.ACCEPTED.value,
    BookingStatus.CONFIRMED.value,
    BookingStatus.ON_ROUTE.value,
    BookingStatus.ARRIVED.value,
    BookingStatus.IN_PROGRESS.value,
)


class ActorKind(str, enum.Enum):
    USER = "user"
    VENDOR = "vendor"
    ADMIN = "admin"
    SYSTEM = "system"


class CandidateResponse(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    ONLINE = "online"


class PartyKind(str, enum.Enum):
    VENDOR = "vendor"
    PLATFORM = "platform"
    USER = "user"


class WalletStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    FROZEN = "frozen"


class TxnDirection(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"
    LIABILITY = "liability"


class TxnStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    OUTSTANDING = "outstanding"
    REFUND_DUE = "refund_due"


class TxnPurpose(str, enum.Enum):
    BOOKING_COMMISSION = "booking_commission"
    BILLING_COMMISSION = "billing_commission"
    COMMISSION_PAYABLE = "commission_payable"
    BOOKING_PAYMENT = "booking_payment"
    WALLET_TOPUP = "wallet_topup"


class CommissionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    OUTSTANDING = "outstanding"


class NotificationStatus(str, enum.Enum):
    DELIVERED = "delivered"
    FAILED = "failed"

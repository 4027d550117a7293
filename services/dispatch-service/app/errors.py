"""
Domain failures of the dispatch service.

Every rejection carries a stable machine-readable `code`, a human-readable
`message` and the HTTP status the API renders it with.
"""


class DispatchError(Exception):
    code = "dispatch_error"
    http_status = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# ---- validation ----

class ValidationFailed(DispatchError):
    code = "validation_failed"
    http_status = 400
    default_message = "Validation failed"


class InvalidTransition(DispatchError):
    code = "invalid_transition"
    http_status = 409
    default_message = "Illegal booking status transition"


class PricingLocked(DispatchError):
    code = "pricing_locked"
    http_status = 409
    default_message = "Pricing cannot change once payment has started"


# ---- race-lost / acceptance preconditions ----

class BookingNotAvailable(DispatchError):
    code = "booking_not_available"
    http_status = 409
    default_message = "Booking not available"


class VendorNotEligible(DispatchError):
    code = "vendor_not_eligible"
    http_status = 403
    default_message = "Vendor not eligible"


class VendorAlreadyResponded(DispatchError):
    code = "vendor_already_responded"
    http_status = 409
    default_message = "Vendor already responded"


class BookingAlreadyAssigned(DispatchError):
    code = "booking_already_assigned"
    http_status = 409
    default_message = "Booking already assigned"


class BookingExpired(DispatchError):
    code = "booking_expired"
    http_status = 410
    default_message = "Booking expired"


class VendorSlotConflict(DispatchError):
    code = "vendor_slot_conflict"
    http_status = 409
    default_message = "Vendor already holds a booking for this time slot"


class NoVendorsAvailable(DispatchError):
    """Matching came back empty; `code` says which filter emptied it."""

    http_status = 404

    MESSAGES = {
        "no_vendors_available": "No vendors are available at this date or time slot",
        "vendors_fully_booked": "All vendors are already booked for this time slot",
        "no_vendors_in_area": "No vendors are available in this area",
    }

    def __init__(self, code: str):
        if code not in self.MESSAGES:
            raise ValueError(f"unknown matching stage code: {code}")
        self.code = code
        super().__init__(self.MESSAGES[code])


# ---- ledger ----

class InsufficientBalance(DispatchError):
    code = "insufficient_balance"
    http_status = 402
    default_message = "Insufficient wallet balance to cover commission"


class WalletInactive(DispatchError):
    code = "wallet_inactive"
    http_status = 403
    default_message = "Wallet is not active"


# ---- not found ----

class NotFound(DispatchError):
    http_status = 404


class BookingNotFound(NotFound):
    code = "booking_not_found"
    default_message = "Booking not found"


class VendorNotFound(NotFound):
    code = "vendor_not_found"
    default_message = "Vendor not found"


class ServiceNotFound(NotFound):
    code = "service_not_found"
    default_message = "Service not found"


class WalletNotFound(NotFound):
    code = "wallet_not_found"
    default_message = "Wallet not found"


class SettingsNotFound(NotFound):
    code = "settings_not_found"
    default_message = "Platform settings not found"


# ---- access ----

class Unauthorized(DispatchError):
    code = "unauthorized"
    http_status = 401
    default_message = "Missing or invalid bearer token"


class Forbidden(DispatchError):
    code = "forbidden"
    http_status = 403
    default_message = "Not allowed to act on this booking"


# ---- payments ----

class PaymentNotAllowed(DispatchError):
    code = "payment_not_allowed"
    http_status = 409
    default_message = "Payment cannot be processed for this booking"


class PaymentAlreadyProcessed(DispatchError):
    code = "payment_already_processed"
    http_status = 409
    default_message = "Payment already completed for this booking"


class WebhookSignatureInvalid(DispatchError):
    code = "invalid_signature"
    http_status = 401
    default_message = "Webhook signature verification failed"


class GatewayUnavailable(DispatchError):
    code = "gateway_unavailable"
    http_status = 502
    default_message = "Payment gateway unavailable"

import os

SERVICE_NAME = "dispatch-service"

APP_ENV = (os.getenv("APP_ENV") or "development").strip().lower()

DATABASE_URL = os.getenv("DISPATCH_DB")
if not DATABASE_URL:
    raise RuntimeError("DISPATCH_DB environment variable is not set")

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events
EXCHANGE_NAME = "domain_events"

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

# ---- Auth ----
JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is not set")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

# ---- Matching window ----
# Production keeps requests open far longer than dev, where short loops are handy.
_DEFAULT_REQUEST_TIMEOUT = 1800 if APP_ENV == "production" else 150

BOOKING_REQUEST_TIMEOUT_SECONDS = int(
    os.getenv("BOOKING_REQUEST_TIMEOUT_SECONDS") or _DEFAULT_REQUEST_TIMEOUT
)
VENDOR_RESPONSE_TIMEOUT_SECONDS = int(os.getenv("VENDOR_RESPONSE_TIMEOUT_SECONDS") or "150")

SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS") or "60")

# ---- Wallet health ----
PENDING_GRACE_DAYS = int(os.getenv("PENDING_GRACE_DAYS") or "7")
RECENT_TRANSACTIONS_LIMIT = 10
PLATFORM_WALLET_ID = os.getenv("PLATFORM_WALLET_ID") or "platform"

# ---- External collaborators ----
PUSH_PROVIDER_URL = os.getenv("PUSH_PROVIDER_URL") or "http://push-gateway:8000/send"
PUSH_PROVIDER_KEY = os.getenv("PUSH_PROVIDER_KEY")
PUSH_TIMEOUT_SECONDS = 3.0

PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL") or "https://api.razorpay.com/v1"
PAYMENT_GATEWAY_KEY = os.getenv("PAYMENT_GATEWAY_KEY")
PAYMENT_GATEWAY_SECRET = os.getenv("PAYMENT_GATEWAY_SECRET")
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET") or ""
GATEWAY_TIMEOUT_SECONDS = 5.0

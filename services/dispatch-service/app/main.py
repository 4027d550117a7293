import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import LOG_LEVEL, SERVICE_NAME
from .errors import DispatchError
from .expiry_worker import expiry_loop
from .middleware import RequestLoggingMiddleware
from .rabbitmq import publisher
from .routes import router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "System", "description": "Operational endpoints (health, expiration sweep)."},
    {"name": "Bookings", "description": "Booking creation, vendor race and lifecycle."},
    {"name": "Match", "description": "Dry runs of vendor matching and pricing."},
    {"name": "Payments", "description": "Payment capture and gateway webhooks."},
    {"name": "Wallets", "description": "Vendor wallet balances and top-ups."},
]

app = FastAPI(title="Dispatch Service", openapi_tags=OPENAPI_TAGS)
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

_stop_event = asyncio.Event()
_expiry_task = None


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"code": "internal_error", "message": "Something went wrong"},
    )


@app.get("/health", tags=["System"])
async def health():
    return {"status": "ok", "service": SERVICE_NAME, "events_enabled": publisher.enabled}


@app.on_event("startup")
async def startup():
    global _expiry_task
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

    _stop_event.clear()
    _expiry_task = asyncio.create_task(expiry_loop(_stop_event))


@app.on_event("shutdown")
async def shutdown():
    global _expiry_task
    _stop_event.set()
    if _expiry_task:
        try:
            await _expiry_task
        except Exception:
            logger.exception("expiry worker stopped with an error")
        _expiry_task = None
    try:
        await publisher.close()
    except Exception as e:
        logger.warning("RabbitMQ close failed: %s", e)

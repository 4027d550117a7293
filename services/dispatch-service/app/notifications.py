import asyncio
import logging
import time
from dataclasses import dataclass

import httpx

from shared.redis import redis_client

from .config import PUSH_PROVIDER_KEY, PUSH_PROVIDER_URL, PUSH_TIMEOUT_SECONDS
from .matching import EligibleVendor

logger = logging.getLogger(__name__)


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker (shared across dispatch instances).

    States:
      - CLOSED: allow traffic, count failures
      - OPEN: block traffic for reset_timeout seconds
      - HALF_OPEN: after timeout, allow a trial request
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 15,
        client=None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.client = client or redis_client

    def _key_state(self):
        return f"cb:{self.name}:state"

    def _key_failures(self):
        return f"cb:{self.name}:failures"

    def _key_opened_at(self):
        return f"cb:{self.name}:opened_at"

    async def _get_state(self) -> str:
        state = await self.client.get(self._key_state())
        return state or "CLOSED"

    async def allow_request(self) -> None:
        state = await self._get_state()

        if state == "OPEN":
            opened_at = await self.client.get(self._key_opened_at())
            if not opened_at:
                await self.close()
                return

            if (time.time() - float(opened_at)) >= self.reset_timeout_seconds:
                # let one trial request through
                await self.client.set(self._key_state(), "HALF_OPEN")
                return

            raise CircuitBreakerOpen(f"Circuit breaker OPEN for {self.name}")

    async def record_success(self) -> None:
        await self.close()

    async def record_failure(self) -> None:
        state = await self._get_state()

        if state == "HALF_OPEN":
            await self.open()
            return

        failures = await self.client.incr(self._key_failures())
        if failures == 1:
            await self.client.expire(self._key_failures(), 60)

        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        ttl = self.reset_timeout_seconds + 30
        await self.client.set(self._key_state(), "OPEN", ex=ttl)
        await self.client.set(self._key_opened_at(), str(time.time()), ex=ttl)
        logger.warning("circuit breaker %s opened", self.name)

    async def close(self) -> None:
        await self.client.set(self._key_state(), "CLOSED", ex=3600)
        await self.client.delete(self._key_failures(), self._key_opened_at())


class PushNotifier:
    """Sends push payloads to the provider; any failure is reported as False."""

    def __init__(
        self,
        url: str = PUSH_PROVIDER_URL,
        api_key: str | None = PUSH_PROVIDER_KEY,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.breaker = breaker or CircuitBreaker("push-provider")
        self.transport = transport

    async def notify(self, token: str, payload: dict) -> bool:
        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen as e:
            logger.warning("push skipped: %s", e)
            return False

        headers = {"Authorization": f"key={self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=PUSH_TIMEOUT_SECONDS, transport=self.transport) as client:
                r = await client.post(self.url, json={"token": token, **payload}, headers=headers)
        except httpx.HTTPError as e:
            await self.breaker.record_failure()
            logger.warning("push provider unreachable: %s", e)
            return False

        if r.status_code >= 300:
            await self.breaker.record_failure()
            logger.warning("push provider returned %s", r.status_code)
            return False

        await self.breaker.record_success()
        return True


@dataclass(frozen=True)
class Delivery:
    vendor_id: str
    delivered: bool
    error: str | None = None


def booking_request_payload(booking_id: str, service_title: str | None, distance_km: float, expires_in_seconds: int) -> dict:
    return {
        "title": "New booking request",
        "body": f"{service_title or 'A service'} request {distance_km:.1f} km away",
        "data": {
            "type": "new_booking_request",
            "booking_id": booking_id,
            "distance_km": f"{distance_km:.2f}",
            "expires_in_seconds": str(expires_in_seconds),
        },
    }


async def fan_out(notifier, candidates: list[EligibleVendor], build_payload) -> list[Delivery]:
    """
    Notify every candidate at once. One vendor's failure (False, an exception
    or a missing token) never affects another's delivery.
    """

    async def send(candidate: EligibleVendor) -> Delivery:
        if not candidate.push_token:
            return Delivery(candidate.vendor_id, False, "missing push token")
        try:
            ok = await notifier.notify(candidate.push_token, build_payload(candidate))
        except Exception as e:
            logger.warning("push to vendor %s failed: %s", candidate.vendor_id, e)
            return Delivery(candidate.vendor_id, False, str(e) or type(e).__name__)
        return Delivery(candidate.vendor_id, bool(ok), None if ok else "provider rejected")

    return list(await asyncio.gather(*[send(c) for c in candidates]))

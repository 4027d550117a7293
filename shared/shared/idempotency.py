from .redis import redis_client

PROCESSED_TTL_SECONDS = 86400


def processed_key(event_id: str) -> str:
    return f"payment-event:{event_id}"


async def is_processed(event_id: str) -> bool:
    return bool(await redis_client.exists(processed_key(event_id)))


async def mark_processed(event_id: str):
    await redis_client.set(processed_key(event_id), "1", ex=PROCESSED_TTL_SECONDS)

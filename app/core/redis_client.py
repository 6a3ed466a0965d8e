"""
Redis Client - async singleton, plus the small primitives the scheduler needs:
short leases (SET NX EX) for loop self-serialization and log throttling, and
Pub/Sub publish for real-time conversation events.

משתמש ב-REDIS_URL מהקונפיגורציה (ברירת מחדל: redis://localhost:6379/0).
"""
import asyncio
import json
from typing import Any
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-REDIS_URL ללוגים (redis://:****@host:6379)."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "redis://****"


async def get_redis() -> aioredis.Redis:
    """מחזיר Redis client singleton (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        # בדיקה חוזרת אחרי נעילה - ייתכן ש-task מקבילי כבר אתחל
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """סגירת חיבור Redis - לקרוא ב-app shutdown ובסוף כל Celery task."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


async def acquire_lease(key: str, ttl_seconds: int) -> bool:
    """SET NX EX - True אם המפתח נתפס עכשיו, False אם מישהו אחר מחזיק בו."""
    client = await get_redis()
    return bool(await client.set(key, "1", nx=True, ex=ttl_seconds))


async def release_lease(key: str) -> None:
    client = await get_redis()
    await client.delete(key)


async def publish_event(event_type: str, payload: dict[str, Any]) -> None:
    """Publish a JSON event on the conversation events channel."""
    client = await get_redis()
    message = json.dumps({"type": event_type, **payload}, default=str)
    await client.publish(settings.REDIS_EVENTS_CHANNEL, message)

"""
שירות בדיקת בריאות - בדיקות תלויות (DB, Redis, SMS Gateway) ומצב ה-circuit breakers.

- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה של התלויות החיצוניות
"""
from typing import Any

import httpx
from sqlalchemy import text

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות - ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_SMS_GATEWAY = "error: sms_gateway_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_sms_gateway() -> str:
    """GET {SMS_GATEWAY_URL}/health - כל תשובה שאינה 200 נחשבת תקלה."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{settings.SMS_GATEWAY_URL}/health")
        if response.status_code != 200:
            logger.warning(
                "SMS gateway returned unhealthy status",
                extra_data={"status_code": response.status_code},
            )
            return _ERROR_SMS_GATEWAY
        return _CHECK_OK
    except Exception as e:
        logger.warning("SMS gateway health check failed", extra_data={"error": str(e)})
        return _ERROR_SMS_GATEWAY


def check_liveness() -> dict[str, Any]:
    return {"status": _STATUS_HEALTHY, "service": settings.APP_NAME}


async def check_readiness() -> dict[str, Any]:
    """
    status: "healthy" אם הכל תקין, "degraded" אם יש בעיה באחת התלויות.
    circuit_breakers: מצב נוכחי של כל breaker שנוצר בתהליך.
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "sms_gateway": await _check_sms_gateway(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {
        "status": overall_status,
        **checks,
        "circuit_breakers": CircuitBreaker.snapshot_all(),
    }

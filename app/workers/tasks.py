"""
Celery Tasks - beat-driven scheduler ticks and background jobs.

Every task runs its coroutine on a fresh event loop (run_async) with its own
DB engine (get_task_session). Scheduler loops are self-serializing through a
Redis tick lease: a tick that finds the lease taken exits immediately.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

import httpx

from app.core.circuit_breaker import circuit_breaker
from app.core.config import settings
from app.core.exceptions import ExternalServiceException
from app.core.logging import get_logger, set_correlation_id
from app.core.redis_client import acquire_lease, release_lease
from app.db.database import get_task_session
from app.domain.services.claim_service import ClaimService
from app.domain.services.decision_log_service import DecisionLogService
from app.domain.services.drip_service import DripLoop
from app.domain.services.nudge_loop_service import NudgeLoop
from app.domain.services.outbound_retry_service import OutboundRetryService
from app.domain.services.reply_loop_service import ReplyLoop
from app.workers.celery_app import celery_app

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

T = TypeVar("T")


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop - מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def run_tick(
    loop_name: str,
    tick: Callable[["AsyncSession"], Awaitable[T]],
) -> T | None:
    """
    Run one scheduler tick under the loop's Redis lease.

    Returns None (without touching the DB) when the previous tick of the
    same loop is still running.
    """
    key = f"scheduler_tick:{loop_name}"
    if not await acquire_lease(key, settings.TICK_LEASE_SECONDS):
        logger.info("Previous tick still running, skipping", extra_data={"loop": loop_name})
        return None
    try:
        async with get_task_session() as db:
            return await tick(db)
    finally:
        await release_lease(key)


@celery_app.task(name="app.workers.tasks.run_reply_loop", time_limit=settings.TICK_LEASE_SECONDS)
def run_reply_loop() -> dict[str, Any]:
    """React to new inbound messages."""

    async def _tick(db: "AsyncSession") -> dict[str, Any]:
        results = await ReplyLoop(db).run_once()
        return {
            "processed": len(results),
            "sent": sum(1 for result in results if result.sent),
        }

    return run_async(run_tick("reply", _tick)) or {"skipped": True}


@celery_app.task(name="app.workers.tasks.run_nudge_loop", time_limit=settings.TICK_LEASE_SECONDS)
def run_nudge_loop() -> dict[str, Any]:
    """Re-engage quiet leads."""

    async def _tick(db: "AsyncSession") -> dict[str, Any]:
        results = await NudgeLoop(db).run_once()
        return {
            "processed": len(results),
            "sent": sum(1 for result in results if result.sent),
        }

    return run_async(run_tick("nudge", _tick)) or {"skipped": True}


@celery_app.task(name="app.workers.tasks.run_drip_loop", time_limit=settings.TICK_LEASE_SECONDS)
def run_drip_loop() -> dict[str, Any]:
    """Opening hooks and scripted follow-ups for never-engaged leads."""

    async def _tick(db: "AsyncSession") -> dict[str, Any]:
        return {"sent": await DripLoop(db).run_once()}

    return run_async(run_tick("drip", _tick)) or {"skipped": True}


@celery_app.task(name="app.workers.tasks.reap_stale_locks")
def reap_stale_locks() -> dict[str, Any]:
    """Release processing locks whose lease expired."""

    async def _reap():
        async with get_task_session() as db:
            released = await ClaimService(db).reap_stale_locks()
            return {"released": released}

    return run_async(_reap())


@celery_app.task(name="app.workers.tasks.retry_failed_messages")
def retry_failed_messages() -> dict[str, Any]:
    """Resend outbound messages left FAILED whose backoff elapsed."""

    async def _tick(db: "AsyncSession") -> dict[str, Any]:
        return {"delivered": await OutboundRetryService(db).run_once()}

    return run_async(run_tick("outbound_retry", _tick)) or {"skipped": True}


@celery_app.task(name="app.workers.tasks.cleanup_old_decision_logs")
def cleanup_old_decision_logs(days: int | None = None) -> dict[str, Any]:
    """Delete decision log rows older than the retention window."""
    retention_days = days or settings.DECISION_LOG_RETENTION_DAYS

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await DecisionLogService(db).cleanup_older_than(retention_days)
            return {"deleted": deleted}

    return run_async(_cleanup())


@circuit_breaker("enrichment")
async def _post_sync_request(payload: dict) -> None:
    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.post(settings.ENRICHMENT_WEBHOOK_URL, json=payload)
    if response.status_code >= 400:
        raise ExternalServiceException(
            service_name="enrichment",
            message=f"enrichment webhook returned status {response.status_code}",
            details={"status_code": response.status_code},
        )


@celery_app.task(
    name="app.workers.tasks.sync_lead_documents",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def sync_lead_documents(self, conversation_id: int, reason: str) -> dict[str, Any]:
    """
    Ask the external analysis job to sync the lead's documents.

    The job writes its results to conversations.strategy_context on its own;
    nothing here waits for it.
    """
    if not settings.ENRICHMENT_WEBHOOK_URL:
        logger.warning(
            "ENRICHMENT_WEBHOOK_URL not configured, document sync skipped",
            extra_data={"conversation_id": conversation_id},
        )
        return {"status": "skipped"}

    try:
        run_async(_post_sync_request({"conversation_id": conversation_id, "reason": reason}))
    except ExternalServiceException as exc:
        logger.warning(
            "Document sync request failed, retrying",
            extra_data={"conversation_id": conversation_id, "error": exc.message},
        )
        raise self.retry(exc=exc)
    except httpx.RequestError as exc:
        logger.warning(
            "Document sync request network error, retrying",
            extra_data={"conversation_id": conversation_id, "error": str(exc)},
        )
        raise self.retry(exc=exc)

    logger.info(
        "Document sync requested from analysis job",
        extra_data={"conversation_id": conversation_id, "reason": reason},
    )
    return {"status": "requested"}

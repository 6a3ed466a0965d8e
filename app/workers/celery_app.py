"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "leadpilot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.BUSINESS_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # לולאת תגובה - הודעות נכנסות חדשות
    "run-reply-loop": {
        "task": "app.workers.tasks.run_reply_loop",
        "schedule": float(settings.REPLY_LOOP_INTERVAL_SECONDS),
    },
    # לולאת nudge - לידים שענו בעבר ושתקו
    "run-nudge-loop": {
        "task": "app.workers.tasks.run_nudge_loop",
        "schedule": float(settings.NUDGE_LOOP_INTERVAL_SECONDS),
    },
    "run-drip-loop": {
        "task": "app.workers.tasks.run_drip_loop",
        "schedule": float(settings.DRIP_LOOP_INTERVAL_SECONDS),
    },
    # שחרור נעילות שה-lease שלהן פג (worker שקרס באמצע)
    "reap-stale-locks-every-5-minutes": {
        "task": "app.workers.tasks.reap_stale_locks",
        "schedule": 300.0,
    },
    "retry-failed-messages-every-minute": {
        "task": "app.workers.tasks.retry_failed_messages",
        "schedule": 60.0,
    },
    "cleanup-old-decision-logs-daily": {
        "task": "app.workers.tasks.cleanup_old_decision_logs",
        "schedule": crontab(hour="3", minute="0"),
    },
}

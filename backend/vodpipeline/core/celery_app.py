"""Celery application configuration.

Transcode tasks are routed to their own queue. Each scheduler instance owns
``TRANSCODE_MAX_CONCURRENT_JOBS`` encoder slots, so that queue must be consumed
by workers running one task at a time:

    celery -A vodpipeline.core.celery_app worker -Q transcode --concurrency 1

Everything else stays on the default queue.
"""

from celery import Celery

from vodpipeline.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "vodpipeline",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # a poll waits on up to one full ladder per encoder slot, in parallel
    task_time_limit=settings.transcode_task_time_limit,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_routes={
        "pipeline.poll_pending_videos": {"queue": settings.TRANSCODE_QUEUE},
        "pipeline.resubmit_video": {"queue": settings.TRANSCODE_QUEUE},
    },
)

celery_app.conf.beat_schedule = {
    "poll-pending-videos": {
        "task": "pipeline.poll_pending_videos",
        "schedule": float(settings.TRANSCODE_POLL_INTERVAL_SECONDS),
        # polls that queued up behind a long drain are dropped, not stacked
        "options": {"expires": float(settings.TRANSCODE_POLL_INTERVAL_SECONDS)},
    },
    "reclaim-expired-leases": {
        "task": "pipeline.reclaim_expired_leases",
        "schedule": 300.0,
    },
    "refresh-view-counts": {
        "task": "analytics.refresh_view_counts",
        "schedule": 3600.0,
    },
    "prune-view-report-receipts": {
        "task": "analytics.prune_view_report_receipts",
        "schedule": 900.0,
    },
}

if settings.INGEST_SCAN_ENABLED:
    celery_app.conf.beat_schedule["scan-ingest-directory"] = {
        "task": "video.scan_ingest_directory",
        "schedule": 300.0,
    }

celery_app.autodiscover_tasks(
    [
        "vodpipeline.modules.pipeline",
        "vodpipeline.modules.analytics",
        "vodpipeline.modules.video",
    ]
)

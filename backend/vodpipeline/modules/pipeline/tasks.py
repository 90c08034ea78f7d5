"""Celery tasks driving the transcode pipeline."""

import asyncio
import logging
from dataclasses import asdict

from vodpipeline.core.celery_app import celery_app
from vodpipeline.core.config import get_settings
from vodpipeline.core.database import create_engine, create_session_maker
from vodpipeline.core.logging import log_info
from vodpipeline.modules.job.tasks import BaseTaskWithRetry
from vodpipeline.modules.pipeline.scheduler import create_scheduler
from vodpipeline.modules.video.catalog import CatalogAdapter, CatalogUnavailable

logger = logging.getLogger(__name__)


async def _poll_pending_videos() -> dict:
    settings = get_settings()
    engine = create_engine(settings)
    try:
        scheduler = create_scheduler(settings, create_session_maker(engine))
        summary = await scheduler.poll_once()
        await scheduler.drain()
        return asdict(summary)
    finally:
        await engine.dispose()


async def _resubmit_video(video_id: int) -> dict:
    settings = get_settings()
    engine = create_engine(settings)
    try:
        scheduler = create_scheduler(settings, create_session_maker(engine))
        job = await scheduler.resubmit(video_id)
        await scheduler.drain()
        return {"video_id": video_id, "attempt": job.attempt}
    finally:
        await engine.dispose()


async def _reclaim_expired_leases() -> int:
    settings = get_settings()
    engine = create_engine(settings)
    try:
        catalog = CatalogAdapter(create_session_maker(engine))
        return await catalog.reclaim_expired_leases(settings.TRANSCODE_MAX_ATTEMPTS)
    finally:
        await engine.dispose()


@celery_app.task(name="pipeline.poll_pending_videos")
def poll_pending_videos() -> dict:
    """Claim pending videos up to the free encoder slots and transcode them."""
    summary = asyncio.run(_poll_pending_videos())
    log_info(logger, "Poll task finished", **summary)
    return summary


@celery_app.task(name="pipeline.reclaim_expired_leases")
def reclaim_expired_leases() -> dict:
    return {"reclaimed": asyncio.run(_reclaim_expired_leases())}


class ResubmitVideoTask(BaseTaskWithRetry):
    retry_config_name = "catalog"


@celery_app.task(bind=True, base=ResubmitVideoTask, name="pipeline.resubmit_video")
def resubmit_video(self: ResubmitVideoTask, video_id: int) -> dict:
    """Re-run a failed video on request of an operator."""
    try:
        return asyncio.run(_resubmit_video(video_id))
    except CatalogUnavailable as exc:
        self.retry_with_backoff(exc, self.request.retries + 1)
        raise

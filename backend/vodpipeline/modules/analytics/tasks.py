"""Periodic view analytics maintenance."""

import asyncio
import logging
from datetime import timedelta

from vodpipeline.core.celery_app import celery_app
from vodpipeline.core.config import get_settings
from vodpipeline.core.database import create_engine, create_session_maker, utcnow
from vodpipeline.core.logging import log_info
from vodpipeline.modules.video.catalog import CatalogAdapter

logger = logging.getLogger(__name__)


async def _with_catalog(operation):
    settings = get_settings()
    engine = create_engine(settings)
    try:
        return await operation(CatalogAdapter(create_session_maker(engine)), settings)
    finally:
        await engine.dispose()


@celery_app.task(name="analytics.refresh_view_counts")
def refresh_view_counts() -> dict:
    """Recompute cached per-video view counts from the view records."""
    updated = asyncio.run(_with_catalog(lambda catalog, _: catalog.refresh_view_counts()))
    log_info(logger, "View counts refreshed", videos=updated)
    return {"videos": updated}


@celery_app.task(name="analytics.prune_view_report_receipts")
def prune_view_report_receipts() -> dict:
    """Drop report receipts older than the retention period."""

    async def prune(catalog: CatalogAdapter, settings) -> int:
        cutoff = utcnow() - timedelta(seconds=settings.VIEW_REPORT_RECEIPT_RETENTION_SECONDS)
        return await catalog.prune_view_report_receipts(cutoff)

    pruned = asyncio.run(_with_catalog(prune))
    return {"pruned": pruned}

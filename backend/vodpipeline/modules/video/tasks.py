"""Celery tasks for the video catalog."""

import asyncio
from dataclasses import asdict
from pathlib import Path

from vodpipeline.core.celery_app import celery_app
from vodpipeline.core.config import get_settings
from vodpipeline.core.database import create_engine, create_session_maker
from vodpipeline.modules.video.catalog import CatalogAdapter
from vodpipeline.modules.video.scanner import scan_ingest_directory as scan_inbox


async def _scan() -> dict:
    settings = get_settings()
    engine = create_engine(settings)
    try:
        result = await scan_inbox(
            CatalogAdapter(create_session_maker(engine)),
            Path(settings.INGEST_SCAN_PATH),
            Path(settings.UPLOAD_ROOT),
        )
        return asdict(result)
    finally:
        await engine.dispose()


@celery_app.task(name="video.scan_ingest_directory")
def scan_ingest_directory() -> dict:
    """Register new uploads found in the ingest inbox."""
    return asyncio.run(_scan())

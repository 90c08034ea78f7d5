"""Pipeline administration API router."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from vodpipeline.core.database import get_db, utcnow
from vodpipeline.core.identity import CallerIdentity, require_admin
from vodpipeline.core.logging import log_info
from vodpipeline.modules.pipeline.tasks import resubmit_video
from vodpipeline.modules.video.models import VideoStatus
from vodpipeline.modules.video.repository import VideoRepository
from vodpipeline.modules.video.schemas import PipelineStatusResponse, ResubmitResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


@router.post(
    "/videos/{video_token}/resubmit",
    response_model=ResubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def resubmit_failed_video(
    video_token: str,
    admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Queue a failed video for another transcode run."""
    video = await VideoRepository(db).get_by_token(video_token)
    if video is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    if video.status != VideoStatus.FAILED.value:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only failed videos can be resubmitted (status is {video.status})",
        )

    result = resubmit_video.delay(video.id)
    log_info(
        logger,
        "Resubmission queued",
        video_id=video.id,
        requested_by=admin.user_id,
        task_id=result.id,
    )
    return ResubmitResponse(video_token=video.public_token, task_id=result.id)


@router.get("/status", response_model=PipelineStatusResponse)
async def get_pipeline_status(
    _admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Number of videos in each transcode state."""
    counts = await VideoRepository(db).status_counts()
    return PipelineStatusResponse(counts=counts, generated_at=utcnow())

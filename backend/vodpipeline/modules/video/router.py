"""Video playback API router."""

from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from vodpipeline.core.config import get_settings
from vodpipeline.core.database import get_db
from vodpipeline.core.identity import CallerIdentity, get_caller_identity
from vodpipeline.core.storage import StorageBackend, create_storage_backend
from vodpipeline.modules.video.repository import VideoRepository
from vodpipeline.modules.video.schemas import PlaybackInfo, RenditionInfo

router = APIRouter(prefix="/videos", tags=["videos"])


@lru_cache
def get_storage_backend() -> StorageBackend:
    return create_storage_backend(get_settings())


@router.get("/{video_token}/playback", response_model=PlaybackInfo)
async def get_playback_info(
    video_token: str,
    _caller: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
    storage: StorageBackend = Depends(get_storage_backend),
):
    """Master playlist URL of a video.

    A video becomes playable as soon as its lowest rendition is published,
    and stays playable at its last published state if a later rendition fails.
    """
    video = await VideoRepository(db).get_by_token(video_token)
    if video is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")

    return PlaybackInfo(
        video_token=video.public_token,
        title=video.title,
        status=video.status,
        playable=video.is_playable,
        master_playlist_url=(
            storage.public_url(video.master_playlist_key) if video.is_playable else None
        ),
        renditions=[RenditionInfo.model_validate(r) for r in video.renditions],
    )

"""Tests for catalog claims, leases and state transitions."""

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from vodpipeline.core.config import Settings
from vodpipeline.core.database import create_engine, create_session_maker, utcnow
from vodpipeline.modules.transcoding.abr import RENDITION_CATALOG
from vodpipeline.modules.video.catalog import (
    CatalogAdapter,
    CatalogUnavailable,
    LeaseLostError,
    VideoNotFoundError,
)
from vodpipeline.modules.video.models import VideoStatus


class TestClaims:
    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Race", "race/source.mp4")

        results = await asyncio.gather(
            *[catalog.mark_transcoding(video.id, f"worker-{i}", 600) for i in range(8)]
        )

        assert results.count(True) == 1
        claimed = await catalog.get_video(video.id)
        assert claimed.status == VideoStatus.TRANSCODING.value
        assert claimed.lease_owner == f"worker-{results.index(True)}"
        assert claimed.transcode_attempts == 1

    @pytest.mark.asyncio
    async def test_claimed_video_not_pending(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("One", "one/source.mp4")
        assert await catalog.mark_transcoding(video.id, "w1", 600)

        assert await catalog.next_pending_videos(10) == []
        assert not await catalog.mark_transcoding(video.id, "w2", 600)

    @pytest.mark.asyncio
    async def test_pending_oldest_first(self, catalog: CatalogAdapter):
        first = await catalog.register_upload("First", "a/source.mp4")
        second = await catalog.register_upload("Second", "b/source.mp4")
        third = await catalog.register_upload("Third", "c/source.mp4")

        pending = await catalog.next_pending_videos(2)
        assert [v.id for v in pending] == [first.id, second.id]
        pending = await catalog.next_pending_videos(10)
        assert [v.id for v in pending] == [first.id, second.id, third.id]

    @pytest.mark.asyncio
    async def test_retry_delay_gates_claims(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Later", "later/source.mp4")
        assert await catalog.mark_transcoding(video.id, "w1", 600)
        assert await catalog.requeue(video.id, utcnow() + timedelta(hours=1), "encoder crashed", "w1")

        assert await catalog.next_pending_videos(10) == []
        assert not await catalog.mark_transcoding(video.id, "w2", 600)

        requeued = await catalog.get_video(video.id)
        assert requeued.status == VideoStatus.UPLOADED.value
        assert requeued.failure_reason == "encoder crashed"

    @pytest.mark.asyncio
    async def test_requeue_requires_lease(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Owned", "owned/source.mp4")
        assert await catalog.mark_transcoding(video.id, "w1", 600)
        assert not await catalog.requeue(video.id, utcnow(), "x", "w2")


class TestLeaseExpiry:
    @pytest.mark.asyncio
    async def test_expired_lease_returns_video_to_queue(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Crash", "crash/source.mp4")
        assert await catalog.mark_transcoding(video.id, "dead-worker", -1)

        assert await catalog.reclaim_expired_leases(max_attempts=3) == 1

        reclaimed = await catalog.get_video(video.id)
        assert reclaimed.status == VideoStatus.UPLOADED.value
        assert reclaimed.lease_owner is None
        assert await catalog.mark_transcoding(video.id, "live-worker", 600)
        assert (await catalog.get_video(video.id)).transcode_attempts == 2

    @pytest.mark.asyncio
    async def test_live_lease_not_reclaimed(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Busy", "busy/source.mp4")
        assert await catalog.mark_transcoding(video.id, "w1", 600)

        assert await catalog.reclaim_expired_leases(max_attempts=3) == 0
        assert (await catalog.get_video(video.id)).lease_owner == "w1"

    @pytest.mark.asyncio
    async def test_expired_lease_on_final_attempt_fails(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Last", "last/source.mp4")
        assert await catalog.mark_transcoding(video.id, "dead-worker", -1)

        assert await catalog.reclaim_expired_leases(max_attempts=1) == 1
        failed = await catalog.get_video(video.id)
        assert failed.status == VideoStatus.FAILED.value
        assert "Lease expired" in failed.failure_reason

    @pytest.mark.asyncio
    async def test_renew_lease(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Long", "long/source.mp4")
        assert await catalog.mark_transcoding(video.id, "w1", 1)
        before = (await catalog.get_video(video.id)).lease_expires_at

        assert await catalog.renew_lease(video.id, "w1", 600)
        assert not await catalog.renew_lease(video.id, "w2", 600)
        assert (await catalog.get_video(video.id)).lease_expires_at > before


class TestTerminalStates:
    @pytest.mark.asyncio
    async def test_ready_requires_master_playlist(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Empty", "empty/source.mp4")
        assert await catalog.mark_transcoding(video.id, "w1", 600)

        assert not await catalog.mark_ready(video.id, "w1")

        await catalog.record_rendition_complete(
            video.id,
            RENDITION_CATALOG["480p"],
            f"hls/{video.public_token}/master.m3u8",
            playlist_key=f"hls/{video.public_token}/480p/playlist.m3u8",
            segment_count=4,
            lease_owner="w1",
        )
        assert await catalog.mark_ready(video.id, "w1")

        ready = await catalog.get_video(video.id)
        assert ready.status == VideoStatus.READY.value
        assert ready.ready_at is not None
        assert ready.lease_owner is None
        assert ready.is_playable

    @pytest.mark.asyncio
    async def test_record_rendition_twice_is_idempotent(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Twice", "twice/source.mp4")
        assert await catalog.mark_transcoding(video.id, "w1", 600)
        for _ in range(2):
            await catalog.record_rendition_complete(
                video.id,
                RENDITION_CATALOG["480p"],
                "hls/t/master.m3u8",
                playlist_key="hls/t/480p/playlist.m3u8",
                segment_count=2,
                lease_owner="w1",
            )
        assert (await catalog.get_video(video.id)).completed_renditions == ["480p"]

    @pytest.mark.asyncio
    async def test_record_rendition_without_lease(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Stolen", "stolen/source.mp4")
        assert await catalog.mark_transcoding(video.id, "w1", 600)

        with pytest.raises(LeaseLostError):
            await catalog.record_rendition_complete(
                video.id,
                RENDITION_CATALOG["480p"],
                "hls/t/master.m3u8",
                playlist_key="hls/t/480p/playlist.m3u8",
                segment_count=2,
                lease_owner="w2",
            )
        assert (await catalog.get_video(video.id)).completed_renditions == []

    @pytest.mark.asyncio
    async def test_failed_video_resubmission(self, catalog: CatalogAdapter):
        video = await catalog.register_upload("Broken", "broken/source.mp4")
        assert await catalog.mark_transcoding(video.id, "w1", 600)
        assert await catalog.mark_failed(video.id, "source is corrupt", "w1")

        assert not await catalog.mark_transcoding(video.id, "w2", 600)
        assert await catalog.resubmit(video.id, "w2", 600)

        resubmitted = await catalog.get_video(video.id)
        assert resubmitted.status == VideoStatus.TRANSCODING.value
        assert resubmitted.transcode_attempts == 1
        assert resubmitted.failure_reason is None

    @pytest.mark.asyncio
    async def test_status_counts(self, catalog: CatalogAdapter):
        a = await catalog.register_upload("A", "a/source.mp4")
        await catalog.register_upload("B", "b/source.mp4")
        assert await catalog.mark_transcoding(a.id, "w1", 600)

        counts = await catalog.status_counts()
        assert counts == {"uploaded": 1, "transcoding": 1, "ready": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_unknown_video(self, catalog: CatalogAdapter):
        with pytest.raises(VideoNotFoundError):
            await catalog.get_video(4242)
        with pytest.raises(VideoNotFoundError):
            await catalog.get_video_by_token("f" * 32)


class TestCatalogUnavailable:
    @pytest.mark.asyncio
    async def test_unreachable_database(self, tmp_path: Path):
        settings = Settings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'catalog.db'}")
        engine = create_engine(settings)
        try:
            catalog = CatalogAdapter(create_session_maker(engine))
            with pytest.raises(CatalogUnavailable):
                await catalog.next_pending_videos(5)
        finally:
            await engine.dispose()

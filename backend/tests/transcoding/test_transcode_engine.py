"""Tests for the transcode engine's progressive publishing."""

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update

from vodpipeline.core.database import utcnow
from vodpipeline.core.storage import StorageService
from vodpipeline.modules.transcoding.abr import RENDITION_CATALOG, RenditionLadder
from vodpipeline.modules.transcoding.engine import (
    SourceUnavailableError,
    StreamLayout,
    TranscodeEngine,
    TranscodeJob,
    collect_rendition_output,
)
from vodpipeline.modules.transcoding.ffmpeg import EncodeFailure, IncompleteOutputError
from vodpipeline.modules.transcoding.playlist import parse_master_playlist
from vodpipeline.modules.video.catalog import CatalogAdapter, CatalogUnavailable, LeaseLostError
from vodpipeline.modules.video.models import Video


WORKER = "worker-test"


class UnreachableLeaseCatalog(CatalogAdapter):
    async def renew_lease(self, video_id, lease_owner, lease_seconds):
        raise CatalogUnavailable("connection refused")


async def claimed_job(catalog: CatalogAdapter, engine: TranscodeEngine, source_path: str) -> TranscodeJob:
    video = await catalog.register_upload("Clip", source_path)
    assert await catalog.mark_transcoding(video.id, WORKER, 600)
    video = await catalog.get_video(video.id)
    return TranscodeJob(
        video_id=video.id,
        public_token=video.public_token,
        source_path=video.source_path,
        renditions=list(RenditionLadder.default()),
        working_dir=engine.working_dir_for(video.public_token, video.transcode_attempts),
        attempt=video.transcode_attempts,
        completed_renditions=video.completed_renditions,
        lease_owner=WORKER,
    )


def master_uris(text: str) -> list[str]:
    return [variant.uri for variant in parse_master_playlist(text)]


class TestTranscodeEngine:
    @pytest.mark.asyncio
    async def test_all_renditions_published(
        self, catalog, storage_service: StorageService, test_settings, fake_runner, upload_source
    ):
        engine = TranscodeEngine(storage_service, catalog, fake_runner, test_settings)
        job = await claimed_job(catalog, engine, upload_source("clip"))

        result = await engine.run(job)

        assert fake_runner.calls == ["480p", "720p", "1080p"]
        assert result.completed_renditions == ["480p", "720p", "1080p"]
        master = (await storage_service.get(f"hls/{job.public_token}/master.m3u8")).decode()
        assert master_uris(master) == ["480p/playlist.m3u8", "720p/playlist.m3u8", "1080p/playlist.m3u8"]
        for name in ("480p", "720p", "1080p"):
            keys = await storage_service.list(f"hls/{job.public_token}/{name}")
            assert f"hls/{job.public_token}/{name}/playlist.m3u8" in keys
            assert len([k for k in keys if k.endswith(".ts")]) == 3

        video = await catalog.get_video(job.video_id)
        assert video.master_playlist_key == f"hls/{job.public_token}/master.m3u8"
        assert video.completed_renditions == ["480p", "720p", "1080p"]
        assert [r.segment_count for r in video.renditions] == [3, 3, 3]
        assert not job.working_dir.exists()

    @pytest.mark.asyncio
    async def test_lowest_rendition_playable_before_the_rest(
        self, catalog, storage_service: StorageService, test_settings, make_runner, upload_source
    ):
        """While 720p encodes, the master lists only 480p and its files exist."""
        seen: dict[str, list[str]] = {}
        token_holder: dict[str, str] = {}

        async def snapshot(request):
            if request.rendition.name == "720p":
                token = token_holder["token"]
                master = (await storage_service.get(f"hls/{token}/master.m3u8")).decode()
                seen["master"] = master_uris(master)
                seen["files"] = await storage_service.list(f"hls/{token}/480p")

        runner = make_runner(before_encode=snapshot)
        engine = TranscodeEngine(storage_service, catalog, runner, test_settings)
        job = await claimed_job(catalog, engine, upload_source("clip"))
        token_holder["token"] = job.public_token

        await engine.run(job)

        assert seen["master"] == ["480p/playlist.m3u8"]
        assert f"hls/{job.public_token}/480p/playlist.m3u8" in seen["files"]
        assert f"hls/{job.public_token}/480p/segment0.ts" in seen["files"]

    @pytest.mark.asyncio
    async def test_failure_keeps_published_renditions(
        self, catalog, storage_service: StorageService, test_settings, make_runner, upload_source
    ):
        runner = make_runner(failures={"720p": 1})
        engine = TranscodeEngine(storage_service, catalog, runner, test_settings)
        job = await claimed_job(catalog, engine, upload_source("clip"))

        with pytest.raises(EncodeFailure):
            await engine.run(job)

        assert runner.calls == ["480p", "720p"]
        master = (await storage_service.get(f"hls/{job.public_token}/master.m3u8")).decode()
        assert master_uris(master) == ["480p/playlist.m3u8"]
        video = await catalog.get_video(job.video_id)
        assert video.completed_renditions == ["480p"]
        assert video.is_playable
        assert not job.working_dir.exists()

    @pytest.mark.asyncio
    async def test_resume_skips_completed_renditions(
        self, catalog, storage_service: StorageService, test_settings, make_runner, upload_source
    ):
        runner = make_runner(failures={"720p": 1})
        engine = TranscodeEngine(storage_service, catalog, runner, test_settings)
        job = await claimed_job(catalog, engine, upload_source("clip"))
        with pytest.raises(EncodeFailure):
            await engine.run(job)

        video = await catalog.get_video(job.video_id)
        job.completed_renditions = video.completed_renditions
        await engine.run(job)

        assert runner.calls == ["480p", "720p", "720p", "1080p"]
        master = (await storage_service.get(f"hls/{job.public_token}/master.m3u8")).decode()
        assert master_uris(master) == ["480p/playlist.m3u8", "720p/playlist.m3u8", "1080p/playlist.m3u8"]

    @pytest.mark.asyncio
    async def test_missing_source(self, catalog, storage_service, test_settings, fake_runner):
        engine = TranscodeEngine(storage_service, catalog, fake_runner, test_settings)
        job = await claimed_job(catalog, engine, "nowhere/source.mp4")

        with pytest.raises(SourceUnavailableError):
            await engine.run(job)
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_source_downloaded_from_storage(
        self, catalog, storage_service: StorageService, test_settings, fake_runner
    ):
        await storage_service.put("sources/clip.mp4", b"source")
        engine = TranscodeEngine(storage_service, catalog, fake_runner, test_settings)
        job = await claimed_job(catalog, engine, "sources/clip.mp4")

        await engine.run(job)
        assert fake_runner.calls == ["480p", "720p", "1080p"]

    @pytest.mark.asyncio
    async def test_lease_lost_stops_publishing(
        self, catalog, storage_service, test_settings, fake_runner, upload_source
    ):
        engine = TranscodeEngine(storage_service, catalog, fake_runner, test_settings)
        job = await claimed_job(catalog, engine, upload_source("clip"))
        job.lease_owner = "someone-else"

        with pytest.raises(LeaseLostError):
            await engine.run(job)
        assert fake_runner.calls == ["480p"]
        assert await storage_service.list(f"hls/{job.public_token}") == []

    @pytest.mark.asyncio
    async def test_heartbeat_cancels_encode_when_lease_is_taken(
        self, catalog, session_maker, storage_service, test_settings, make_runner, upload_source
    ):
        async def take_lease(request):
            async with session_maker() as session:
                await session.execute(
                    update(Video).where(Video.id == job.video_id).values(lease_owner="worker-b")
                )
                await session.commit()

        runner = make_runner(delay=30.0, before_encode=take_lease)
        engine = TranscodeEngine(storage_service, catalog, runner, test_settings, lease_seconds=3)
        job = await claimed_job(catalog, engine, upload_source("clip"))

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(LeaseLostError):
            await engine.run(job)

        assert loop.time() - started < 10
        assert runner.calls == ["480p"]
        assert runner.active == 0
        assert await storage_service.list(f"hls/{job.public_token}") == []
        assert not job.working_dir.exists()

    @pytest.mark.asyncio
    async def test_lease_trusted_until_expiry_while_catalog_is_down(
        self, session_maker, storage_service, test_settings, fake_runner
    ):
        engine = TranscodeEngine(
            storage_service, UnreachableLeaseCatalog(session_maker), fake_runner, test_settings
        )
        job = TranscodeJob(
            video_id=1,
            public_token="t",
            source_path="clip/source.mp4",
            renditions=list(RenditionLadder.default()),
            working_dir=engine.working_dir_for("t", 1),
            attempt=1,
            lease_owner=WORKER,
            lease_expires_at=utcnow() + timedelta(minutes=5),
        )
        await engine._ensure_lease(job)

        job.lease_expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(LeaseLostError):
            await engine._ensure_lease(job)


class TestCollectRenditionOutput:
    def test_complete_output(self, tmp_path: Path):
        out = tmp_path / "480p"
        out.mkdir()
        (out / "segment0.ts").write_bytes(b"a")
        (out / "playlist.m3u8").write_text("#EXTM3U\n#EXTINF:6,\nsegment0.ts\n#EXT-X-ENDLIST\n")

        files, count = collect_rendition_output(RENDITION_CATALOG["480p"], out)
        assert count == 1
        assert set(files) == {"playlist.m3u8", "segment0.ts"}

    def test_missing_segment(self, tmp_path: Path):
        out = tmp_path / "480p"
        out.mkdir()
        (out / "playlist.m3u8").write_text("#EXTM3U\n#EXTINF:6,\nsegment0.ts\n#EXT-X-ENDLIST\n")

        with pytest.raises(IncompleteOutputError):
            collect_rendition_output(RENDITION_CATALOG["480p"], out)

    def test_missing_playlist(self, tmp_path: Path):
        with pytest.raises(IncompleteOutputError):
            collect_rendition_output(RENDITION_CATALOG["480p"], tmp_path)

    def test_truncated_playlist(self, tmp_path: Path):
        (tmp_path / "segment0.ts").write_bytes(b"a")
        (tmp_path / "playlist.m3u8").write_text("#EXTM3U\n#EXTINF:6,\nsegment0.ts\n")

        with pytest.raises(IncompleteOutputError):
            collect_rendition_output(RENDITION_CATALOG["480p"], tmp_path)


class TestStreamLayout:
    def test_keys(self):
        layout = StreamLayout("hls")
        assert layout.master_key("tok") == "hls/tok/master.m3u8"
        assert layout.rendition_root("tok", "720p") == "hls/tok/720p"
        assert layout.playlist_key("tok", "720p") == "hls/tok/720p/playlist.m3u8"

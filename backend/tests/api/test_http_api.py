"""End-to-end tests of the HTTP surface against an isolated catalog."""

from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from vodpipeline.core.config import get_settings
from vodpipeline.core.database import get_db
from vodpipeline.main import app
from vodpipeline.modules.pipeline import router as pipeline_router
from vodpipeline.modules.transcoding.abr import RENDITION_CATALOG
from vodpipeline.modules.video.router import get_storage_backend


USER = {"X-User-Id": "viewer-1"}
ADMIN = {"X-User-Id": "ops-1", "X-User-Role": "admin"}


@pytest_asyncio.fixture
async def client(session_maker, test_settings, local_storage):
    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_storage_backend] = lambda: local_storage
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


async def publish_480p(catalog, video) -> None:
    assert await catalog.mark_transcoding(video.id, "w1", 600)
    await catalog.record_rendition_complete(
        video.id,
        RENDITION_CATALOG["480p"],
        f"hls/{video.public_token}/master.m3u8",
        playlist_key=f"hls/{video.public_token}/480p/playlist.m3u8",
        segment_count=2,
        lease_owner="w1",
    )


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_metrics_exposed(self, client):
        await client.get("/health")
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "vodpipeline_app_info" in response.text

    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Correlation-ID": "abc-123"})
        assert response.headers["X-Correlation-ID"] == "abc-123"


class TestPlaybackEndpoint:
    @pytest.mark.asyncio
    async def test_requires_identity(self, client, catalog):
        video = await catalog.register_upload("Clip", "clip/source.mp4")
        response = await client.get(f"/api/v1/videos/{video.public_token}/playback")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_video(self, client):
        response = await client.get("/api/v1/videos/deadbeef/playback", headers=USER)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_not_yet_playable(self, client, catalog):
        video = await catalog.register_upload("Clip", "clip/source.mp4")
        response = await client.get(f"/api/v1/videos/{video.public_token}/playback", headers=USER)

        assert response.status_code == 200
        body = response.json()
        assert body["playable"] is False
        assert body["master_playlist_url"] is None
        assert body["status"] == "uploaded"

    @pytest.mark.asyncio
    async def test_playable_after_lowest_rendition(self, client, catalog):
        video = await catalog.register_upload("Clip", "clip/source.mp4")
        await publish_480p(catalog, video)

        response = await client.get(f"/api/v1/videos/{video.public_token}/playback", headers=USER)

        body = response.json()
        assert body["playable"] is True
        assert body["status"] == "transcoding"
        assert body["master_playlist_url"] == (
            f"http://media.test/static/hls/{video.public_token}/master.m3u8"
        )
        assert [r["name"] for r in body["renditions"]] == ["480p"]


class TestViewReportEndpoint:
    @pytest.mark.asyncio
    async def test_requires_identity(self, client, catalog):
        video = await catalog.register_upload("Clip", "clip/source.mp4")
        response = await client.post(
            "/api/v1/analytics/views",
            json={"video_token": video.public_token, "watch_time": 10, "playback_position": 10},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_video(self, client):
        response = await client.post(
            "/api/v1/analytics/views",
            headers=USER,
            json={"video_token": "missing", "watch_time": 10, "playback_position": 10},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_negative_values_rejected(self, client, catalog):
        video = await catalog.register_upload("Clip", "clip/source.mp4")
        response = await client.post(
            "/api/v1/analytics/views",
            headers=USER,
            json={"video_token": video.public_token, "watch_time": -5, "playback_position": 10},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_reports_accumulate(self, client, catalog):
        video = await catalog.register_upload("Clip", "clip/source.mp4")
        headers = {**USER, "User-Agent": "Mozilla/5.0 (Linux; Android 14)"}

        await client.post(
            "/api/v1/analytics/views",
            headers=headers,
            json={"video_token": video.public_token, "watch_time": 30, "playback_position": 30},
        )
        response = await client.post(
            "/api/v1/analytics/views",
            headers=headers,
            json={"video_token": video.public_token, "watch_time": 45, "playback_position": 75},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["watch_time"] == 75
        assert body["max_playback_position"] == 75
        assert body["device_type"] == "mobile"
        assert body["user_id"] == "viewer-1"

    @pytest.mark.asyncio
    async def test_duplicate_report_id(self, client, catalog):
        video = await catalog.register_upload("Clip", "clip/source.mp4")
        payload = {
            "video_token": video.public_token,
            "watch_time": 30,
            "playback_position": 30,
            "report_id": "r-42",
        }

        first = await client.post("/api/v1/analytics/views", headers=USER, json=payload)
        second = await client.post("/api/v1/analytics/views", headers=USER, json=payload)

        assert first.json()["duplicate"] is False
        assert second.json()["duplicate"] is True
        assert second.json()["watch_time"] == 30


class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_summary_requires_admin(self, client):
        response = await client.get("/api/v1/analytics/views/summary", headers=USER)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_summary(self, client, catalog):
        video = await catalog.register_upload("Clip", "clip/source.mp4")
        await client.post(
            "/api/v1/analytics/views",
            headers=USER,
            json={"video_token": video.public_token, "watch_time": 30, "playback_position": 30},
        )

        response = await client.get("/api/v1/analytics/views/summary", headers=ADMIN)

        assert response.status_code == 200
        assert response.json()[0]["video_token"] == video.public_token
        assert response.json()[0]["total_watch_time"] == 30

    @pytest.mark.asyncio
    async def test_pipeline_status(self, client, catalog):
        await catalog.register_upload("A", "a/source.mp4")
        response = await client.get("/api/v1/pipeline/status", headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["counts"]["uploaded"] == 1

    @pytest.mark.asyncio
    async def test_resubmit_requires_failed_state(self, client, catalog):
        video = await catalog.register_upload("A", "a/source.mp4")
        response = await client.post(
            f"/api/v1/pipeline/videos/{video.public_token}/resubmit", headers=ADMIN
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_resubmit_unknown_video(self, client):
        response = await client.post("/api/v1/pipeline/videos/nope/resubmit", headers=ADMIN)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_resubmit_queues_task(self, client, catalog, monkeypatch):
        queued = []

        class FakeTask:
            def delay(self, video_id):
                queued.append(video_id)
                return SimpleNamespace(id="task-1")

        monkeypatch.setattr(pipeline_router, "resubmit_video", FakeTask())
        video = await catalog.register_upload("A", "a/source.mp4")
        assert await catalog.mark_transcoding(video.id, "w1", 600)
        assert await catalog.mark_failed(video.id, "encoder crashed", "w1")

        response = await client.post(
            f"/api/v1/pipeline/videos/{video.public_token}/resubmit", headers=ADMIN
        )

        assert response.status_code == 202
        assert response.json()["task_id"] == "task-1"
        assert queued == [video.id]

    @pytest.mark.asyncio
    async def test_resubmit_requires_admin(self, client, catalog):
        video = await catalog.register_upload("A", "a/source.mp4")
        response = await client.post(
            f"/api/v1/pipeline/videos/{video.public_token}/resubmit", headers=USER
        )
        assert response.status_code == 403

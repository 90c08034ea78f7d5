"""Shared fixtures: an isolated catalog database, local storage and a fake encoder."""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Optional

import pytest
import pytest_asyncio

from vodpipeline.core.config import Settings
from vodpipeline.core.database import Base, create_engine, create_session_maker
from vodpipeline.core.storage import LocalStorage, StorageService
from vodpipeline.modules.analytics import models as analytics_models  # noqa: F401
from vodpipeline.modules.transcoding.ffmpeg import EncodeFailure, EncodeRequest
from vodpipeline.modules.video import models as video_models  # noqa: F401
from vodpipeline.modules.video.catalog import CatalogAdapter


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}",
        LOCAL_STORAGE_PATH=str(tmp_path / "storage"),
        TRANSCODE_WORK_DIR=str(tmp_path / "work"),
        UPLOAD_ROOT=str(tmp_path / "uploads"),
        INGEST_SCAN_PATH=str(tmp_path / "uploads"),
        PUBLIC_BASE_URL="http://media.test/static",
        TRANSCODE_MAX_CONCURRENT_JOBS=2,
        TRANSCODE_MAX_ATTEMPTS=3,
        TRANSCODE_RETRY_INITIAL_DELAY=0.0,
        TRANSCODE_RETRY_MAX_DELAY=0.0,
        TRANSCODE_LEASE_SECONDS=600,
        CATALOG_PERSIST_ATTEMPTS=2,
        LOG_JSON=False,
    )


@pytest_asyncio.fixture
async def session_maker(test_settings: Settings):
    engine = create_engine(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def catalog(session_maker) -> CatalogAdapter:
    return CatalogAdapter(session_maker)


@pytest.fixture
def local_storage(test_settings: Settings) -> LocalStorage:
    return LocalStorage(
        test_settings.LOCAL_STORAGE_PATH,
        public_base_url=test_settings.PUBLIC_BASE_URL,
    )


@pytest.fixture
def storage_service(local_storage: LocalStorage) -> StorageService:
    return StorageService(local_storage)


@pytest.fixture
def upload_source(test_settings: Settings) -> Callable[[str], str]:
    """Write a placeholder source file under the upload root, return its relative path."""

    def write(name: str) -> str:
        relative = f"{name}/source.mp4"
        path = Path(test_settings.UPLOAD_ROOT) / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00\x00\x00\x18ftypmp42")
        return relative

    return write


class FakeEncoderRunner:
    """Encoder stand-in writing a small but complete HLS rendition.

    ``failures`` maps a rendition name to how many more times encoding it
    should fail (``-1`` fails forever).
    """

    def __init__(
        self,
        segments: int = 3,
        failures: Optional[dict[str, int]] = None,
        delay: float = 0.0,
        before_encode: Optional[Callable[[EncodeRequest], Awaitable[None]]] = None,
    ):
        self.segments = segments
        self.failures = dict(failures or {})
        self.delay = delay
        self.before_encode = before_encode
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def run(self, request: EncodeRequest) -> None:
        name = request.rendition.name
        self.calls.append(name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.before_encode is not None:
                await self.before_encode(request)
            if self.delay:
                await asyncio.sleep(self.delay)

            remaining = self.failures.get(name, 0)
            if remaining:
                if remaining > 0:
                    self.failures[name] = remaining - 1
                raise EncodeFailure(name, "exit code 1: simulated encoder crash")

            write_rendition(request.output_dir, self.segments, request.rendition.segment_duration, name)
        finally:
            self.active -= 1


def write_rendition(output_dir: Path, segments: int, duration: int = 6, label: str = "") -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{duration}",
        "#EXT-X-MEDIA-SEQUENCE:0",
        "#EXT-X-PLAYLIST-TYPE:VOD",
    ]
    for i in range(segments):
        (output_dir / f"segment{i}.ts").write_bytes(f"{label}-{i}".encode())
        lines.append(f"#EXTINF:{duration}.000000,")
        lines.append(f"segment{i}.ts")
    lines.append("#EXT-X-ENDLIST")
    (output_dir / "playlist.m3u8").write_text("\n".join(lines) + "\n")


@pytest.fixture
def fake_runner() -> FakeEncoderRunner:
    return FakeEncoderRunner()


@pytest.fixture
def make_runner() -> Callable[..., FakeEncoderRunner]:
    return FakeEncoderRunner

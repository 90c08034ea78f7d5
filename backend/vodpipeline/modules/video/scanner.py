"""Ingest inbox scanning.

Each sub-directory of the inbox holds one upload; the directory name is the
title and the first video file inside it is the source.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from vodpipeline.core.logging import log_info, log_warning
from vodpipeline.modules.video.catalog import CatalogAdapter

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".mpg")


@dataclass
class ScanResult:
    registered: list[str] = field(default_factory=list)
    skipped: int = 0
    empty: int = 0


def find_source_file(directory: Path) -> Optional[Path]:
    """First video file in a directory, by name."""
    for path in sorted(directory.iterdir()):
        if path.is_file() and path.suffix.lower() in VIDEO_EXTENSIONS:
            return path
    return None


def _source_path(source: Path, upload_root: Path) -> str:
    try:
        return source.resolve().relative_to(upload_root.resolve()).as_posix()
    except ValueError:
        return str(source.resolve())


async def scan_ingest_directory(
    catalog: CatalogAdapter,
    scan_path: Path,
    upload_root: Path,
) -> ScanResult:
    """Register every inbox directory whose title is not catalogued yet."""
    result = ScanResult()
    if not scan_path.is_dir():
        log_warning(logger, "Ingest directory does not exist", path=str(scan_path))
        return result

    known = await catalog.known_titles()
    for directory in sorted(p for p in scan_path.iterdir() if p.is_dir()):
        title = directory.name
        if title in known:
            result.skipped += 1
            continue

        source = find_source_file(directory)
        if source is None:
            result.empty += 1
            continue

        video = await catalog.register_upload(title, _source_path(source, upload_root))
        known.add(title)
        result.registered.append(video.public_token)
        log_info(logger, "Registered upload", title=title, video_id=video.id)

    return result

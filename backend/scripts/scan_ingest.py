"""Register new uploads from the ingest inbox once and print what was found.

Usage:
    cd backend
    python -m scripts.scan_ingest
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from vodpipeline.core.config import get_settings
from vodpipeline.core.database import create_engine, create_session_maker
from vodpipeline.modules.video.catalog import CatalogAdapter
from vodpipeline.modules.video.scanner import scan_ingest_directory


async def main():
    """Scan the inbox."""
    settings = get_settings()
    engine = create_engine(settings)
    try:
        result = await scan_ingest_directory(
            CatalogAdapter(create_session_maker(engine)),
            Path(settings.INGEST_SCAN_PATH),
            Path(settings.UPLOAD_ROOT),
        )
    finally:
        await engine.dispose()

    print("\n" + "=" * 60)
    print(f"Scanned {settings.INGEST_SCAN_PATH}")
    print("=" * 60)
    print(f"  Registered: {len(result.registered)}")
    for token in result.registered:
        print(f"    - {token}")
    print(f"  Already catalogued: {result.skipped}")
    print(f"  Without a video file: {result.empty}")


if __name__ == "__main__":
    asyncio.run(main())

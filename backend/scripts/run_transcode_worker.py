"""Run the transcode worker outside Celery.

Usage:
    cd backend
    python -m scripts.run_transcode_worker
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from vodpipeline.worker import main


if __name__ == "__main__":
    main()

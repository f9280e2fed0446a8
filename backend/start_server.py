#!/usr/bin/env python3
"""
Startup script for the Equipment Inventory backend
"""
import logging
import os
import sys
from pathlib import Path

# Get the directory where this script is located
backend_dir = Path(__file__).parent.absolute()

# Change to backend directory and make it importable
os.chdir(backend_dir)
sys.path.insert(0, str(backend_dir))

from core.config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("start_server")


def main():
    # Check if app.py exists
    app_py = backend_dir / "app.py"
    if not app_py.exists():
        logger.error(f"ERROR: app.py not found at {app_py}")
        sys.exit(1)

    try:
        import uvicorn

        host = os.getenv("HOST", "0.0.0.0")
        port = int(os.getenv("PORT", "8000"))
        logger.info(f"🚀 Starting server on http://{host}:{port}")

        uvicorn.run(
            "app:app",  # Import string instead of app instance for reload
            host=host,
            port=port,
            reload=False,
            log_level=settings.LOG_LEVEL.lower(),
        )
    except ImportError as e:
        logger.error(f"❌ Import error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

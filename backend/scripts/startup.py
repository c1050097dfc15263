#!/usr/bin/env python3
"""
Cloud Run startup script.

1. Run Alembic migrations (alembic upgrade head)
2. exec uvicorn to replace this process
"""

import logging
import os
import subprocess
import sys
from pathlib import Path

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - startup - %(levelname)s - %(message)s",
)
logger = logging.getLogger("startup")

# Resolve paths relative to backend/ directory
BACKEND_DIR = Path(__file__).parent.parent
DEFAULT_DB_PATH = BACKEND_DIR / "scan_pipeline" / "data" / "vinho.db"


def run_migrations() -> bool:
    """Run Alembic migrations (upgrade head).

    Returns True on success, False on failure.
    """
    db_path = os.getenv("DATABASE_PATH", str(DEFAULT_DB_PATH))
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Running alembic upgrade head against {db_path}...")
    try:
        result = subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            cwd=str(BACKEND_DIR),
            capture_output=True,
            text=True,
            timeout=120,
            env={**os.environ, "DATABASE_PATH": db_path},
        )
    except subprocess.TimeoutExpired:
        logger.error("Alembic migration timed out after 120s")
        return False

    if result.returncode != 0:
        logger.error(f"Alembic migration failed:\n{result.stderr}")
        return False
    logger.info(f"Migrations complete: {result.stdout.strip()}")
    return True


def exec_uvicorn():
    """Replace this process with uvicorn."""
    port = os.getenv("PORT", "8080")
    log_level = os.getenv("LOG_LEVEL", "info").lower()
    logger.info(f"Starting uvicorn on port {port} (log_level={log_level})")

    os.chdir(BACKEND_DIR)
    os.execvp(
        sys.executable,
        [
            sys.executable,
            "-m",
            "uvicorn",
            "main:app",
            "--host",
            "0.0.0.0",
            "--port",
            port,
            "--log-level",
            log_level,
        ],
    )


def main():
    logger.info("=== Vinho Scan Pipeline Startup ===")

    # A broken schema would fail every job, so do not start without it
    if not run_migrations():
        logger.error("Migration failed, exiting")
        sys.exit(1)

    exec_uvicorn()


if __name__ == "__main__":
    main()

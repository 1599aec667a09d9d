#!/usr/bin/env python3
"""
Container entrypoint: release phase, then gunicorn serving app.wsgi:app.

Port and worker count come from PORT / WEB_CONCURRENCY (see app/fieldops/config.py).
The worker timeout follows AUTH_TIMEOUT_SECONDS, since a request can wait on the
authentication service twice (token refresh in load_current_user, then the sign-up
or login call itself).

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

MIN_WORKER_TIMEOUT = 60


def worker_timeout(auth_timeout_seconds: int) -> int:
    return max(MIN_WORKER_TIMEOUT, 2 * auth_timeout_seconds + 10)


def gunicorn_argv(config: dict) -> list[str]:
    port = int(config["PORT"])
    if not 1 <= port <= 65535:
        raise ValueError(f"Invalid PORT value {port}. Must be 1-65535.")
    workers = max(1, int(config["WEB_CONCURRENCY"]))
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(worker_timeout(int(config["AUTH_TIMEOUT_SECONDS"]))),
        # The engine is disposed in each worker after fork (see create_app).
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    from app.fieldops.config import load_config
    from scripts.release import run_release

    config = load_config()
    try:
        argv = gunicorn_argv(config)
    except ValueError as e:
        print(f"ERROR: {e}", flush=True)
        sys.exit(1)

    print("=== Running release phase ===", flush=True)
    try:
        run_release()
    except Exception as e:
        print(f"Release failed: {e}", flush=True)
        sys.exit(1)

    print(f"=== Starting gunicorn: {' '.join(argv[1:])} ===", flush=True)
    # exec so gunicorn becomes PID 1 and receives signals directly.
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()

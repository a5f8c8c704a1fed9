#!/usr/bin/env python3
"""
Apply pending migrations, then hand the process over to gunicorn.

Usage:
    PORT=3003 python scripts/start.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

DEFAULT_PORT = 3003


def _port() -> int:
    raw = os.environ.get("PORT", "").strip() or str(DEFAULT_PORT)
    try:
        port = int(raw)
    except ValueError:
        port = 0
    if not 1 <= port <= 65535:
        print(f"ERROR: PORT must be an integer in 1-65535, got {raw!r}", flush=True)
        sys.exit(1)
    return port


def gunicorn_argv(port: int, workers: int = 2) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        f"--bind=0.0.0.0:{port}",
        f"--workers={workers}",
        "--access-logfile=-",
        "--error-logfile=-",
    ]


def main() -> None:
    port = _port()

    from app.plughost.cli import main as migrate

    if migrate(["migrate"]) != 0:
        print("Migrations failed; server not started.", flush=True)
        sys.exit(1)

    argv = gunicorn_argv(port, int(os.environ.get("WEB_CONCURRENCY", "2")))
    print(f"Starting: {' '.join(argv)}", flush=True)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()

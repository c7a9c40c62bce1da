#!/usr/bin/env python3
"""
Container entrypoint: run the release phase, then exec gunicorn.

Usage:
    python scripts/start.py

Env:
    PORT              bind port (default 8080)
    WEB_CONCURRENCY   gunicorn workers (default 2)
    GUNICORN_TIMEOUT  worker timeout seconds (default 120; /api/sync/run can be slow)
    SKIP_RELEASE=1    start without migrating (local runs against a prepared DB)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _port() -> str:
    port = os.environ.get("PORT", "").strip() or "8080"
    try:
        if not 1 <= int(port) <= 65535:
            raise ValueError(port)
    except ValueError:
        print(f"ERROR: Invalid PORT value '{port}'. Must be integer 1-65535.", flush=True)
        sys.exit(1)
    return port


def gunicorn_argv(port: str) -> list[str]:
    workers = (os.environ.get("WEB_CONCURRENCY") or "2").strip()
    timeout = (os.environ.get("GUNICORN_TIMEOUT") or "120").strip()
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", workers,
        "--timeout", timeout,
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _port()

    if (os.environ.get("SKIP_RELEASE") or "").strip() != "1":
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    argv = gunicorn_argv(port)
    print(f"=== Starting gunicorn on 0.0.0.0:{port} ===", flush=True)
    # gunicorn replaces this process and receives signals directly
    os.execvp("gunicorn", argv)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Container entrypoint: release phase, then exec gunicorn serving app.wsgi:app.

Environment:
    PORT              listen port (default 8080)
    WEB_CONCURRENCY   gunicorn workers (default 2)
    GUNICORN_THREADS  threads per worker (default 4)
    SKIP_RELEASE=1    start without migrating/seeding (e.g. extra replicas)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _positive_int(name: str, default: int, upper: int) -> int:
    raw = (os.environ.get(name) or "").strip() or str(default)
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if not 1 <= value <= upper:
        print(f"ERROR: {name}={raw!r} must be an integer between 1 and {upper}.", flush=True)
        sys.exit(1)
    return value


def gunicorn_argv(port: int, workers: int, threads: int) -> list[str]:
    # Rate limiter and product cache live in each worker process; threads share them under a lock.
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--threads", str(threads),
        "--timeout", "60",
        "--graceful-timeout", "30",
        "--forwarded-allow-ips", "*",
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _positive_int("PORT", 8080, 65535)
    workers = _positive_int("WEB_CONCURRENCY", 2, 64)
    threads = _positive_int("GUNICORN_THREADS", 4, 64)

    if (os.environ.get("SKIP_RELEASE") or "").strip() in ("1", "true", "yes"):
        print("SKIP_RELEASE set; not running migrations or seed.", flush=True)
    else:
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    argv = gunicorn_argv(port, workers, threads)
    print(f"Starting shop API: {' '.join(argv)}", flush=True)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Start the Celery worker (and optionally beat) for the document orchestrator.

Usage:
    python scripts/start_worker.py                    # Threads pool, 8 threads
    python scripts/start_worker.py --solo             # Solo mode for debugging
    python scripts/start_worker.py --concurrency 20   # Custom concurrency
    python scripts/start_worker.py --prefork          # Prefork pool
    python scripts/start_worker.py --beat             # Embed beat (aggregation poll)

Each task runs its own asyncio event loop, so any pool works. Threads suit
the I/O-bound page analysis; prefork is not available on Windows.
"""

import argparse
import os
import subprocess
import sys
from pathlib import Path

PROJECT_DIR = Path(__file__).parent.parent
os.chdir(PROJECT_DIR)


def build_command(args: argparse.Namespace) -> list[str]:
    if args.solo:
        pool, concurrency = "solo", 1
    elif args.prefork:
        pool, concurrency = "prefork", min(args.concurrency, os.cpu_count() or 4)
    else:
        pool, concurrency = "threads", args.concurrency

    cmd = [
        sys.executable, "-m", "celery",
        "-A", "orchestrator.workers.celery:celery_app",
        "worker",
        f"--loglevel={args.loglevel}",
        f"--pool={pool}",
        f"--concurrency={concurrency}",
        f"--queues={args.queues}",
    ]
    if args.beat:
        cmd.append("--beat")
    return cmd


def main():
    parser = argparse.ArgumentParser(description="Start Celery worker")
    parser.add_argument("--solo", action="store_true", help="Use solo pool (debugging)")
    parser.add_argument("--prefork", action="store_true", help="Use prefork pool")
    parser.add_argument(
        "--concurrency",
        "-c",
        type=int,
        default=8,
        help="Number of concurrent tasks (default: 8)",
    )
    parser.add_argument(
        "--loglevel",
        "-l",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--queues",
        "-Q",
        default="default,low",
        help="Queues to consume from (default: default,low)",
    )
    parser.add_argument(
        "--beat",
        action="store_true",
        help="Run the beat scheduler inside this worker",
    )
    args = parser.parse_args()

    cmd = build_command(args)
    print(f"Command: {' '.join(cmd)}")
    print("-" * 60)

    try:
        subprocess.run(cmd, check=True)
    except KeyboardInterrupt:
        print("\nWorker stopped.")
    except subprocess.CalledProcessError as e:
        print(f"Worker exited with error: {e.returncode}")
        sys.exit(e.returncode)


if __name__ == "__main__":
    main()

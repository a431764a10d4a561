"""
Background reaper task.

Runs every CLEANUP_INTERVAL seconds and
  - evicts job records older than JOB_TTL_SECONDS (never one being processed),
  - deletes files in TEMP_DIR older than the same horizon (orphans left by a
    crash mid-job) and, when given, old renders in the local public dir.
This keeps both memory and the ephemeral filesystem from filling up.
"""

import asyncio
import time
from pathlib import Path
from typing import Iterable, Optional

import config
from jobs import PROCESSING, JobStore


async def cleanup_old_jobs(
    store: JobStore,
    interval: Optional[float] = None,
    max_age: Optional[float] = None,
    temp_dir: Optional[str] = None,
    public_dir: Optional[str] = None,
) -> None:
    """Infinite loop: sleep, then reap stale jobs and files."""
    interval = config.CLEANUP_INTERVAL if interval is None else interval
    max_age = config.JOB_TTL_SECONDS if max_age is None else max_age
    while True:
        try:
            await asyncio.sleep(interval)
            reap(store, max_age, temp_dir=temp_dir, public_dir=public_dir)
        except asyncio.CancelledError:
            # Graceful shutdown: stop the loop
            break
        except Exception as exc:
            # Log but never crash the background task
            print(f"[Cleanup] Unexpected error: {exc!r}")


def reap(
    store: JobStore,
    max_age: float,
    temp_dir: Optional[str] = None,
    public_dir: Optional[str] = None,
) -> None:
    evicted = store.evict_older_than(max_age)
    if evicted:
        print(f"[Cleanup] Evicted {evicted} job(s) older than {max_age:g}s")

    # Scratch files are named "<job_id>_<stage>.<ext>"; skip the running job's
    active = store.ids_with_status(PROCESSING)
    _delete_stale_files(temp_dir or config.TEMP_DIR, max_age, skip_prefixes=active)
    if public_dir:
        _delete_stale_files(public_dir, max_age)


def _delete_stale_files(
    directory: str,
    max_age: float,
    skip_prefixes: Iterable[str] = (),
) -> int:
    temp_path = Path(directory)
    if not temp_path.exists():
        return 0

    skip = tuple(f"{prefix}_" for prefix in skip_prefixes)
    now = time.time()
    deleted = 0

    for file in temp_path.iterdir():
        if not file.is_file():
            continue
        if skip and file.name.startswith(skip):
            continue
        age = now - file.stat().st_mtime
        if age > max_age:
            try:
                file.unlink()
                deleted += 1
            except OSError as exc:
                print(f"[Cleanup] Could not delete {file.name}: {exc!r}")

    if deleted:
        print(f"[Cleanup] Deleted {deleted} stale file(s) from {directory}")
    return deleted

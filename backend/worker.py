"""
Single sequential render worker.

One long-lived dispatcher task sleeps on an event while the queue is empty.
Every submission calls notify(); after each job the dispatcher checks the
queue again, so the loop keeps itself going without timers or polling.

The guard is a one-slot asyncio.Lock held for the whole job: at most one
job is ever "processing", and `async with` releases it on every exit path.
"""

import asyncio
import traceback
from typing import Optional

import config
import pipeline
from errors import RenderError
from jobs import COMPLETED, ERROR, PROCESSING, QUEUED, JobStore
from storage import Storage


class RenderWorker:
    def __init__(self, store: JobStore, storage: Storage, temp_dir: Optional[str] = None) -> None:
        self.store = store
        self.storage = storage
        self.temp_dir = temp_dir or config.TEMP_DIR
        self._guard = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._guard.locked()

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
            # Pick up anything submitted before the worker started
            self.notify()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def notify(self) -> None:
        """Wake the dispatcher: a job was queued."""
        self._wake.set()

    async def run(self) -> None:
        """Infinite loop: wait for work, then drain the queue oldest-first."""
        while True:
            await self._wake.wait()
            self._wake.clear()
            while await self.advance():
                pass

    async def advance(self) -> bool:
        """
        Process the oldest queued job if the worker is idle.

        Returns False when there was nothing to do (queue empty or busy).
        """
        if self.busy:
            return False
        queued = self.store.list_queued()
        if not queued:
            return False
        async with self._guard:
            await self.process(queued[0])
        return True

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------

    async def process(self, job_id: str) -> None:
        """
        Drive one job through every stage. Stage failures end the job in
        "error"; nothing is raised to the caller. Temp files are always
        removed.
        """
        job = self.store.get(job_id)
        if job is None or job.status != QUEUED:
            return

        self.store.update(job_id, status=PROCESSING, progress=0)
        print(f"[Worker] Processing job {job_id} ({len(job.segments)} segment(s))")

        files = pipeline.JobFiles(self.temp_dir, job_id)

        def report(progress: int) -> None:
            self.store.update(job_id, progress=progress)

        try:
            # ---- 1. Source ----------------------------------------------
            source_path = await pipeline.fetch_source(job, files)
            report(pipeline.PROGRESS_SOURCE_FETCHED)

            # ---- 2. Overlay audio --------------------------------------
            audio_path = await pipeline.fetch_audio(job, files)
            if audio_path:
                report(pipeline.PROGRESS_AUDIO_FETCHED)

            # ---- 3. Cut segments ----------------------------------------
            clips = await pipeline.cut_segments(source_path, job.segments, files, report)

            # ---- 4. Concatenate (+ title / audio overlay) ---------------
            duration = sum(seg.duration for seg in job.segments)
            final_path = await pipeline.concatenate(
                clips,
                files,
                title=job.options.title,
                audio_path=audio_path,
                duration=duration,
            )
            report(pipeline.PROGRESS_CONCATENATED)

            # ---- 5. Publish ---------------------------------------------
            final_url = await pipeline.publish(final_path, self.storage, job_id)
            self.store.update(
                job_id,
                status=COMPLETED,
                progress=pipeline.PROGRESS_DONE,
                final_url=final_url,
            )
            print(f"[Worker] Job {job_id} completed: {final_url}")

        except RenderError as exc:
            print(f"[Worker] Job {job_id} failed: {exc}")
            self.store.update(job_id, status=ERROR, error=str(exc) or type(exc).__name__)

        except Exception as exc:
            print(f"[Worker] Job {job_id} failed unexpectedly: {exc!r}")
            traceback.print_exc()
            self.store.update(job_id, status=ERROR, error=f"{type(exc).__name__}: {exc}")

        except asyncio.CancelledError:
            self.store.update(job_id, status=ERROR, error="Render cancelled by server shutdown")
            raise

        finally:
            # ---- 6. Cleanup, success or not ----------------------------
            pipeline.cleanup_files(files.paths)

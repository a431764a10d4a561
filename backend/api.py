"""
Render job API, the boundary the HTTP routes call into.

submit_render_job never waits for processing; get_render_job_status is a
pure read of the job store.
"""

from typing import Any, Dict, Optional, Sequence

from jobs import JobStore, RenderOptions, Segment
from worker import RenderWorker


class RenderAPI:
    def __init__(self, store: JobStore, worker: RenderWorker) -> None:
        self.store = store
        self.worker = worker

    def submit_render_job(
        self,
        source_url: str,
        segments: Sequence[Segment],
        options: Optional[RenderOptions] = None,
    ) -> str:
        """Queue a job and return its ID. Raises ValidationError on bad input."""
        job_id = self.store.create(source_url, segments, options)
        print(f"[API] Job {job_id} queued ({len(self.store.list_queued())} waiting)")
        self.worker.notify()
        return job_id

    def get_render_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.store.get(job_id)
        if job is None:
            return None
        return {
            "jobId": job.id,
            "status": job.status,
            "progress": job.progress,
            "finalUrl": job.final_url,
            "error": job.error,
        }

    def stats(self) -> Dict[str, Any]:
        return {**self.store.stats(), "busy": self.worker.busy}

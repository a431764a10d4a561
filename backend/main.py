"""
Trimforge FastAPI backend.

Endpoints:
  POST /render                  — submit a render job, get back a jobId immediately
  GET  /render/{job_id}/status  — poll status: queued | processing | completed | error
  GET  /render/stats            — job counts and whether the worker is busy
  GET  /videos/{filename}       — download a render published by the local storage backend
  GET  /health                  — liveness probe
"""

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, field_validator

import config
from api import RenderAPI
from cleanup import cleanup_old_jobs
from errors import ValidationError
from jobs import JobStore, RenderOptions, Segment
from storage import LocalStorage, Storage, get_storage
from worker import RenderWorker


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class SegmentIn(BaseModel):
    start: float
    end: float


class RenderRequest(BaseModel):
    sourceUrl: str
    segments: List[SegmentIn]
    title: Optional[str] = None
    audioUrl: Optional[str] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if len(v) > config.MAX_TITLE_CHARS:
            raise ValueError(
                f"Title is {len(v)} characters, exceeds the {config.MAX_TITLE_CHARS} character limit"
            )
        return v or None

    @field_validator("audioUrl")
    @classmethod
    def validate_audio_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    store: Optional[JobStore] = None,
    storage: Optional[Storage] = None,
    temp_dir: Optional[str] = None,
) -> FastAPI:
    store = store or JobStore()
    storage = storage or get_storage()
    temp_dir = temp_dir or config.TEMP_DIR

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Path(temp_dir).mkdir(parents=True, exist_ok=True)

        worker = RenderWorker(store, storage, temp_dir)
        app.state.api = RenderAPI(store, worker)
        worker.start()
        public_dir = str(storage.public_dir) if isinstance(storage, LocalStorage) else None
        cleanup_task = asyncio.create_task(
            cleanup_old_jobs(store, temp_dir=temp_dir, public_dir=public_dir)
        )

        yield  # application runs

        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        await worker.stop()

    app = FastAPI(title="Trimforge API", lifespan=lifespan)
    app.state.store = store
    app.state.storage = storage
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
            for err in errors
        )
        return JSONResponse(status_code=400, content={"detail": message or "Invalid request"})

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    @app.post("/render", status_code=202)
    async def submit_render(request: RenderRequest):
        """Enqueue a render job and return its ID immediately."""
        job_id = app.state.api.submit_render_job(
            request.sourceUrl,
            [Segment(s.start, s.end) for s in request.segments],
            RenderOptions(title=request.title, audio_url=request.audioUrl),
        )
        return {"jobId": job_id}

    @app.get("/render/stats")
    async def render_stats():
        return app.state.api.stats()

    @app.get("/render/{job_id}/status")
    async def get_render_status(job_id: str):
        """Poll the status of a job."""
        status = app.state.api.get_render_job_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return status

    @app.get("/videos/{filename}")
    async def serve_video(filename: str):
        """Serve a render published by the local storage backend."""
        if not isinstance(storage, LocalStorage):
            raise HTTPException(status_code=404, detail="Video not found")

        # Prevent path traversal attacks
        file_path = storage.path_for(filename)
        if file_path is None:
            raise HTTPException(status_code=404, detail="Video not found")

        return FileResponse(
            str(file_path),
            media_type="video/mp4",
            headers={"Content-Disposition": f'attachment; filename="{file_path.name}"'},
        )

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - app.state.started_at, 3),
        }

    return app


app = create_app()

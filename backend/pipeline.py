"""
Render pipeline stages.

Each stage is a plain async function; the worker calls them in this order
and reports the checkpoint after each:

  1. fetch_source      — download the source video             → 10
  2. fetch_audio       — download overlay audio (optional)     → 30
  3. cut_segments      — one re-encoded clip per segment       → 30..60
  4. concatenate       — join clips, burn title, swap audio    → 80
  5. publish           — upload the result, return public URL  → 100
  6. cleanup_files     — always, delete every temp file

Temp files live in TEMP_DIR and are named from the job id and stage, so
two jobs never collide and a crash leaves identifiable leftovers.
"""

from pathlib import Path
from typing import Callable, List, Optional, Sequence

import video
from errors import CleanupWarning
from fetch import download, guess_suffix
from jobs import RenderJob, Segment
from storage import Storage, generate_key

PROGRESS_SOURCE_FETCHED = 10
PROGRESS_AUDIO_FETCHED = 30
PROGRESS_CUT_START = 30
PROGRESS_CUT_END = 60
PROGRESS_CONCATENATED = 80
PROGRESS_DONE = 100


class JobFiles:
    """Allocates and remembers every scratch path used by one job."""

    def __init__(self, temp_dir: str, job_id: str) -> None:
        self.temp_dir = Path(temp_dir)
        self.job_id = job_id
        self._paths: List[str] = []

    def path(self, stage: str, suffix: str) -> str:
        path = str(self.temp_dir / f"{self.job_id}_{stage}{suffix}")
        if path not in self._paths:
            self._paths.append(path)
        return path

    def source(self, suffix: str = ".mp4") -> str:
        return self.path("source", suffix)

    def audio(self, suffix: str = ".mp3") -> str:
        return self.path("audio", suffix)

    def segment(self, index: int) -> str:
        return self.path(f"seg{index:03d}", ".mp4")

    def title(self) -> str:
        return self.path("title", ".txt")

    def manifest(self) -> str:
        return self.path("concat", ".txt")

    def final(self) -> str:
        return self.path("final", ".mp4")

    @property
    def paths(self) -> List[str]:
        return list(self._paths)


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

async def fetch_source(job: RenderJob, files: JobFiles) -> str:
    dest = files.source(guess_suffix(job.source_url, ".mp4"))
    return await download(job.source_url, dest)


async def fetch_audio(job: RenderJob, files: JobFiles) -> Optional[str]:
    audio_url = job.options.audio_url
    if not audio_url:
        return None
    dest = files.audio(guess_suffix(audio_url, ".mp3"))
    return await download(audio_url, dest)


def segment_progress(index: int, fraction: float, total: int) -> int:
    """Overall progress while segment *index* of *total* is *fraction* done."""
    span = PROGRESS_CUT_END - PROGRESS_CUT_START
    return PROGRESS_CUT_START + int(span * (index + fraction) / total)


async def cut_segments(
    source_path: str,
    segments: Sequence[Segment],
    files: JobFiles,
    on_progress: Optional[Callable[[int], None]] = None,
) -> List[str]:
    """Cut every segment in order; the first failure aborts the rest."""
    clips: List[str] = []
    total = len(segments)

    for index, segment in enumerate(segments):
        clip_path = files.segment(index)

        callback = None
        if on_progress is not None:
            def callback(fraction: float, index: int = index) -> None:
                on_progress(segment_progress(index, fraction, total))

        await video.cut_segment(source_path, segment, clip_path, on_progress=callback)
        clips.append(clip_path)

        if on_progress is not None:
            on_progress(segment_progress(index + 1, 0.0, total))

    return clips


async def concatenate(
    clip_paths: Sequence[str],
    files: JobFiles,
    title: Optional[str] = None,
    audio_path: Optional[str] = None,
    duration: Optional[float] = None,
) -> str:
    manifest = video.write_concat_manifest(clip_paths, files.manifest())
    title_path = video.write_title_file(title, files.title()) if title else None
    return await video.concat_segments(
        manifest,
        files.final(),
        title_path=title_path,
        audio_path=audio_path,
        duration=duration,
    )


async def publish(final_path: str, storage: Storage, job_id: str) -> str:
    key = generate_key("rendered", f"{job_id}.mp4")
    return await storage.put_file(final_path, key, "video/mp4")


def cleanup_files(paths: Sequence[str]) -> List[CleanupWarning]:
    """
    Delete *paths*. Never raises: problems are printed and returned as
    CleanupWarning instances.
    """
    warnings: List[CleanupWarning] = []
    for path in paths:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            # Never created, or already removed by the failing stage
            continue
        except OSError as exc:
            warning = CleanupWarning(f"Could not delete {Path(path).name}: {exc!r}")
            print(f"[Cleanup] {warning}")
            warnings.append(warning)
    return warnings

"""
FFmpeg layer of the render pipeline.

Key public functions:
  probe_duration(path)                       — FFprobe: container length in seconds
  cut_segment(source, segment, output, ...)  — re-encode one [start, end) clip
  write_concat_manifest(clips, path)         — concat demuxer list file
  concat_segments(manifest, output, ...)     — join clips, optional title/audio overlay
  write_title_file(title, path)              — title text for drawtext textfile=
  build_title_filter(title_path)             — drawtext filter for the burned-in title

Every invocation is bounded by TRANSCODE_TIMEOUT; a non-zero exit, a crash
or a timeout surfaces as TranscodeError.
"""

import asyncio
import json
import os
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from config import (
    FFMPEG_BIN,
    FFPROBE_BIN,
    TITLE_FONT_PATH,
    TITLE_FONT_SIZE,
    TRANSCODE_TIMEOUT,
)
from errors import TranscodeError
from jobs import Segment

# Fixed encode settings: every intermediate clip must be concat-compatible
VIDEO_CODEC_ARGS: List[str] = [
    "-c:v", "libx264", "-preset", "fast", "-crf", "23", "-pix_fmt", "yuv420p",
]
AUDIO_CODEC_ARGS: List[str] = ["-c:a", "aac", "-b:a", "128k"]

ProgressCallback = Callable[[float], None]


# ---------------------------------------------------------------------------
# Low-level subprocess helpers
# ---------------------------------------------------------------------------

def _run_sync(*args: str, timeout: Optional[float] = None) -> Tuple[str, str]:
    """Run an external command synchronously. Raises TranscodeError on failure."""
    timeout = TRANSCODE_TIMEOUT if timeout is None else timeout
    try:
        result = subprocess.run(list(args), capture_output=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise TranscodeError(f"{Path(args[0]).name} timed out after {timeout:g}s")
    except OSError as exc:
        raise TranscodeError(f"Could not start {args[0]}: {exc}") from exc

    if result.returncode != 0:
        raise TranscodeError(
            f"Command failed (exit {result.returncode}): {' '.join(args)}\n"
            f"stderr: {_tail(result.stderr)}"
        )
    return result.stdout.decode(errors="replace"), result.stderr.decode(errors="replace")


def _run_with_progress_sync(
    args: Sequence[str],
    total_seconds: float,
    on_progress: ProgressCallback,
    timeout: Optional[float] = None,
) -> None:
    """
    Run ffmpeg with `-progress pipe:1` appended before the output path and
    forward each reported position as a 0..1 fraction of *total_seconds*.

    on_progress may be called zero or more times; the function then either
    returns (success) or raises TranscodeError, exactly once.
    """
    timeout = TRANSCODE_TIMEOUT if timeout is None else timeout
    cmd = [*args[:-1], "-progress", "pipe:1", "-nostats", args[-1]]
    timed_out = threading.Event()

    # stderr goes to a temp file so a chatty ffmpeg can never fill the pipe
    with tempfile.TemporaryFile() as stderr_file:
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr_file)
        except OSError as exc:
            raise TranscodeError(f"Could not start {cmd[0]}: {exc}") from exc

        def _kill() -> None:
            timed_out.set()
            proc.kill()

        timer = threading.Timer(timeout, _kill)
        timer.start()
        try:
            for raw in proc.stdout:
                seconds = _parse_progress_line(raw.decode(errors="replace"))
                if seconds is not None and total_seconds > 0:
                    on_progress(min(1.0, max(0.0, seconds / total_seconds)))
            returncode = proc.wait()
        finally:
            timer.cancel()
            if proc.poll() is None:
                proc.kill()
                proc.wait()

        if timed_out.is_set():
            raise TranscodeError(f"{Path(cmd[0]).name} timed out after {timeout:g}s")
        if returncode != 0:
            stderr_file.seek(0)
            raise TranscodeError(
                f"Command failed (exit {returncode}): {' '.join(args)}\n"
                f"stderr: {_tail(stderr_file.read())}"
            )


def _parse_progress_line(line: str) -> Optional[float]:
    """Return the output position in seconds from an ffmpeg -progress line."""
    key, _, value = line.strip().partition("=")
    # out_time_ms is microseconds too, despite its name
    if key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        return int(value) / 1_000_000
    except ValueError:
        return None


def _tail(stderr: bytes, limit: int = 2000) -> str:
    return stderr.decode(errors="replace")[-limit:]


async def _run(*args: str) -> Tuple[str, str]:
    """Run an external command in a thread pool (non-blocking, cross-platform)."""
    return await asyncio.to_thread(_run_sync, *args)


def _ffmpeg(*args: str) -> List[str]:
    return [FFMPEG_BIN, "-y", "-nostdin", "-hide_banner", "-loglevel", "error", *args]


# ---------------------------------------------------------------------------
# FFprobe helpers
# ---------------------------------------------------------------------------

async def probe_duration(media_path: str) -> float:
    """Return the container duration of a media file in seconds."""
    stdout, _ = await _run(
        FFPROBE_BIN, "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        media_path,
    )
    data = json.loads(stdout or "{}")
    duration = data.get("format", {}).get("duration")
    if duration is None:
        raise TranscodeError(f"Could not determine duration for: {media_path}")
    return float(duration)


# ---------------------------------------------------------------------------
# FFmpeg text escaping
# ---------------------------------------------------------------------------

def _escape_filter_value(value: str) -> str:
    """
    Escape a value for use inside a -vf filter string.

    Two levels, innermost first:
      1. option level: backslash, single quote and colon (key=value separator)
      2. filtergraph level: backslash, single quote, brackets, comma, semicolon
    """
    for char in ("\\", "'", ":"):
        value = value.replace(char, "\\" + char)
    for char in ("\\", "'", "[", "]", ",", ";"):
        value = value.replace(char, "\\" + char)
    return value


def write_title_file(title: str, path: str) -> str:
    """
    Write the title for drawtext's textfile= option. Going through a file
    keeps quotes, percent signs and backslashes out of the filter string.
    """
    text = title.replace("\r", "").replace("\n", " ")
    Path(path).write_text(text, encoding="utf-8")
    return path


def _escape_concat_path(path: str) -> str:
    """Quote a path for a concat demuxer `file '...'` line."""
    return path.replace("'", "'\\''")


# ---------------------------------------------------------------------------
# Filter / manifest builders
# ---------------------------------------------------------------------------

def build_title_filter(title_path: str, font_path: Optional[str] = None) -> str:
    """
    Build the drawtext filter for a burned-in title: white text with a black
    drop shadow, centered horizontally near the top of the frame. The text is
    read verbatim from *title_path* (expansion=none, so % is literal).
    """
    font_path = TITLE_FONT_PATH if font_path is None else font_path

    font_part = ""
    if font_path and os.path.exists(font_path):
        # Normalize font path to forward slashes
        font_path = font_path.replace("\\", "/")
        font_part = f"fontfile={_escape_filter_value(font_path)}:"

    return (
        f"drawtext="
        f"{font_part}"
        f"textfile={_escape_filter_value(title_path)}:"
        f"expansion=none:"
        f"fontsize={TITLE_FONT_SIZE}:"
        f"fontcolor=white:"
        f"shadowcolor=black:"
        f"shadowx=2:"
        f"shadowy=2:"
        f"x=(w-text_w)/2:"
        f"y=50"
    )



def write_concat_manifest(clip_paths: Sequence[str], manifest_path: str) -> str:
    """Write the ordered clip list used by the concat demuxer."""
    if not clip_paths:
        raise TranscodeError("Nothing to concatenate")
    lines = [f"file '{_escape_concat_path(os.path.abspath(p))}'" for p in clip_paths]
    Path(manifest_path).write_text("\n".join(lines) + "\n", encoding="utf-8")
    return manifest_path


def cut_segment_args(source_path: str, segment: Segment, output_path: str) -> List[str]:
    # Start + duration (never start + end) so every clip gets the exact length
    return _ffmpeg(
        "-ss", f"{segment.start:.3f}",
        "-i", source_path,
        "-t", f"{segment.duration:.3f}",
        "-map", "0:v:0", "-map", "0:a:0?",
        *VIDEO_CODEC_ARGS,
        *AUDIO_CODEC_ARGS,
        "-movflags", "+faststart",
        output_path,
    )


def concat_args(
    manifest_path: str,
    output_path: str,
    title_path: Optional[str] = None,
    audio_path: Optional[str] = None,
    duration: Optional[float] = None,
) -> List[str]:
    """
    Build the concat command.

    Video is stream-copied unless a title (read from *title_path*) must be
    burned in. Overlay audio replaces the original track and is trimmed to
    *duration* when given.
    """
    args = ["-f", "concat", "-safe", "0", "-i", manifest_path]
    if audio_path:
        args += ["-i", audio_path, "-map", "0:v:0", "-map", "1:a:0"]
    else:
        args += ["-map", "0:v:0", "-map", "0:a?"]

    if title_path:
        args += ["-vf", build_title_filter(title_path), *VIDEO_CODEC_ARGS]
    else:
        args += ["-c:v", "copy"]

    if audio_path:
        args += AUDIO_CODEC_ARGS
        if duration:
            args += ["-t", f"{duration:.3f}"]
    else:
        args += ["-c:a", "copy"]

    args += ["-movflags", "+faststart", output_path]
    return _ffmpeg(*args)


# ---------------------------------------------------------------------------
# Pipeline operations
# ---------------------------------------------------------------------------

async def cut_segment(
    source_path: str,
    segment: Segment,
    output_path: str,
    on_progress: Optional[ProgressCallback] = None,
) -> str:
    """Re-encode the [start, end) range of *source_path* into *output_path*."""
    args = cut_segment_args(source_path, segment, output_path)
    if on_progress is None:
        await asyncio.to_thread(_run_sync, *args)
    else:
        await asyncio.to_thread(
            _run_with_progress_sync, args, segment.duration, on_progress
        )
    return output_path


async def concat_segments(
    manifest_path: str,
    output_path: str,
    title_path: Optional[str] = None,
    audio_path: Optional[str] = None,
    duration: Optional[float] = None,
) -> str:
    """Join the clips listed in *manifest_path* into one file."""
    await _run(*concat_args(manifest_path, output_path, title_path, audio_path, duration))
    return output_path

import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

import pytest

import video
from errors import PublishError, TranscodeError
from jobs import JobStore
from storage import Storage


class FakeStorage(Storage):
    """Records uploads instead of talking to a bucket."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.uploads: List[str] = []

    def _put_file_sync(self, local_path: str, key: str, content_type: str) -> str:
        if self.fail:
            raise PublishError("Failed to upload to storage: bucket unavailable")
        assert Path(local_path).is_file()
        self.uploads.append(key)
        return f"https://cdn.example.com/{key}"


class FakeFFmpeg:
    """Stand-ins for the two ffmpeg operations; they write small files."""

    def __init__(self) -> None:
        self.cuts: List[tuple] = []
        self.concats: List[dict] = []
        self.fail_on_cut: Optional[int] = None
        self.fail_on_concat = False
        self.delay = 0.0
        self.on_cut = None

    async def cut_segment(self, source_path, segment, output_path, on_progress=None):
        index = len(self.cuts)
        self.cuts.append((source_path, segment, output_path))
        if self.on_cut is not None:
            self.on_cut(source_path, segment)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_on_cut == index:
            Path(output_path).write_bytes(b"partial")
            raise TranscodeError(f"Command failed (exit 1): cutting segment {index}")
        if on_progress is not None:
            on_progress(0.5)
        Path(output_path).write_bytes(b"clip")
        return output_path

    async def concat_segments(self, manifest_path, output_path, title_path=None, audio_path=None, duration=None):
        self.concats.append(
            {
                "manifest": Path(manifest_path).read_text(),
                "title": Path(title_path).read_text(encoding="utf-8") if title_path else None,
                "title_path": title_path,
                "audio_path": audio_path,
                "duration": duration,
            }
        )
        if self.fail_on_concat:
            raise TranscodeError("Command failed (exit 1): concat")
        Path(output_path).write_bytes(b"final")
        return output_path


@pytest.fixture()
def temp_dir(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture()
def store():
    return JobStore()


@pytest.fixture()
def fake_storage():
    return FakeStorage()


@pytest.fixture()
def fake_ffmpeg(monkeypatch):
    fake = FakeFFmpeg()
    monkeypatch.setattr(video, "cut_segment", fake.cut_segment)
    monkeypatch.setattr(video, "concat_segments", fake.concat_segments)
    return fake


@pytest.fixture()
def source_file(tmp_path):
    """A local 'video' the fetch stage can copy."""
    path = tmp_path / "source.mp4"
    path.write_bytes(b"\x00" * 1024)
    return path


# ---------------------------------------------------------------------------
# Real ffmpeg helpers (integration tests skip when ffmpeg is missing)
# ---------------------------------------------------------------------------

def ffmpeg_available() -> bool:
    return shutil.which(video.FFMPEG_BIN) is not None and shutil.which(video.FFPROBE_BIN) is not None


def _run(cmd: List[str]) -> None:
    proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    if proc.returncode != 0:
        raise RuntimeError(proc.stderr.decode("utf-8", errors="ignore")[-2000:])


def gen_test_video(path: str, duration: float = 10.0, size: str = "320x240", fps: int = 25) -> None:
    cmd = [
        video.FFMPEG_BIN, "-y", "-nostdin", "-hide_banner", "-loglevel", "error",
        "-f", "lavfi", "-i", f"testsrc=size={size}:rate={fps}",
        "-f", "lavfi", "-i", f"sine=frequency=440:duration={duration}",
        "-t", f"{duration:.3f}",
        "-c:v", "libx264", "-crf", "28", "-pix_fmt", "yuv420p",
        "-c:a", "aac", "-ar", "48000", "-ac", "2",
        path,
    ]
    _run(cmd)


def gen_test_audio(path: str, duration: float = 8.0) -> None:
    cmd = [
        video.FFMPEG_BIN, "-y", "-nostdin", "-hide_banner", "-loglevel", "error",
        "-f", "lavfi", "-i", f"sine=frequency=220:duration={duration}",
        "-c:a", "aac", path,
    ]
    _run(cmd)


def ffmpeg_has_filter(name: str) -> bool:
    proc = subprocess.run(
        [video.FFMPEG_BIN, "-hide_banner", "-filters"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    return any(line.split()[1:2] == [name] for line in proc.stdout.decode(errors="ignore").splitlines())

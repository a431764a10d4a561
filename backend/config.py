"""
Configuration. Everything is pulled from environment variables.

A .env file is loaded in development (no-op when vars are already set by
the platform).
"""

import os

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Scratch space and transcoder
# ---------------------------------------------------------------------------
TEMP_DIR: str = os.getenv("TEMP_DIR", "/tmp/trimforge")
FFMPEG_BIN: str = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN: str = os.getenv("FFPROBE_BIN", "ffprobe")

TRANSCODE_TIMEOUT: float = float(os.getenv("TRANSCODE_TIMEOUT", "600"))
FETCH_TIMEOUT: float = float(os.getenv("FETCH_TIMEOUT", "120"))

TITLE_FONT_SIZE: int = int(os.getenv("TITLE_FONT_SIZE", "48"))
# Optional .ttf for the title overlay; ffmpeg's default font is used when unset
TITLE_FONT_PATH: str = os.getenv("TITLE_FONT_PATH", "")
MAX_TITLE_CHARS: int = int(os.getenv("MAX_TITLE_CHARS", "200"))

# ---------------------------------------------------------------------------
# Job retention
# ---------------------------------------------------------------------------
JOB_TTL_SECONDS: int = int(os.getenv("JOB_TTL_SECONDS", str(60 * 60)))    # 1 hour
CLEANUP_INTERVAL: int = int(os.getenv("CLEANUP_INTERVAL", str(10 * 60)))  # 10 minutes

# ---------------------------------------------------------------------------
# Storage: "local" writes into PUBLIC_DIR and is served under /videos,
# "s3" uploads to any S3-compatible bucket (AWS, Cloudflare R2, MinIO).
# ---------------------------------------------------------------------------
STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "local").lower()
PUBLIC_DIR: str = os.getenv("PUBLIC_DIR", os.path.join(TEMP_DIR, "public"))
PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "/videos")

S3_BUCKET: str = os.getenv("S3_BUCKET", "")
S3_ENDPOINT_URL: str = os.getenv("S3_ENDPOINT_URL", "")
S3_REGION: str = os.getenv("S3_REGION", "auto")
S3_ACCESS_KEY_ID: str = os.getenv("S3_ACCESS_KEY_ID", "")
S3_SECRET_ACCESS_KEY: str = os.getenv("S3_SECRET_ACCESS_KEY", "")
S3_PUBLIC_URL: str = os.getenv("S3_PUBLIC_URL", "")

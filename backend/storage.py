"""
Object-storage abstraction for finished renders.

Two backends, selected with STORAGE_BACKEND:
  local — copy into PUBLIC_DIR, served by the API under /videos
  s3    — upload with boto3 to any S3-compatible bucket (AWS, Cloudflare R2)

To swap storage providers, only this file needs to change.
"""

import asyncio
import re
import shutil
import time
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

import config
from errors import PublishError

CACHE_CONTROL = "public, max-age=31536000"


def generate_key(prefix: str, filename: str) -> str:
    """Object key like 'rendered/1718000000000-my_clip.mp4'."""
    timestamp = int(time.time() * 1000)
    sanitized = re.sub(r"[^a-zA-Z0-9.-]", "_", filename)
    return f"{prefix}/{timestamp}-{sanitized}"


class Storage:
    """Store a local file under *key* and return its public URL."""

    async def put_file(self, local_path: str, key: str, content_type: str = "video/mp4") -> str:
        return await asyncio.to_thread(self._put_file_sync, local_path, key, content_type)

    def _put_file_sync(self, local_path: str, key: str, content_type: str) -> str:
        raise NotImplementedError


class LocalStorage(Storage):
    """Keeps published files on local disk. Keys are flattened to file names."""

    def __init__(self, public_dir: str, base_url: str) -> None:
        self.public_dir = Path(public_dir)
        self.base_url = base_url.rstrip("/")

    def _put_file_sync(self, local_path: str, key: str, content_type: str) -> str:
        name = key.replace("/", "_")
        try:
            self.public_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, self.public_dir / name)
        except OSError as exc:
            raise PublishError(f"Failed to store {key}: {exc}") from exc
        print(f"[Storage] Stored {name} in {self.public_dir}")
        return f"{self.base_url}/{name}"

    def path_for(self, filename: str) -> Optional[Path]:
        """Resolve a served file name to its path, refusing traversal."""
        safe_name = Path(filename).name
        file_path = self.public_dir / safe_name
        if not file_path.is_file():
            return None
        return file_path


class S3Storage(Storage):
    """S3-compatible bucket; Cloudflare R2 works with endpoint_url + region 'auto'."""

    def __init__(
        self,
        bucket: str,
        public_url: str,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ) -> None:
        if not bucket:
            raise PublishError("S3_BUCKET is not configured")
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            region_name=region or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            config=BotoConfig(retries={"max_attempts": 3}),
        )

    def _put_file_sync(self, local_path: str, key: str, content_type: str) -> str:
        try:
            self.client.upload_file(
                local_path,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type, "CacheControl": CACHE_CONTROL},
            )
        except (BotoCoreError, ClientError, OSError) as exc:
            raise PublishError(f"Failed to upload {key} to storage: {exc}") from exc
        print(f"[Storage] Uploaded s3://{self.bucket}/{key}")
        return self.public_url_for(key)

    def public_url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"


def get_storage() -> Storage:
    """Build the backend named by STORAGE_BACKEND."""
    if config.STORAGE_BACKEND == "s3":
        return S3Storage(
            bucket=config.S3_BUCKET,
            public_url=config.S3_PUBLIC_URL,
            endpoint_url=config.S3_ENDPOINT_URL,
            region=config.S3_REGION,
            access_key_id=config.S3_ACCESS_KEY_ID,
            secret_access_key=config.S3_SECRET_ACCESS_KEY,
        )
    if config.STORAGE_BACKEND != "local":
        raise ValueError(f"Unknown STORAGE_BACKEND: {config.STORAGE_BACKEND!r}")
    return LocalStorage(config.PUBLIC_DIR, config.PUBLIC_BASE_URL)

"""
Download stage: bring a remote (or local) media file into the scratch dir.

http(s) URLs are streamed with httpx; plain local paths and file:// URLs
are copied, which keeps development and tests independent of a web server.
Any failure raises FetchError and leaves no partial file behind.
"""

import asyncio
import shutil
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from config import FETCH_TIMEOUT
from errors import FetchError

CHUNK_SIZE = 1024 * 1024


def guess_suffix(url: str, default: str = ".mp4") -> str:
    """File extension of the URL's path, e.g. '.mov', or *default*."""
    suffix = Path(urlparse(url).path).suffix.lower()
    if not suffix or len(suffix) > 6 or not suffix[1:].isalnum():
        return default
    return suffix


async def download(
    url: str,
    dest_path: str,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Fetch *url* into *dest_path* and return the path."""
    timeout = FETCH_TIMEOUT if timeout is None else timeout
    Path(dest_path).parent.mkdir(parents=True, exist_ok=True)

    try:
        if url.lower().startswith(("http://", "https://")):
            await _download_http(url, dest_path, timeout, transport)
        else:
            await asyncio.to_thread(_copy_local, url, dest_path)
    except BaseException:
        Path(dest_path).unlink(missing_ok=True)
        raise

    return dest_path


async def _download_http(
    url: str,
    dest_path: str,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    client_timeout = httpx.Timeout(timeout, connect=min(10.0, timeout))
    try:
        async with httpx.AsyncClient(
            timeout=client_timeout, follow_redirects=True, transport=transport
        ) as client:
            async with client.stream("GET", url) as resp:
                if resp.status_code < 200 or resp.status_code >= 300:
                    raise FetchError(
                        f"Failed to download {url}: HTTP {resp.status_code}"
                    )
                with open(dest_path, "wb") as f:
                    async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                        f.write(chunk)
    except httpx.TimeoutException as exc:
        raise FetchError(f"Timed out downloading {url}") from exc
    except httpx.HTTPError as exc:
        raise FetchError(f"Failed to download {url}: {exc!r}") from exc


def _copy_local(url: str, dest_path: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        source = Path(unquote(parsed.path))
    elif parsed.scheme and len(parsed.scheme) > 1:
        # Windows drive letters parse as one-letter schemes
        raise FetchError(f"Unsupported URL scheme '{parsed.scheme}': {url}")
    else:
        source = Path(url)

    if not source.is_file():
        raise FetchError(f"Source file not found: {url}")
    try:
        shutil.copyfile(source, dest_path)
    except OSError as exc:
        raise FetchError(f"Could not copy {url}: {exc}") from exc

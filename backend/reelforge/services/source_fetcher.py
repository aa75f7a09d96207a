"""Fetch source videos from the upload service.

The upload service hands out durable URLs; this module turns one into a
local file the decoder can open. Local paths and ``file://`` URLs are used
in place. There is no retry here: a failed fetch is a SourceUnavailableError
for the caller to report.
"""

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from reelforge.config import get_settings
from reelforge.exceptions import SourceUnavailableError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


@dataclass
class FetchedSource:
    """A source video available on local disk."""

    path: str
    source_id: str  # stable identity for cache keys
    temporary: bool = False

    def cleanup(self) -> None:
        if self.temporary:
            Path(self.path).unlink(missing_ok=True)


def _local_source(path: str) -> FetchedSource:
    file_path = Path(path)
    if not file_path.is_file():
        raise SourceUnavailableError(f"Source file not found: {path}")
    stat = file_path.stat()
    # Size and mtime make an edited file a different source
    source_id = f"file:{file_path.resolve()}:{stat.st_size}:{int(stat.st_mtime)}"
    return FetchedSource(path=str(file_path), source_id=source_id)


async def fetch_source(url: str, client: httpx.AsyncClient | None = None) -> FetchedSource:
    """Make ``url`` available as a local file.

    Args:
        url: http(s) URL, ``file://`` URL or local path
        client: Optional shared client (tests pass a mocked transport)

    Raises:
        SourceUnavailableError: On a missing file, HTTP error or network failure
    """
    parsed = urlparse(url)
    if parsed.scheme in ("", "file"):
        return _local_source(unquote(parsed.path) if parsed.scheme == "file" else url)
    if parsed.scheme not in ("http", "https"):
        raise SourceUnavailableError(f"Unsupported source URL scheme: {parsed.scheme}")

    settings = get_settings()
    download_dir = Path(settings.source_download_dir)
    download_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(parsed.path).suffix or ".mp4"
    target = download_dir / f"{uuid.uuid4().hex}{suffix}"

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            timeout=settings.source_download_timeout_s, follow_redirects=True
        )
    try:
        async with client.stream("GET", url) as response:
            if response.status_code != 200:
                raise SourceUnavailableError(
                    f"Source download failed: HTTP {response.status_code} for {url}"
                )
            size = 0
            with open(target, "wb") as f:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    f.write(chunk)
                    size += len(chunk)
    except httpx.HTTPError as e:
        target.unlink(missing_ok=True)
        raise SourceUnavailableError(f"Source download failed: {e}") from e
    except OSError as e:
        target.unlink(missing_ok=True)
        raise SourceUnavailableError(f"Could not write source download to {target}: {e}") from e
    except SourceUnavailableError:
        target.unlink(missing_ok=True)
        raise
    finally:
        if owns_client:
            await client.aclose()

    if size == 0:
        target.unlink(missing_ok=True)
        raise SourceUnavailableError(f"Source download was empty: {url}")

    logger.info(f"[SOURCE] Downloaded {url} ({size} bytes) -> {target}")
    return FetchedSource(path=os.fspath(target), source_id=url, temporary=True)


def source_identity(url: str) -> str:
    """Identity of a source for cache keys, without downloading it."""
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https"):
        return url
    path = unquote(parsed.path) if parsed.scheme == "file" else url
    try:
        return _local_source(path).source_id
    except SourceUnavailableError:
        return f"file:{path}"

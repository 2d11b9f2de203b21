"""
Cached downloads of the public input files.

Every remote input (ReCount count and phenotype tables, HapMap pedigree
files) is fetched once into a cache directory and read from disk on later
runs. There is no retry logic: a failed download aborts the run with a
DownloadError naming the URL.
"""

from __future__ import annotations

import logging
import os
import tempfile
import urllib.error
import urllib.request
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

__all__ = ['DownloadError', 'default_cache_dir', 'download_file']


class DownloadError(RuntimeError):
    """Raised when a remote input file cannot be fetched."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to download {url}: {reason}")


def default_cache_dir() -> Path:
    """Default download cache (~/.cache/batchcompare)."""
    return Path.home() / '.cache' / 'batchcompare'


def download_file(
    url: str,
    cache_dir: Path | str | None = None,
    filename: str | None = None,
    force: bool = False,
) -> Path:
    """
    Download a file into the cache directory unless it is already there.

    The payload is written to a temporary file in the cache directory and
    moved into place with ``os.replace()``, so an interrupted download never
    leaves a truncated file that later runs would treat as cached.

    Args:
        url: Remote location (http, https, ftp or file URL)
        cache_dir: Cache directory; defaults to default_cache_dir()
        filename: Local file name; defaults to the last URL path component
        force: Re-download even when a cached copy exists

    Returns:
        Path to the local copy

    Raises:
        DownloadError: If the file cannot be fetched or the URL scheme is unknown
        ValueError: If no file name can be derived from the URL
    """
    cache_dir = Path(cache_dir) if cache_dir is not None else default_cache_dir()
    cache_dir.mkdir(parents=True, exist_ok=True)

    if filename is None:
        filename = Path(urlparse(url).path).name
    if not filename:
        raise ValueError(f"Cannot derive a file name from URL: {url}")

    cached_path = cache_dir / filename
    if cached_path.exists() and not force:
        logger.debug(f"Using cached {cached_path}")
        return cached_path

    logger.info(f"Downloading {url}")
    tmp_path: str | None = None
    try:
        with tempfile.NamedTemporaryFile(dir=cache_dir, suffix=".part", delete=False) as tmp:
            tmp_path = tmp.name
        urllib.request.urlretrieve(url, tmp_path)
        os.replace(tmp_path, cached_path)
    except (urllib.error.URLError, OSError, ValueError) as e:
        reason = getattr(e, 'reason', None) or str(e)
        raise DownloadError(url, str(reason)) from e
    finally:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)

    logger.info(f"Downloaded to {cached_path}")
    return cached_path

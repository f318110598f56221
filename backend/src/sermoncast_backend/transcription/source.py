"""Fetch the audio behind a media record's URL into a local working file."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from ..media.storage import MEDIA_URL_PREFIX, LocalMediaStorage

logger = logging.getLogger(__name__)

_DOWNLOAD_CHUNK_SIZE = 1024 * 1024
_DOWNLOAD_HEADERS = {
    "Accept": "audio/*,*/*",
    "User-Agent": "Mozilla/5.0 (compatible; SermonCast/0.1)",
}

DownloadFn = Callable[[str, Path], Path]


def resolve_audio_url(audio_url: str, *, public_base_url: str) -> str:
    """Return an absolute, directly downloadable URL.

    Relative ``/api/...`` URLs are served by this application and are prefixed
    with the public base URL. Dropbox share links are rewritten with ``dl=1``
    so the raw file is returned instead of a preview page.
    """
    url = audio_url.strip()
    if not url:
        raise ValueError("audio URL must not be empty.")

    if url.startswith("/"):
        url = f"{public_base_url.rstrip('/')}{url}"

    parts = urlsplit(url)
    if parts.netloc.endswith("dropbox.com"):
        query = [(k, v) for k, v in parse_qsl(parts.query) if k != "dl"]
        query.append(("dl", "1"))
        url = urlunsplit(parts._replace(query=urlencode(query)))
    return url


def download_audio(
    url: str,
    destination: Path,
    *,
    timeout_seconds: float = 60.0,
    client: httpx.Client | None = None,
) -> Path:
    """Stream ``url`` into ``destination`` and return the path."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    owns_client = client is None
    http = client or httpx.Client(
        timeout=timeout_seconds, follow_redirects=True, headers=_DOWNLOAD_HEADERS
    )
    try:
        with http.stream("GET", url) as response:
            response.raise_for_status()
            with destination.open("wb") as handle:
                for chunk in response.iter_bytes(_DOWNLOAD_CHUNK_SIZE):
                    handle.write(chunk)
    finally:
        if owns_client:
            http.close()

    size = destination.stat().st_size
    if size == 0:
        raise ValueError(f"downloaded audio from {url} is empty")
    logger.info("Downloaded %s (%d bytes) to %s", url, size, destination)
    return destination


def fetch_audio(
    audio_url: str,
    destination: Path,
    *,
    public_base_url: str,
    storage: LocalMediaStorage | None = None,
    download_fn: DownloadFn | None = None,
    timeout_seconds: float = 60.0,
) -> Path:
    """Copy locally stored media directly, otherwise download it."""
    if storage is not None and audio_url.startswith(f"{MEDIA_URL_PREFIX}/"):
        local = storage.resolve(audio_url[len(MEDIA_URL_PREFIX) + 1 :])
        if local is not None:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local, destination)
            return destination

    url = resolve_audio_url(audio_url, public_base_url=public_base_url)
    if download_fn is not None:
        return download_fn(url, destination)
    return download_audio(url, destination, timeout_seconds=timeout_seconds)


__all__ = ["DownloadFn", "download_audio", "fetch_audio", "resolve_audio_url"]

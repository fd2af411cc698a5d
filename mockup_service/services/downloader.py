"""
Helpers for downloading design images and templates to local disk.

Downloads use `requests` and are pushed onto a worker thread so that a slow
remote host never blocks the event loop serving other requests.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Iterable
from urllib.parse import urlparse

import requests

from mockup_service.services.errors import FetchError


logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def download_file(url: str, output_path: Path, timeout: float = 15.0) -> Path:
    """
    Stream a remote file to `output_path`.

    Raises `requests.RequestException` or `OSError` on failure; a partially
    written file is removed before the error propagates.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(output_path, "wb") as handle:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        handle.write(chunk)
    except (requests.RequestException, OSError):
        output_path.unlink(missing_ok=True)
        raise
    return output_path


async def download_with_retries(
    url: str,
    output_path: Path,
    attempts: int = 3,
    delay: float = 1.0,
    timeout: float = 15.0,
) -> Path:
    """
    Download `url` with a fixed number of attempts and a fixed delay between them.

    Re-raises the last error once all attempts are exhausted.
    """
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            logger.info("Download attempt %d/%d: %s", attempt, attempts, url)
            await asyncio.to_thread(download_file, url, output_path, timeout)
            return output_path
        except (requests.RequestException, OSError) as exc:
            last_error = exc
            logger.warning("Attempt %d/%d for %s failed: %s", attempt, attempts, url, exc)
            if attempt < attempts:
                await asyncio.sleep(delay)
    raise last_error or OSError(f"Failed to download {url}")


class DesignImageFetcher:
    """Downloads the user's design image into a job directory."""

    def __init__(self, attempts: int = 3, delay: float = 1.0, timeout: float = 15.0) -> None:
        self.attempts = attempts
        self.delay = delay
        self.timeout = timeout

    async def fetch(self, url: str, job_dir: Path) -> Path:
        """
        Download the design to `<job_dir>/design-image<ext>`.

        Raises FetchError when all attempts fail; the request cannot proceed
        without a design.
        """
        output_path = job_dir / f"design-image{_extension_from_url(url)}"
        try:
            await download_with_retries(
                url,
                output_path,
                attempts=self.attempts,
                delay=self.delay,
                timeout=self.timeout,
            )
        except (requests.RequestException, OSError) as exc:
            logger.error("Failed to download design image from %s: %s", url, exc)
            raise FetchError(f"Failed to download design image: {exc}") from exc

        logger.info("Design image downloaded to %s", output_path)
        return output_path


def safe_filename(value: str) -> str:
    """Reduce an identifier to characters that are safe in a single path component."""
    cleaned = _UNSAFE_CHARS.sub("_", value).strip("._")
    return cleaned or "unnamed"


def _extension_from_url(url: str) -> str:
    suffix = Path(urlparse(url).path).suffix.lower()
    return suffix if suffix and len(suffix) <= 5 else ".png"


def cleanup_files(paths: Path | Iterable[Path] | None) -> None:
    """Remove intermediate files, logging and skipping any that cannot be removed."""
    if not paths:
        return
    if isinstance(paths, (str, Path)):
        paths = [Path(paths)]

    for path in paths:
        try:
            Path(path).unlink(missing_ok=True)
            logger.debug("Cleaned up temporary file: %s", path)
        except OSError as exc:
            logger.error("Error cleaning up file %s: %s", path, exc)

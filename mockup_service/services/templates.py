from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple
from urllib.parse import quote, urlparse
from uuid import uuid4

import requests

from mockup_service.config import Settings
from mockup_service.models.mockups import ResolvedTemplate, TemplateKind, TemplateSource
from mockup_service.services.downloader import download_with_retries, safe_filename


logger = logging.getLogger(__name__)

LAYERED_EXTENSIONS: Tuple[str, ...] = (".psd",)
RASTER_EXTENSIONS: Tuple[str, ...] = (".png", ".jpg", ".jpeg")
# Layered documents are preferred over flat rasters for the same name.
TEMPLATE_EXTENSIONS: Tuple[str, ...] = LAYERED_EXTENSIONS + RASTER_EXTENSIONS


def template_kind(path: Path | None) -> TemplateKind:
    """Classify a template file by its extension."""
    if path is None:
        return TemplateKind.NONE
    suffix = path.suffix.lower()
    if suffix in LAYERED_EXTENSIONS:
        return TemplateKind.LAYERED_DOCUMENT
    if suffix in RASTER_EXTENSIONS:
        return TemplateKind.FLAT_IMAGE
    return TemplateKind.NONE


class TemplateResolver:
    """
    Locates the template to use for a product.

    Lookup order: `<product_id>.<ext>` in the templates directory, then
    `default.<ext>`, then (if configured) a remote PSD source. A failure to
    download degrades to "no template" rather than failing the request.
    """

    def __init__(self, settings: Settings) -> None:
        self.templates_dir = settings.templates_dir
        self.cache_dir = settings.template_cache_dir
        self.remote_url = settings.remote_template_url
        self.download_attempts = settings.template_download_attempts
        self.download_delay = settings.download_retry_delay
        self.download_timeout = settings.download_timeout

    async def resolve(self, product_id: str) -> ResolvedTemplate:
        stem = safe_filename(product_id)
        local = self._find_local(stem, TemplateSource.LOCAL) or self._find_local(
            "default", TemplateSource.DEFAULT
        )
        if local is not None:
            logger.info("Template for %s: %s (%s)", product_id, local.path, local.source.value)
            return local

        if self.remote_url:
            remote = await self._fetch_remote(product_id, stem)
            if remote is not None:
                return remote

        logger.info("No template found for product %s", product_id)
        return ResolvedTemplate.missing()

    def _find_local(self, stem: str, source: TemplateSource) -> ResolvedTemplate | None:
        for extension in TEMPLATE_EXTENSIONS:
            candidate = self.templates_dir / f"{stem}{extension}"
            if candidate.is_file():
                return ResolvedTemplate(path=candidate, kind=template_kind(candidate), source=source)
        return None

    async def _fetch_remote(self, product_id: str, stem: str) -> ResolvedTemplate | None:
        url = self.remote_url.rstrip("/")
        if urlparse(url).path.lower().endswith(LAYERED_EXTENSIONS):
            # A single template file serves every product; cache one copy per product.
            cached = self.cache_dir / f"template-{stem}.psd"
            if _usable(cached):
                logger.debug("Reusing cached remote template %s", cached)
                return _remote(cached)
            return await self._download(url, cached)

        extension = LAYERED_EXTENSIONS[0]
        cached = self.cache_dir / f"{stem}{extension}"
        if _usable(cached):
            return _remote(cached)

        for remote_name, local_name in ((quote(product_id, safe=""), stem), ("default", "default")):
            target = self.cache_dir / f"{local_name}{extension}"
            if _usable(target):
                logger.debug("Reusing cached remote template %s", target)
                return _remote(target)
            resolved = await self._download(f"{url}/{remote_name}{extension}", target)
            if resolved is not None:
                return resolved
        return None

    async def _download(self, url: str, target: Path) -> ResolvedTemplate | None:
        logger.info("Attempting to download template from %s", url)
        # Concurrent requests may race on the same cache entry, so each one
        # writes a private partial file and renames it into place.
        partial = target.with_name(f"{target.name}.{uuid4().hex}.part")
        try:
            await download_with_retries(
                url,
                partial,
                attempts=self.download_attempts,
                delay=self.download_delay,
                timeout=self.download_timeout,
            )
        except (requests.RequestException, OSError) as exc:
            logger.warning("Template download from %s failed: %s", url, exc)
            return None

        if not _usable(partial):
            logger.error("Downloaded template from %s is empty", url)
            partial.unlink(missing_ok=True)
            return None

        partial.replace(target)
        logger.info("Downloaded template from %s to %s", url, target)
        return _remote(target)


def _usable(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


def _remote(path: Path) -> ResolvedTemplate:
    return ResolvedTemplate(path=path, kind=template_kind(path), source=TemplateSource.REMOTE)

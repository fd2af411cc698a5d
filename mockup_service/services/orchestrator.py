"""
Mockup generation pipeline.

    resolve template -> fetch design -> ordered compositing attempts
                     -> first success, or the basic fallback

Attempts run strictly one after another: the remote editor strategy holds an
exclusive browser session and must never be duplicated for one request.
Every attempt is bounded by `Settings.attempt_timeout`; a timeout or error
ends only that attempt.

Attempts write into `Settings.staging_dir`. Only a verified output is moved
into the published directory, so work left running on a worker thread after
a timeout never appears there.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Tuple
from uuid import uuid4

from PIL import Image, UnidentifiedImageError

from mockup_service.config import Settings
from mockup_service.models.mockups import (
    AttemptOutcome,
    CompositionAttempt,
    MockupMode,
    MockupRequest,
    MockupResult,
    ResolvedTemplate,
    Strategy,
    TemplateKind,
)
from mockup_service.services.compositing import LayeredCompositor
from mockup_service.services.document_compositor import DocumentCompositor
from mockup_service.services.downloader import DesignImageFetcher, cleanup_files, safe_filename
from mockup_service.services.errors import AutomationTimeout, ExportError, LayerNotFound, MockupError
from mockup_service.services.raster_compositor import BasicFallbackCompositor, FlatCompositor
from mockup_service.services.remote_editor import RemoteEditorCompositor
from mockup_service.services.templates import TemplateResolver


logger = logging.getLogger(__name__)


class MockupOrchestrator:
    """
    Pipeline entry point.

    Collaborators default to the production implementations built from
    `settings`; tests pass their own.
    """

    def __init__(
        self,
        settings: Settings,
        resolver: TemplateResolver | None = None,
        fetcher: DesignImageFetcher | None = None,
        layered_compositors: Mapping[Strategy, LayeredCompositor] | None = None,
        flat_compositor: FlatCompositor | None = None,
        basic_compositor: BasicFallbackCompositor | None = None,
    ) -> None:
        self.settings = settings
        output_dir = settings.resolved_output_dir
        staging_dir = settings.staging_dir
        self.resolver = resolver or TemplateResolver(settings)
        self.fetcher = fetcher or DesignImageFetcher(
            attempts=settings.download_attempts,
            delay=settings.download_retry_delay,
            timeout=settings.download_timeout,
        )
        if layered_compositors is None:
            layered_compositors = {
                Strategy.REMOTE_EDITOR: RemoteEditorCompositor(staging_dir, settings),
                Strategy.LOCAL_DOCUMENT: DocumentCompositor(staging_dir),
            }
        self.layered_compositors: Dict[Strategy, LayeredCompositor] = dict(layered_compositors)
        self.flat_compositor = flat_compositor or FlatCompositor(staging_dir, margin=settings.flat_margin)
        self.basic_compositor = basic_compositor or BasicFallbackCompositor(output_dir)

    def strategies_for_mode(self, mode: MockupMode) -> List[Strategy]:
        if mode is MockupMode.REMOTE_EDITOR:
            return [Strategy.REMOTE_EDITOR]
        if mode is MockupMode.LOCAL_DOCUMENT:
            return [Strategy.LOCAL_DOCUMENT]
        return list(self.settings.auto_strategy_order)

    async def run(
        self,
        design_id: str,
        product_id: str,
        design_image_url: str,
        mode: MockupMode | str = MockupMode.AUTO,
    ) -> MockupResult:
        request = MockupRequest(
            design_id=design_id,
            product_id=product_id,
            design_image_url=design_image_url,
            mode=MockupMode(mode),
        )
        return await self.run_request(request)

    async def run_request(self, request: MockupRequest) -> MockupResult:
        """
        Produce a mockup for `request`.

        Raises FetchError when the design cannot be downloaded and
        EncodeDecodeError when even the basic fallback cannot render it.
        """
        logger.info(
            "Mockup request: design=%s, sku=%s, mode=%s",
            request.design_id, request.product_id, request.mode.value,
        )
        template = await self.resolver.resolve(request.product_id)

        job_dir = self._create_job_dir(request)
        design_path: Path | None = None
        try:
            design_path = await self.fetcher.fetch(request.design_image_url, job_dir)
            result = await self._compose(request, template, design_path)
        finally:
            cleanup_files(design_path)
            _remove_empty_dir(job_dir)

        logger.info(
            "Mockup for design=%s sku=%s written to %s using %s (fallback=%s)",
            request.design_id, request.product_id, result.output_image_path,
            result.strategy_used.value, result.fallback_used,
        )
        return result

    async def _compose(self, request: MockupRequest, template: ResolvedTemplate, design_path: Path) -> MockupResult:
        attempts: List[CompositionAttempt] = []

        if template.kind is TemplateKind.LAYERED_DOCUMENT:
            # Every candidate name is tried with one strategy before the next.
            for strategy in self.strategies_for_mode(request.mode):
                compositor = self.layered_compositors[strategy]
                for layer_name in self.settings.layer_names:
                    attempt, output_path = await self._attempt(
                        strategy,
                        layer_name,
                        compositor.compose(template.path, design_path, layer_name),
                    )
                    attempts.append(attempt)
                    if output_path is not None:
                        return MockupResult(
                            output_image_path=output_path,
                            strategy_used=strategy,
                            fallback_used=False,
                            template=template,
                            attempts=attempts,
                        )
            logger.warning(
                "All %d attempts failed for sku=%s, using basic mockup", len(attempts), request.product_id
            )

        elif template.kind is TemplateKind.FLAT_IMAGE:
            attempt, output_path = await self._attempt(
                Strategy.FLAT,
                None,
                self.flat_compositor.compose(template.path, design_path),
            )
            attempts.append(attempt)
            if output_path is not None:
                return MockupResult(
                    output_image_path=output_path,
                    strategy_used=Strategy.FLAT,
                    fallback_used=False,
                    template=template,
                    attempts=attempts,
                )

        else:
            logger.info("No template available for %s, generating basic mockup", request.product_id)

        output_path = await self.basic_compositor.compose(design_path, f"{request.product_id} mockup")
        last_error = attempts[-1].error if attempts else None
        return MockupResult(
            output_image_path=output_path,
            strategy_used=Strategy.BASIC,
            fallback_used=True,
            template=template,
            attempts=attempts,
            error_message=last_error,
        )

    async def _attempt(
        self, strategy: Strategy, layer_name: str | None, work
    ) -> Tuple[CompositionAttempt, Path | None]:
        """Run one compositing coroutine under the outer timeout and classify the outcome."""
        context = f"strategy={strategy.value} layer={layer_name!r}"
        try:
            output_path = await asyncio.wait_for(work, timeout=self.settings.attempt_timeout)
            await asyncio.to_thread(_verify_image, output_path)
            output_path = await asyncio.to_thread(_publish, output_path, self.settings.resolved_output_dir)
        except asyncio.TimeoutError:
            message = f"Attempt exceeded {self.settings.attempt_timeout:g}s"
            logger.warning("%s timed out: %s", context, message)
            return CompositionAttempt(strategy, layer_name, AttemptOutcome.TIMEOUT, message), None
        except AutomationTimeout as exc:
            logger.warning("%s timed out: %s", context, exc)
            return CompositionAttempt(strategy, layer_name, AttemptOutcome.TIMEOUT, str(exc)), None
        except LayerNotFound as exc:
            logger.info("%s: %s", context, exc)
            return CompositionAttempt(strategy, layer_name, AttemptOutcome.NOT_FOUND, str(exc)), None
        except MockupError as exc:
            logger.warning("%s failed: %s", context, exc)
            return CompositionAttempt(strategy, layer_name, AttemptOutcome.ERROR, str(exc)), None
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s failed unexpectedly", context)
            return CompositionAttempt(strategy, layer_name, AttemptOutcome.ERROR, str(exc) or repr(exc)), None

        logger.info("%s succeeded: %s", context, output_path)
        return CompositionAttempt(strategy, layer_name, AttemptOutcome.SUCCESS), output_path

    def _create_job_dir(self, request: MockupRequest) -> Path:
        job_id = f"{safe_filename(request.design_id)}-{safe_filename(request.product_id)}-{uuid4().hex[:12]}"
        job_dir = self.settings.jobs_dir / job_id
        job_dir.mkdir(parents=True, exist_ok=True)
        return job_dir


def _verify_image(path: Path) -> None:
    try:
        with Image.open(path) as image:
            image.verify()
    except (OSError, UnidentifiedImageError) as exc:
        path.unlink(missing_ok=True)
        raise ExportError(f"Output {path} is not a readable image: {exc}") from exc


def _publish(path: Path, output_dir: Path) -> Path:
    """Move a verified attempt output into the published directory."""
    if path.parent == output_dir:
        return path
    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / path.name
    path.replace(target)
    return target


def _remove_empty_dir(path: Path) -> None:
    try:
        path.rmdir()
    except OSError:
        logger.debug("Job directory %s not removed", path)

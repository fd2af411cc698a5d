"""
Remote editor (Photopea) compositing through a headless browser.

Drives the editor's in-page scripting API with Playwright:

    Launching -> PageReady -> EditorLoaded -> TemplateOpen -> DesignOpen
              -> Composited -> Exported -> Closed

with Failed reachable from every non-terminal state. The browser is released
on every exit path, including cancellation by the orchestrator's outer
timeout. Each compose() call handles exactly one layer-name candidate.

All page interaction goes through `page.evaluate` with the scripts defined
below; the editor's DOM is not stable enough for selectors.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from contextlib import asynccontextmanager
from enum import Enum
from io import BytesIO
from pathlib import Path
from typing import Any, AsyncContextManager, AsyncIterator, Callable

from PIL import Image, UnidentifiedImageError
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from mockup_service.config import Settings
from mockup_service.models.mockups import Strategy
from mockup_service.services.compositing import LayeredCompositor, new_output_path
from mockup_service.services.errors import (
    AutomationLaunchError,
    AutomationTimeout,
    ExportError,
    LayerNotFound,
)
from mockup_service.services.layer_locator import LAYER_LOCATOR_JS


logger = logging.getLogger(__name__)

VIEWPORT = {"width": 1280, "height": 800}


class EditorState(str, Enum):
    LAUNCHING = "launching"
    PAGE_READY = "pageReady"
    EDITOR_LOADED = "editorLoaded"
    TEMPLATE_OPEN = "templateOpen"
    DESIGN_OPEN = "designOpen"
    COMPOSITED = "composited"
    EXPORTED = "exported"
    CLOSED = "closed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# In-page scripts
# ---------------------------------------------------------------------------

_HELPERS_JS = r"""
function toBuffer(b64) {
    var binary = window.atob(b64);
    var bytes = new Uint8Array(binary.length);
    for (var i = 0; i < binary.length; i++) { bytes[i] = binary.charCodeAt(i); }
    return bytes.buffer;
}
function activate(doc) {
    if (typeof doc.activate === "function") { doc.activate(); } else { app.activeDocument = doc; }
}
"""

EDITOR_READY_JS = r"""
() => {
    if (!window.app || typeof window.app.open !== "function") { return false; }
    var loader = document.querySelector("#appload");
    return !loader || loader.offsetParent === null;
}
"""

OPEN_TEMPLATE_JS = "(b64) => {" + _HELPERS_JS + r"""
    window.__mockupTemplate = app.open(toBuffer(b64)) || app.activeDocument;
    return !!window.__mockupTemplate;
}
"""

TEMPLATE_LAYERS_JS = r"""
() => {
    var doc = window.__mockupTemplate;
    return doc && doc.layers ? doc.layers.length : 0;
}
"""

OPEN_DESIGN_JS = "(b64) => {" + _HELPERS_JS + r"""
    window.__mockupDesign = app.open(toBuffer(b64)) || null;
    return !!window.__mockupDesign;
}
"""

DESIGN_READY_JS = r"""
() => {
    var doc = window.__mockupDesign;
    return !!(doc && doc.layers && doc.layers.length > 0);
}
"""

COPY_DESIGN_JS = "() => {" + _HELPERS_JS + r"""
    activate(window.__mockupDesign);
    app.activeDocument.selection.selectAll();
    app.activeDocument.selection.copy();
    app.activeDocument.close(false);
    window.__mockupDesign = null;
    return true;
}
"""

PASTE_INTO_LAYER_JS = "(layerName) => {" + _HELPERS_JS + LAYER_LOCATOR_JS + r"""
    var doc = window.__mockupTemplate;
    activate(doc);
    var layer = findLayerByName(doc.layers, layerName);
    if (!layer) {
        var names = [];
        for (var i = 0; i < doc.layers.length; i++) { names.push(String(doc.layers[i].name)); }
        return { found: false, layerNames: names };
    }
    app.activeDocument.activeLayer = layer;
    app.activeDocument.paste();
    app.activeDocument.flatten();
    return { found: true, matched: String(layer.name) };
}
"""

EXPORT_PNG_JS = r"""
() => {
    var doc = app.activeDocument;
    return doc && typeof doc.saveToBase64 === "function" ? doc.saveToBase64("png") : null;
}
"""


# ---------------------------------------------------------------------------
# Browser session
# ---------------------------------------------------------------------------

SessionFactory = Callable[[Settings], AsyncContextManager[Any]]


@asynccontextmanager
async def playwright_session(settings: Settings) -> AsyncIterator[Any]:
    """
    Launch an isolated headless Chromium and yield a fresh page.

    The browser and the Playwright driver are always shut down on exit.
    """
    if settings.chromium_path and not Path(settings.chromium_path).exists():
        raise AutomationLaunchError(f"Browser executable not found: {settings.chromium_path}")

    try:
        playwright = await async_playwright().start()
    except PlaywrightError as exc:
        raise AutomationLaunchError(f"Could not start Playwright: {exc}") from exc

    try:
        try:
            browser = await playwright.chromium.launch(
                headless=True,
                executable_path=settings.chromium_path,
                args=list(settings.browser_args),
            )
        except PlaywrightError as exc:
            raise AutomationLaunchError(f"Browser launch failed: {exc}") from exc

        try:
            logger.info("Browser launched: %s", browser.version)
            page = await browser.new_page(viewport=VIEWPORT)
            page.on("console", lambda msg: logger.debug("Browser console [%s]: %s", msg.type, msg.text))
            page.on("pageerror", lambda err: logger.debug("Browser page error: %s", err))
            yield page
        finally:
            try:
                await browser.close()
            except PlaywrightError as exc:
                logger.error("Error closing browser: %s", exc)
    finally:
        await playwright.stop()
        logger.debug("Browser session closed")


# ---------------------------------------------------------------------------
# Compositor
# ---------------------------------------------------------------------------


class EditorAttempt:
    """One pass through the editor state machine for a single layer name."""

    def __init__(self, page: Any, settings: Settings, layer_name: str) -> None:
        self.page = page
        self.settings = settings
        self.layer_name = layer_name
        self.state = EditorState.LAUNCHING

    def advance(self, state: EditorState) -> None:
        logger.info("Remote editor [%s]: %s -> %s", self.layer_name, self.state.value, state.value)
        self.state = state

    async def open_page(self) -> None:
        timeout_ms = self.settings.navigation_timeout * 1000
        try:
            await self.page.goto(self.settings.editor_url, wait_until="networkidle", timeout=timeout_ms)
        except PlaywrightError as exc:
            logger.warning("Navigation to %s failed (%s), retrying with relaxed wait", self.settings.editor_url, exc)
            try:
                await self.page.goto(self.settings.editor_url, wait_until="domcontentloaded", timeout=timeout_ms)
            except PlaywrightTimeoutError as retry_exc:
                raise AutomationTimeout(f"Failed to load editor: {retry_exc}") from retry_exc
            except PlaywrightError as retry_exc:
                raise AutomationLaunchError(f"Failed to load editor: {retry_exc}") from retry_exc
        self.advance(EditorState.PAGE_READY)

    async def wait_for_editor(self) -> None:
        attempts = self.settings.editor_poll_attempts
        if await self._poll(EDITOR_READY_JS, attempts):
            self.advance(EditorState.EDITOR_LOADED)
            return

        logger.warning("Editor scripting API not available, reloading once")
        try:
            await self.page.reload(wait_until="networkidle", timeout=self.settings.navigation_timeout * 1000)
        except PlaywrightError as exc:
            logger.warning("Reload failed: %s", exc)
        if not await self._poll(EDITOR_READY_JS, attempts):
            raise AutomationTimeout("Editor scripting API not available after reload")
        self.advance(EditorState.EDITOR_LOADED)

    async def open_template(self, template_b64: str) -> None:
        if not await self._call(OPEN_TEMPLATE_JS, template_b64):
            raise ExportError("Editor failed to open the template")
        if not await self._poll(TEMPLATE_LAYERS_JS, self.settings.document_poll_attempts):
            raise AutomationTimeout("Template opened without any layers")
        self.advance(EditorState.TEMPLATE_OPEN)

    async def open_design(self, design_b64: str) -> None:
        if not await self._call(OPEN_DESIGN_JS, design_b64):
            raise ExportError("Editor failed to open the design image")
        if not await self._poll(DESIGN_READY_JS, self.settings.document_poll_attempts):
            raise AutomationTimeout("Design document never became ready")
        await self._call(COPY_DESIGN_JS)
        self.advance(EditorState.DESIGN_OPEN)

    async def paste_into_layer(self) -> None:
        outcome = await self._call(PASTE_INTO_LAYER_JS, self.layer_name) or {}
        if not outcome.get("found"):
            raise LayerNotFound(self.layer_name, list(outcome.get("layerNames") or []))
        logger.info("Pasted design into layer %r", outcome.get("matched"))
        self.advance(EditorState.COMPOSITED)

    async def export(self, output_dir: Path) -> Path:
        payload = await self._call(EXPORT_PNG_JS)
        if not payload:
            raise ExportError("Editor did not return PNG data")
        data = decode_png_payload(payload)
        output_path = new_output_path(output_dir)
        await asyncio.to_thread(output_path.write_bytes, data)
        self.advance(EditorState.EXPORTED)
        return output_path

    async def _call(self, script: str, arg: Any = None) -> Any:
        try:
            return await self.page.evaluate(script, arg)
        except PlaywrightError as exc:
            raise ExportError(f"Editor script failed: {exc}") from exc

    async def _poll(self, script: str, attempts: int) -> bool:
        for _ in range(attempts):
            try:
                if await self.page.evaluate(script):
                    return True
            except PlaywrightError as exc:
                logger.debug("Readiness check failed: %s", exc)
            await asyncio.sleep(self.settings.editor_poll_interval)
        return False


def decode_png_payload(payload: str) -> bytes:
    """Decode the editor's base64 export (optionally a data URL) and check it is an image."""
    if payload.startswith("data:"):
        payload = payload.split(",", 1)[-1]
    try:
        data = base64.b64decode(payload, validate=True)
        with Image.open(BytesIO(data)) as image:
            image.verify()
    except (binascii.Error, ValueError, OSError, UnidentifiedImageError) as exc:
        raise ExportError(f"Editor returned an unreadable image: {exc}") from exc
    return data


class RemoteEditorCompositor(LayeredCompositor):
    strategy = Strategy.REMOTE_EDITOR

    def __init__(
        self,
        output_dir: Path,
        settings: Settings,
        session_factory: SessionFactory = playwright_session,
    ) -> None:
        super().__init__(output_dir)
        self.settings = settings
        self._session_factory = session_factory

    async def compose(self, template_path: Path, design_path: Path, layer_name: str) -> Path:
        template_b64, design_b64 = await asyncio.to_thread(_read_base64, template_path, design_path)
        logger.info(
            "Remote editor attempt: template=%s (%d chars b64), layer=%r",
            template_path.name, len(template_b64), layer_name,
        )

        attempt = EditorAttempt(page=None, settings=self.settings, layer_name=layer_name)
        try:
            async with self._session_factory(self.settings) as page:
                attempt.page = page
                await attempt.open_page()
                await attempt.wait_for_editor()
                await attempt.open_template(template_b64)
                await attempt.open_design(design_b64)
                await attempt.paste_into_layer()
                output_path = await attempt.export(self.output_dir)
        except BaseException:
            # Includes CancelledError from the orchestrator's outer timeout.
            attempt.advance(EditorState.FAILED)
            raise
        attempt.advance(EditorState.CLOSED)
        return output_path


def _read_base64(*paths: Path) -> tuple[str, ...]:
    return tuple(base64.b64encode(path.read_bytes()).decode("ascii") for path in paths)

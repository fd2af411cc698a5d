"""
Test suite for the remote editor compositor.

The browser is replaced with a scripted page, so these tests never launch
Chromium or touch the network.
"""

import asyncio
import base64
import logging
from contextlib import asynccontextmanager
from io import BytesIO

import pytest
from PIL import Image
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from mockup_service.config import Settings
from mockup_service.services.errors import (
    AutomationLaunchError,
    AutomationTimeout,
    ExportError,
    LayerNotFound,
)
from mockup_service.services.remote_editor import (
    DESIGN_READY_JS,
    EDITOR_READY_JS,
    EXPORT_PNG_JS,
    PASTE_INTO_LAYER_JS,
    EditorState,
    RemoteEditorCompositor,
    decode_png_payload,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def png_base64(size=(32, 32), color=(0, 255, 0, 255)):
    buffer = BytesIO()
    Image.new("RGBA", size, color).save(buffer, "PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class FakePage:
    """
    Scripted stand-in for a Playwright page.

    `responses` maps an in-page script to the value `evaluate` returns for it;
    scripts not listed evaluate to True.
    """

    def __init__(self, responses=None, goto_errors=()):
        self.responses = responses or {}
        self.goto_errors = list(goto_errors)
        self.evaluated = []
        self.reloads = 0

    async def goto(self, url, wait_until=None, timeout=None):
        if self.goto_errors:
            raise self.goto_errors.pop(0)

    async def reload(self, wait_until=None, timeout=None):
        self.reloads += 1

    async def evaluate(self, script, arg=None):
        self.evaluated.append((script, arg))
        response = self.responses.get(script, True)
        return response(arg) if callable(response) else response


class FakeSession:
    """Session factory that yields one FakePage and records that it was released."""

    def __init__(self, page):
        self.page = page
        self.opened = 0
        self.closed = 0

    def __call__(self, settings):
        @asynccontextmanager
        async def session():
            self.opened += 1
            try:
                yield self.page
            finally:
                self.closed += 1

        return session()


@pytest.fixture
def files(tmp_path):
    template = tmp_path / "shirt.psd"
    template.write_bytes(b"8BPS fake template")
    design = tmp_path / "design.png"
    design.write_bytes(base64.b64decode(png_base64()))
    return template, design


def make_compositor(tmp_path, page, **overrides):
    settings = Settings(temp_dir=tmp_path / "temp", editor_poll_interval=0, editor_poll_attempts=3).with_overrides(
        **overrides
    )
    session = FakeSession(page)
    compositor = RemoteEditorCompositor(tmp_path / "out", settings, session_factory=session)
    return compositor, session


def test_happy_path_exports_png(tmp_path, files):
    """A full pass writes the exported PNG and releases the browser."""
    page = FakePage({
        PASTE_INTO_LAYER_JS: {"found": True, "matched": "Design"},
        EXPORT_PNG_JS: "data:image/png;base64," + png_base64(),
    })
    compositor, session = make_compositor(tmp_path, page)

    output = asyncio.run(compositor.compose(*files, "Design"))

    with Image.open(output) as image:
        assert image.size == (32, 32)
    assert output.parent == tmp_path / "out"
    assert session.opened == session.closed == 1
    assert (PASTE_INTO_LAYER_JS, "Design") in page.evaluated
    logger.info("✓ Remote editor export written to %s", output)


def test_editor_never_ready_times_out_and_closes_session(tmp_path, files):
    """The readiness check gives up after polling, one reload, and polling again."""
    page = FakePage({EDITOR_READY_JS: False})
    compositor, session = make_compositor(tmp_path, page, editor_poll_attempts=4)

    with pytest.raises(AutomationTimeout):
        asyncio.run(compositor.compose(*files, "Design"))

    checks = [script for script, _ in page.evaluated if script == EDITOR_READY_JS]
    assert len(checks) == 8
    assert page.reloads == 1
    assert session.closed == 1
    assert not (tmp_path / "out").exists()
    logger.info("✓ Unready editor reported as timeout")


def test_missing_layer_raises_layer_not_found(tmp_path, files):
    """A layer miss reports the document's top-level layer names."""
    page = FakePage({PASTE_INTO_LAYER_JS: {"found": False, "layerNames": ["Background", "Shadow"]}})
    compositor, session = make_compositor(tmp_path, page)

    with pytest.raises(LayerNotFound) as excinfo:
        asyncio.run(compositor.compose(*files, "YOUR DESIGN"))

    assert excinfo.value.layer_name == "YOUR DESIGN"
    assert excinfo.value.available == ["Background", "Shadow"]
    assert session.closed == 1


def test_design_document_never_ready(tmp_path, files):
    page = FakePage({DESIGN_READY_JS: False})
    compositor, session = make_compositor(tmp_path, page, document_poll_attempts=2)

    with pytest.raises(AutomationTimeout):
        asyncio.run(compositor.compose(*files, "Design"))
    assert session.closed == 1


def test_navigation_is_retried_once(tmp_path, files):
    """A failed networkidle navigation is retried with a relaxed wait."""
    page = FakePage(
        {
            PASTE_INTO_LAYER_JS: {"found": True, "matched": "Design"},
            EXPORT_PNG_JS: png_base64(),
        },
        goto_errors=[PlaywrightError("net::ERR_ABORTED")],
    )
    compositor, _ = make_compositor(tmp_path, page)

    output = asyncio.run(compositor.compose(*files, "Design"))
    assert output.exists()


def test_navigation_failures_are_classified(tmp_path, files):
    timeout_page = FakePage(goto_errors=[PlaywrightError("first"), PlaywrightTimeoutError("slow")])
    compositor, _ = make_compositor(tmp_path, timeout_page)
    with pytest.raises(AutomationTimeout):
        asyncio.run(compositor.compose(*files, "Design"))

    broken_page = FakePage(goto_errors=[PlaywrightError("first"), PlaywrightError("DNS failure")])
    compositor, _ = make_compositor(tmp_path, broken_page)
    with pytest.raises(AutomationLaunchError):
        asyncio.run(compositor.compose(*files, "Design"))


def test_empty_export_is_an_error(tmp_path, files):
    page = FakePage({PASTE_INTO_LAYER_JS: {"found": True, "matched": "Design"}, EXPORT_PNG_JS: None})
    compositor, session = make_compositor(tmp_path, page)

    with pytest.raises(ExportError):
        asyncio.run(compositor.compose(*files, "Design"))
    assert session.closed == 1


def test_cancellation_releases_browser(tmp_path, files):
    """The outer attempt timeout cancels the attempt; the session must still close."""
    page = FakePage({EDITOR_READY_JS: False})
    compositor, session = make_compositor(tmp_path, page, editor_poll_attempts=1000, editor_poll_interval=0.01)

    async def run_with_timeout():
        await asyncio.wait_for(compositor.compose(*files, "Design"), timeout=0.1)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(run_with_timeout())
    assert session.opened == session.closed == 1


def test_decode_png_payload():
    raw = decode_png_payload(png_base64())
    assert raw.startswith(b"\x89PNG")
    assert decode_png_payload("data:image/png;base64," + png_base64()) == raw

    with pytest.raises(ExportError):
        decode_png_payload("not base64!")
    with pytest.raises(ExportError):
        decode_png_payload(base64.b64encode(b"plain text").decode("ascii"))


def test_editor_states_are_ordered():
    states = [state.value for state in EditorState]
    assert states[0] == "launching"
    assert states.index("templateOpen") < states.index("designOpen") < states.index("exported")

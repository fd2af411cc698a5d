"""
Tests for the mockup pipeline: strategy ordering, per-attempt bookkeeping,
timeouts and the fallbacks.

Layered compositors are mostly scripted fakes; the flat and basic
compositors run for real, as do the remote editor (against a fake page) and
the document compositor in the timeout tests.
"""

import asyncio
import time
from contextlib import asynccontextmanager

import pytest
from PIL import Image

from mockup_service.config import DEFAULT_LAYER_NAMES, Settings
from mockup_service.models.mockups import (
    AttemptOutcome,
    BoundingBox,
    LayerNode,
    LayerTree,
    MockupMode,
    Strategy,
    TemplateKind,
)
from mockup_service.services.document_compositor import DocumentCompositor
from mockup_service.services.errors import AutomationTimeout, FetchError, LayerNotFound
from mockup_service.services.orchestrator import MockupOrchestrator
from mockup_service.services.remote_editor import RemoteEditorCompositor


class FakeFetcher:
    def __init__(self, size=(200, 200), error=None):
        self.size = size
        self.error = error
        self.downloaded = []

    async def fetch(self, url, job_dir):
        if self.error:
            raise self.error
        path = job_dir / "design-image.png"
        Image.new("RGBA", self.size, (255, 0, 0, 255)).save(path, "PNG")
        self.downloaded.append(path)
        return path


class ScriptedCompositor:
    """
    Layered compositor fake.

    `behaviour` maps a layer name to an exception to raise, "sleep" to hang,
    "garbage" to return an unreadable file, or "ok" to write a PNG. Names not
    listed raise LayerNotFound.
    """

    def __init__(self, strategy, output_dir, behaviour=None):
        self.strategy = strategy
        self.output_dir = output_dir
        self.behaviour = behaviour or {}
        self.calls = []

    async def compose(self, template_path, design_path, layer_name):
        self.calls.append(layer_name)
        action = self.behaviour.get(layer_name)
        if action is None:
            raise LayerNotFound(layer_name)
        if isinstance(action, Exception):
            raise action
        if action == "sleep":
            await asyncio.sleep(10)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{self.strategy.value}-{len(self.calls)}.png"
        if action == "garbage":
            path.write_bytes(b"not a png")
        else:
            Image.new("RGBA", (64, 64), (0, 0, 255, 255)).save(path, "PNG")
        return path


@pytest.fixture
def settings(tmp_path):
    settings = Settings(
        templates_dir=tmp_path / "templates",
        temp_dir=tmp_path / "temp",
        download_retry_delay=0,
        attempt_timeout=5,
    )
    settings.ensure_directories()
    return settings


def layered_template(settings, product_id="tee"):
    (settings.templates_dir / f"{product_id}.psd").write_bytes(b"8BPS")


def build_orchestrator(settings, remote=None, local=None, fetcher=None):
    output_dir = settings.resolved_output_dir
    remote = remote or ScriptedCompositor(Strategy.REMOTE_EDITOR, output_dir)
    local = local or ScriptedCompositor(Strategy.LOCAL_DOCUMENT, output_dir)
    orchestrator = MockupOrchestrator(
        settings,
        fetcher=fetcher or FakeFetcher(),
        layered_compositors={Strategy.REMOTE_EDITOR: remote, Strategy.LOCAL_DOCUMENT: local},
    )
    return orchestrator, remote, local


def run(orchestrator, mode=MockupMode.AUTO, product_id="tee"):
    return asyncio.run(orchestrator.run("design-1", product_id, "https://cdn.example.com/d.png", mode))


def test_strategies_for_mode(settings):
    orchestrator, _, _ = build_orchestrator(settings)
    assert orchestrator.strategies_for_mode(MockupMode.AUTO) == [Strategy.REMOTE_EDITOR, Strategy.LOCAL_DOCUMENT]
    assert orchestrator.strategies_for_mode(MockupMode.REMOTE_EDITOR) == [Strategy.REMOTE_EDITOR]
    assert orchestrator.strategies_for_mode(MockupMode.LOCAL_DOCUMENT) == [Strategy.LOCAL_DOCUMENT]

    reordered, _, _ = build_orchestrator(
        settings.with_overrides(auto_strategy_order=(Strategy.LOCAL_DOCUMENT, Strategy.REMOTE_EDITOR))
    )
    assert reordered.strategies_for_mode(MockupMode.AUTO)[0] is Strategy.LOCAL_DOCUMENT


def test_exhausted_layered_attempts_fall_back_to_basic(settings):
    layered_template(settings)
    orchestrator, remote, local = build_orchestrator(settings)

    result = run(orchestrator)

    names = len(DEFAULT_LAYER_NAMES)
    assert len(result.attempts) == names * 2
    assert all(attempt.outcome is AttemptOutcome.NOT_FOUND for attempt in result.attempts)
    assert [a.strategy for a in result.attempts] == [Strategy.REMOTE_EDITOR] * names + [Strategy.LOCAL_DOCUMENT] * names
    assert [a.layer_name_candidate for a in result.attempts[:names]] == list(DEFAULT_LAYER_NAMES)

    assert result.strategy_used is Strategy.BASIC
    assert result.fallback_used is True
    assert "design-placeholder" in result.error_message
    assert result.template.kind is TemplateKind.LAYERED_DOCUMENT
    with Image.open(result.output_image_path) as image:
        assert image.size == (300, 300)


def test_first_success_stops_the_search(settings):
    layered_template(settings)
    local = ScriptedCompositor(
        Strategy.LOCAL_DOCUMENT, settings.resolved_output_dir, {"YOUR DESIGN HERE": "ok", "DESIGN": "ok"}
    )
    orchestrator, remote, local = build_orchestrator(settings, local=local)

    result = run(orchestrator)

    assert result.strategy_used is Strategy.LOCAL_DOCUMENT
    assert result.fallback_used is False
    assert result.error_message is None
    assert len(result.attempts) == len(DEFAULT_LAYER_NAMES) + 3
    assert result.attempts[-1].outcome is AttemptOutcome.SUCCESS
    assert result.attempts[-1].layer_name_candidate == "YOUR DESIGN HERE"
    assert local.calls == ["Design", "YOUR DESIGN", "YOUR DESIGN HERE"]


def test_pinned_mode_only_uses_that_strategy(settings):
    layered_template(settings)
    orchestrator, remote, local = build_orchestrator(settings.with_overrides(layer_names=("Design",)))

    result = run(orchestrator, mode=MockupMode.LOCAL_DOCUMENT)

    assert remote.calls == []
    assert local.calls == ["Design"]
    assert len(result.attempts) == 1
    assert result.strategy_used is Strategy.BASIC


def test_mode_may_be_given_as_string(settings):
    layered_template(settings)
    orchestrator, remote, local = build_orchestrator(settings.with_overrides(layer_names=("Design",)))

    run(orchestrator, mode="remoteEditor")

    assert remote.calls == ["Design"]
    assert local.calls == []


def test_attempt_timeout_moves_on_to_next_strategy(settings):
    layered_template(settings)
    fast = settings.with_overrides(layer_names=("Design",), attempt_timeout=0.05)
    remote = ScriptedCompositor(Strategy.REMOTE_EDITOR, fast.resolved_output_dir, {"Design": "sleep"})
    local = ScriptedCompositor(Strategy.LOCAL_DOCUMENT, fast.resolved_output_dir, {"Design": "ok"})
    orchestrator, _, _ = build_orchestrator(fast, remote=remote, local=local)

    result = run(orchestrator)

    assert [a.outcome for a in result.attempts] == [AttemptOutcome.TIMEOUT, AttemptOutcome.SUCCESS]
    assert result.strategy_used is Strategy.LOCAL_DOCUMENT


def test_editor_timeout_and_errors_are_recorded(settings):
    layered_template(settings)
    one_name = settings.with_overrides(layer_names=("Design",))
    remote = ScriptedCompositor(
        Strategy.REMOTE_EDITOR, one_name.resolved_output_dir, {"Design": AutomationTimeout("editor not ready")}
    )
    local = ScriptedCompositor(Strategy.LOCAL_DOCUMENT, one_name.resolved_output_dir, {"Design": ValueError("boom")})
    orchestrator, _, _ = build_orchestrator(one_name, remote=remote, local=local)

    result = run(orchestrator)

    assert [a.outcome for a in result.attempts] == [AttemptOutcome.TIMEOUT, AttemptOutcome.ERROR]
    assert result.attempts[0].error == "editor not ready"
    assert result.error_message == "boom"
    assert result.fallback_used is True


def test_unreadable_output_counts_as_failure(settings):
    layered_template(settings)
    one_name = settings.with_overrides(layer_names=("Design",))
    remote = ScriptedCompositor(Strategy.REMOTE_EDITOR, one_name.resolved_output_dir, {"Design": "garbage"})
    orchestrator, _, _ = build_orchestrator(one_name, remote=remote)

    result = run(orchestrator)

    assert result.attempts[0].outcome is AttemptOutcome.ERROR
    assert not (one_name.resolved_output_dir / "remoteEditor-1.png").exists()
    assert result.strategy_used is Strategy.BASIC


def test_flat_template_end_to_end(settings):
    Image.new("RGBA", (800, 800), (255, 255, 255, 255)).save(settings.templates_dir / "tee.png", "PNG")
    orchestrator, remote, local = build_orchestrator(settings)

    result = run(orchestrator)

    assert result.strategy_used is Strategy.FLAT
    assert result.fallback_used is False
    assert [(a.strategy, a.layer_name_candidate, a.outcome) for a in result.attempts] == [
        (Strategy.FLAT, None, AttemptOutcome.SUCCESS)
    ]
    assert remote.calls == [] and local.calls == []
    with Image.open(result.output_image_path) as image:
        assert image.size == (800, 800)
    # Written to staging by the attempt, then published.
    assert result.output_image_path.parent == settings.resolved_output_dir
    assert list(settings.staging_dir.glob("*.png")) == []


def test_missing_template_produces_basic_mockup(settings):
    fetcher = FakeFetcher()
    orchestrator, remote, local = build_orchestrator(settings, fetcher=fetcher)

    result = run(orchestrator, product_id="unknown-sku")

    assert result.strategy_used is Strategy.BASIC
    assert result.fallback_used is True
    assert result.attempts == []
    assert result.error_message is None
    assert not result.template.found
    assert result.output_image_path.parent == settings.resolved_output_dir
    with Image.open(result.output_image_path) as image:
        assert image.size == (300, 300)
    # The downloaded design and its job directory are cleaned up.
    assert not fetcher.downloaded[0].exists()
    assert list(settings.jobs_dir.iterdir()) == []


def test_fetch_error_ends_the_request(settings):
    orchestrator, _, _ = build_orchestrator(settings, fetcher=FakeFetcher(error=FetchError("404")))

    with pytest.raises(FetchError):
        run(orchestrator)

    assert list(settings.jobs_dir.iterdir()) == []
    assert list(settings.resolved_output_dir.iterdir()) == []


class UnreadyEditorPage:
    """Editor page whose scripting API never becomes available."""

    async def goto(self, url, wait_until=None, timeout=None):
        pass

    async def reload(self, wait_until=None, timeout=None):
        pass

    async def evaluate(self, script, arg=None):
        return False


class RecordingSession:
    def __init__(self):
        self.opened = 0
        self.closed = 0

    def __call__(self, settings):
        @asynccontextmanager
        async def session():
            self.opened += 1
            try:
                yield UnreadyEditorPage()
            finally:
                self.closed += 1

        return session()


def test_unready_editor_times_out_within_budget(settings):
    layered_template(settings)
    budget = 0.2
    bounded = settings.with_overrides(
        layer_names=("Design",),
        attempt_timeout=budget,
        editor_poll_attempts=1000,
        editor_poll_interval=0.01,
    )
    session = RecordingSession()
    remote = RemoteEditorCompositor(bounded.staging_dir, bounded, session_factory=session)
    local = ScriptedCompositor(Strategy.LOCAL_DOCUMENT, bounded.resolved_output_dir, {"Design": "ok"})
    orchestrator, _, _ = build_orchestrator(bounded, remote=remote, local=local)

    started = time.monotonic()
    result = run(orchestrator)
    elapsed = time.monotonic() - started

    assert [a.outcome for a in result.attempts] == [AttemptOutcome.TIMEOUT, AttemptOutcome.SUCCESS]
    assert result.attempts[0].strategy is Strategy.REMOTE_EDITOR
    assert result.strategy_used is Strategy.LOCAL_DOCUMENT
    assert session.opened == session.closed == 1
    assert budget <= elapsed < budget + 1.0


class SlowDocument:
    """Parsed document whose rendering outlasts the attempt timeout."""

    def __init__(self):
        self.tree = LayerTree(
            [LayerNode(index=0, name="Design", bbox=BoundingBox(10, 10, 20, 20))], [0], width=64, height=64
        )

    def composite(self):
        time.sleep(0.3)
        return Image.new("RGBA", (64, 64), (255, 255, 255, 255))


def test_timed_out_document_attempt_leaves_no_output(settings):
    layered_template(settings)
    bounded = settings.with_overrides(layer_names=("Design",), attempt_timeout=0.05)
    local = DocumentCompositor(bounded.staging_dir, document_loader=lambda path: SlowDocument())
    orchestrator, _, _ = build_orchestrator(bounded, local=local)

    # asyncio.run waits for the abandoned worker thread before returning.
    result = run(orchestrator, mode=MockupMode.LOCAL_DOCUMENT)

    assert [a.outcome for a in result.attempts] == [AttemptOutcome.TIMEOUT]
    assert result.strategy_used is Strategy.BASIC
    assert list(bounded.resolved_output_dir.glob("*.png")) == [result.output_image_path]
    assert list(bounded.staging_dir.glob("*.png")) == []

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, List


class MockupMode(str, Enum):
    """Which compositing strategies a request may use for layered templates."""

    AUTO = "auto"
    REMOTE_EDITOR = "remoteEditor"
    LOCAL_DOCUMENT = "localDocument"


class TemplateKind(str, Enum):
    LAYERED_DOCUMENT = "layeredDocument"
    FLAT_IMAGE = "flatImage"
    NONE = "none"


class TemplateSource(str, Enum):
    LOCAL = "local"
    DEFAULT = "default"
    REMOTE = "remote"
    NONE = "none"


class Strategy(str, Enum):
    REMOTE_EDITOR = "remoteEditor"
    LOCAL_DOCUMENT = "localDocument"
    FLAT = "flat"
    BASIC = "basic"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    NOT_FOUND = "notFound"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class MockupRequest:
    """
    A single mockup generation request.

    Frozen so that nothing in the pipeline can change the request while a run
    is in progress.
    """

    design_id: str
    product_id: str
    design_image_url: str
    mode: MockupMode = MockupMode.AUTO


@dataclass(frozen=True, slots=True)
class ResolvedTemplate:
    path: Path | None
    kind: TemplateKind
    source: TemplateSource = TemplateSource.NONE

    @classmethod
    def missing(cls) -> ResolvedTemplate:
        return cls(path=None, kind=TemplateKind.NONE, source=TemplateSource.NONE)

    @property
    def found(self) -> bool:
        return self.kind is not TemplateKind.NONE

    @property
    def extension(self) -> str | None:
        """File extension without the dot, e.g. "psd"; None when no template."""
        if self.path is None:
            return None
        return self.path.suffix.lower().lstrip(".") or None


@dataclass(frozen=True, slots=True)
class BoundingBox:
    left: int
    top: int
    width: int
    height: int

    @classmethod
    def from_edges(cls, left: int, top: int, right: int, bottom: int) -> BoundingBox:
        """Build from (left, top, right, bottom) edges as psd-tools reports them."""
        return cls(left=left, top=top, width=max(right - left, 0), height=max(bottom - top, 0))

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


@dataclass(frozen=True, slots=True)
class LayerNode:
    """
    One layer or group of a parsed layered document.

    Children are referenced by their index in the owning LayerTree rather than
    by object, which keeps the tree trivially read-only and acyclic.
    """

    index: int
    name: str
    bbox: BoundingBox
    is_group: bool = False
    visible: bool = True
    children: tuple[int, ...] = ()
    parent: int | None = None


class LayerTree:
    """
    Arena of LayerNodes indexed by position.

    The top-level layers are listed top-most first, matching the order in
    which image editors present the layer panel.
    """

    def __init__(self, nodes: List[LayerNode], roots: List[int], width: int = 0, height: int = 0) -> None:
        self._nodes = list(nodes)
        self._roots = tuple(roots)
        self.width = width
        self.height = height

    def __len__(self) -> int:
        return len(self._nodes)

    def __getitem__(self, index: int) -> LayerNode:
        return self._nodes[index]

    @property
    def roots(self) -> List[LayerNode]:
        return [self._nodes[i] for i in self._roots]

    def children_of(self, node: LayerNode) -> List[LayerNode]:
        return [self._nodes[i] for i in node.children]

    def walk(self) -> Iterator[LayerNode]:
        """Pre-order, depth-first traversal, top-most layer first."""
        stack = list(reversed(self._roots))
        while stack:
            node = self._nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.children))

    def names(self) -> List[str]:
        return [node.name for node in self.walk()]


@dataclass(slots=True)
class CompositionAttempt:
    """Diagnostic record of one strategy run against one layer-name candidate."""

    strategy: Strategy
    layer_name_candidate: str | None
    outcome: AttemptOutcome
    error: str | None = None


@dataclass(slots=True)
class MockupResult:
    """
    Outcome of one pipeline run.

    The caller owns `output_image_path` and is responsible for publishing and
    eventually deleting it.
    """

    output_image_path: Path
    strategy_used: Strategy
    fallback_used: bool
    template: ResolvedTemplate = field(default_factory=ResolvedTemplate.missing)
    attempts: List[CompositionAttempt] = field(default_factory=list)
    # Last per-attempt error when a fallback had to be used.
    error_message: str | None = None

    @property
    def filename(self) -> str:
        return self.output_image_path.name

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable

from PIL import Image, UnidentifiedImageError

from mockup_service.models.mockups import Strategy
from mockup_service.services.compositing import LayeredCompositor, resize_rgba, run_abandonable, save_png
from mockup_service.services.errors import ExportError, LayerNotFound, TemplateUnavailable
from mockup_service.services.layer_locator import find_layer
from mockup_service.services.psd_parser import PSDParser


logger = logging.getLogger(__name__)


def load_document(template_path: Path) -> PSDParser:
    parser = PSDParser(template_path)
    if not parser.parse():
        raise TemplateUnavailable(f"Could not parse layered template {template_path}")
    return parser


class DocumentCompositor(LayeredCompositor):
    """
    Inserts the design by parsing the PSD locally.

    The design is stretched to exactly fill the insertion layer's bounds and
    pasted over the rendered document. Advanced layer effects (smart objects,
    warps, blend modes on the placeholder) are not reproduced; that is what
    the remote editor strategy is for.
    """

    strategy = Strategy.LOCAL_DOCUMENT

    def __init__(self, output_dir: Path, document_loader: Callable[[Path], PSDParser] = load_document) -> None:
        super().__init__(output_dir)
        self._load_document = document_loader

    async def compose(self, template_path: Path, design_path: Path, layer_name: str) -> Path:
        return await run_abandonable(self._compose, template_path, design_path, layer_name)

    def _compose(
        self, template_path: Path, design_path: Path, layer_name: str, abandoned: threading.Event
    ) -> Path:
        logger.info("Loading PSD template: %s", template_path)
        document = self._load_document(template_path)
        tree = document.tree

        layer = find_layer(tree, layer_name)
        if layer is None:
            raise LayerNotFound(layer_name, [node.name for node in tree.roots])
        box = layer.bbox
        if box.is_empty:
            raise LayerNotFound(layer_name, [f"{layer.name} (empty bounds)"])
        logger.info(
            "Design layer %r -> %r at (%d,%d) %dx%d",
            layer_name, layer.name, box.left, box.top, box.width, box.height,
        )

        try:
            with Image.open(design_path) as design_file:
                design = resize_rgba(design_file, box.width, box.height)
        except (OSError, UnidentifiedImageError) as exc:
            raise ExportError(f"Cannot read design image {design_path}: {exc}") from exc

        base = document.composite()
        # Layers may extend past the canvas; clip the paste to the document.
        base.paste(design, (box.left, box.top), design)

        return save_png(base, self.output_dir, abandoned)

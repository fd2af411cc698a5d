"""
PSD Template Parsing Service

Parses Photoshop PSD templates into a read-only LayerTree and renders the
document composite that mockups are drawn on.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, List

from PIL import Image
from psd_tools import PSDImage

from mockup_service.models.mockups import BoundingBox, LayerNode, LayerTree


logger = logging.getLogger(__name__)


class LayerTreeBuilder:
    """
    Flattens a psd-tools layer hierarchy into a LayerTree arena.

    psd-tools iterates layers bottom-most first; editors (and the layer
    locator) list them top-most first, so every sibling list is reversed.
    """

    def __init__(self) -> None:
        self._nodes: List[LayerNode] = []
        self._children: List[List[int]] = []

    def build(self, root: Iterable[Any], width: int = 0, height: int = 0) -> LayerTree:
        roots = self._add_siblings(root, parent=None)
        nodes = [
            LayerNode(
                index=node.index,
                name=node.name,
                bbox=node.bbox,
                is_group=node.is_group,
                visible=node.visible,
                children=tuple(self._children[node.index]),
                parent=node.parent,
            )
            for node in self._nodes
        ]
        return LayerTree(nodes, roots, width=width, height=height)

    def _add_siblings(self, parent_layer: Iterable[Any], parent: int | None) -> List[int]:
        indices = []
        for layer in reversed(list(parent_layer)):
            indices.append(self._add_layer(layer, parent))
        return indices

    def _add_layer(self, layer: Any, parent: int | None) -> int:
        index = len(self._nodes)
        is_group = bool(layer.is_group())
        self._nodes.append(
            LayerNode(
                index=index,
                name=str(layer.name or ""),
                bbox=_get_layer_bbox(layer),
                is_group=is_group,
                visible=bool(getattr(layer, "visible", True)),
                parent=parent,
            )
        )
        self._children.append([])
        if is_group:
            self._children[index] = self._add_siblings(layer, parent=index)
        return index


def _get_layer_bbox(layer: Any) -> BoundingBox:
    """
    Extract the layer bounds.

    psd-tools reports (left, top, right, bottom); empty layers report zeros
    and come back as an empty BoundingBox.
    """
    try:
        left, top, right, bottom = layer.bbox
    except (TypeError, ValueError) as exc:
        logger.warning(f"Failed to get bbox for layer '{layer.name}': {exc}")
        return BoundingBox(0, 0, 0, 0)
    return BoundingBox.from_edges(int(left), int(top), int(right), int(bottom))


class PSDParser:
    """
    Parses a PSD template into a LayerTree.

    The parsed tree is never modified; compositing happens on rendered
    copies of the document.
    """

    def __init__(self, psd_path: str | Path):
        self.psd_path = Path(psd_path)
        self.psd: PSDImage | None = None
        self.tree: LayerTree | None = None

    def parse(self) -> bool:
        """
        Parse the PSD file and build the layer tree.

        Returns True if parsing succeeded, False otherwise.
        """
        try:
            self.psd = PSDImage.open(self.psd_path)
            logger.info(f"Opened PSD: {self.psd_path} ({self.psd.width}x{self.psd.height})")
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to open PSD file {self.psd_path}: {exc}")
            return False

        self.tree = LayerTreeBuilder().build(self.psd, width=self.psd.width, height=self.psd.height)
        logger.debug("Layer structure of %s: %s", self.psd_path.name, self.tree.names())
        return True

    def composite(self) -> Image.Image:
        """Render the whole document to an RGBA image."""
        if not self.psd:
            raise RuntimeError("PSD has not been parsed")
        image = self.psd.composite()
        return image.convert("RGBA")

    def export_flattened_image(self, output_path: str | Path) -> bool:
        """Export the flattened PSD as PNG."""
        try:
            self.composite().save(output_path, "PNG")
            logger.info(f"Exported flattened PSD to {output_path}")
            return True
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to export flattened PSD: {exc}")
            return False

    def get_dimensions(self) -> tuple[int, int]:
        """Get PSD dimensions (width, height)."""
        if self.psd:
            return (self.psd.width, self.psd.height)
        return (0, 0)

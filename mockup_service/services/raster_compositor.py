"""
Compositors for templates that carry no layer information.

`FlatCompositor` places the design into a fixed inset region of a single
raster template. `BasicFallbackCompositor` is the last resort when there is no
usable template at all.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path

from PIL import Image, UnidentifiedImageError
from PIL.PngImagePlugin import PngInfo

from mockup_service.models.mockups import BoundingBox
from mockup_service.services.compositing import letterbox_rgba, new_output_path, run_abandonable, save_png
from mockup_service.services.errors import EncodeDecodeError, ExportError


logger = logging.getLogger(__name__)

BACKGROUND_COLOR = (240, 240, 240, 255)
CANVAS_SCALE = 1.5


def flat_design_region(width: int, height: int, margin: int) -> BoundingBox:
    """
    Region of a flat template that receives the design.

    Flat templates carry no placement metadata, so the region is the template
    inset by `margin` on every side. An axis too small for the margin uses
    its full extent.
    """
    margin_x = margin if width > 2 * margin else 0
    margin_y = margin if height > 2 * margin else 0
    return BoundingBox(left=margin_x, top=margin_y, width=width - 2 * margin_x, height=height - 2 * margin_y)


class FlatCompositor:
    def __init__(self, output_dir: Path, margin: int = 50) -> None:
        self.output_dir = output_dir
        self.margin = margin

    async def compose(self, template_path: Path, design_path: Path) -> Path:
        return await run_abandonable(self._compose, template_path, design_path)

    def _compose(self, template_path: Path, design_path: Path, abandoned: threading.Event) -> Path:
        logger.info("Loading flat template: %s", template_path)
        try:
            with Image.open(template_path) as template_file, Image.open(design_path) as design_file:
                template = template_file.convert("RGBA")
                design = design_file.convert("RGBA")
        except (OSError, UnidentifiedImageError) as exc:
            raise ExportError(f"Cannot read flat template or design: {exc}") from exc

        region = flat_design_region(template.width, template.height, self.margin)
        fitted = letterbox_rgba(design, region.width, region.height)
        template.alpha_composite(fitted, dest=(region.left, region.top))

        output_path = save_png(template, self.output_dir, abandoned)
        logger.info("Flat mockup written to %s (%dx%d)", output_path, template.width, template.height)
        return output_path


class BasicFallbackCompositor:
    """
    Centers the unmodified design on a neutral canvas 1.5x its size.

    Cannot fail for structural reasons; an unreadable design raises
    EncodeDecodeError, which ends the request.
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    async def compose(self, design_path: Path, label: str = "Mockup") -> Path:
        return await asyncio.to_thread(self._compose, design_path, label)

    def _compose(self, design_path: Path, label: str) -> Path:
        try:
            with Image.open(design_path) as design_file:
                design = design_file.convert("RGBA")
        except (OSError, UnidentifiedImageError) as exc:
            logger.error("Error reading design for basic mockup: %s", exc)
            raise EncodeDecodeError(f"Cannot read design image {design_path}: {exc}") from exc

        canvas_w = int(design.width * CANVAS_SCALE)
        canvas_h = int(design.height * CANVAS_SCALE)
        canvas = Image.new("RGBA", (canvas_w, canvas_h), BACKGROUND_COLOR)
        left = (canvas_w - design.width) // 2
        top = (canvas_h - design.height) // 2
        canvas.alpha_composite(design, dest=(left, top))

        metadata = PngInfo()
        metadata.add_text("Title", label)

        output_path = new_output_path(self.output_dir, prefix="basic-mockup")
        try:
            canvas.save(output_path, "PNG", pnginfo=metadata)
        except OSError as exc:
            raise EncodeDecodeError(f"Cannot write basic mockup: {exc}") from exc
        logger.info("Basic mockup written to %s (%dx%d)", output_path, canvas_w, canvas_h)
        return output_path

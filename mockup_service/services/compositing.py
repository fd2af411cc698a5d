from __future__ import annotations

import abc
import asyncio
import threading
from pathlib import Path
from typing import Any, Callable, TypeVar
from uuid import uuid4

import cv2
import numpy as np
from PIL import Image

from mockup_service.models.mockups import Strategy
from mockup_service.services.errors import ExportError


T = TypeVar("T")


class LayeredCompositor(abc.ABC):
    """
    A strategy that inserts a design into a named layer of a layered template.

    The orchestrator only talks to this interface; one call is one attempt
    for one layer-name candidate.
    """

    strategy: Strategy

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    @abc.abstractmethod
    async def compose(self, template_path: Path, design_path: Path, layer_name: str) -> Path:
        """Write the mockup to `output_dir` and return its path."""


def new_output_path(output_dir: Path, prefix: str = "mockup") -> Path:
    """Collision-free output filename, safe for concurrent requests."""
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir / f"{prefix}-{uuid4().hex}.png"


async def run_abandonable(func: Callable[..., T], *args: Any) -> T:
    """
    Run blocking compositing work on a worker thread.

    Cancelling the caller cannot stop the thread. Instead `func` receives a
    `threading.Event` as its last argument, set on cancellation, and must
    discard its output once it is set.
    """
    abandoned = threading.Event()
    try:
        return await asyncio.to_thread(func, *args, abandoned)
    except asyncio.CancelledError:
        abandoned.set()
        raise


def save_png(
    image: Image.Image,
    output_dir: Path,
    abandoned: threading.Event | None = None,
    prefix: str = "mockup",
    **params: Any,
) -> Path:
    """
    Write `image` as a new PNG in `output_dir`.

    Raises ExportError when the write fails or the attempt was abandoned;
    an abandoned attempt removes what it wrote.
    """
    if abandoned is not None and abandoned.is_set():
        raise ExportError("Attempt abandoned before export")
    output_path = new_output_path(output_dir, prefix=prefix)
    try:
        image.save(output_path, "PNG", **params)
    except OSError as exc:
        output_path.unlink(missing_ok=True)
        raise ExportError(f"Cannot write mockup: {exc}") from exc
    if abandoned is not None and abandoned.is_set():
        output_path.unlink(missing_ok=True)
        raise ExportError("Attempt abandoned during export")
    return output_path


def resize_rgba(image: Image.Image, width: int, height: int) -> Image.Image:
    """Resize an image to exactly width x height (aspect ratio is not kept)."""
    array = np.asarray(image.convert("RGBA"))
    interpolation = cv2.INTER_AREA if width * height < image.width * image.height else cv2.INTER_LANCZOS4
    resized = cv2.resize(array, (width, height), interpolation=interpolation)
    return Image.fromarray(resized)


def letterbox_rgba(image: Image.Image, width: int, height: int) -> Image.Image:
    """
    Fit an image inside width x height without cropping.

    The image is scaled to fit, centered, and the remaining space is left
    fully transparent.
    """
    scale = min(width / image.width, height / image.height)
    new_w = max(1, int(image.width * scale))
    new_h = max(1, int(image.height * scale))
    resized = resize_rgba(image, new_w, new_h)

    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    offset_x = (width - new_w) // 2
    offset_y = (height - new_h) // 2
    canvas.paste(resized, (offset_x, offset_y))
    return canvas

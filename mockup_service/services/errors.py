"""
Error taxonomy for the mockup pipeline.

Only FetchError and EncodeDecodeError are fatal to a request. Everything else
is recoverable: the orchestrator records it against the current attempt and
moves on to the next layer-name candidate or strategy.
"""


class MockupError(RuntimeError):
    """Base class for all pipeline errors."""


class FetchError(MockupError):
    """Raised when the design image cannot be downloaded."""


class TemplateUnavailable(MockupError):
    """Raised when a template exists but cannot be read or parsed."""


class LayerNotFound(MockupError):
    """Raised when no layer matches the requested insertion-layer name."""

    def __init__(self, layer_name: str, available: list[str] | None = None) -> None:
        self.layer_name = layer_name
        self.available = available or []
        message = f'Design layer "{layer_name}" not found'
        if self.available:
            message += f" (layers: {', '.join(self.available)})"
        super().__init__(message)


class AutomationLaunchError(MockupError):
    """Raised when the browser automation session cannot be started."""


class AutomationTimeout(MockupError):
    """Raised when the remote editor does not become ready in time."""


class ExportError(MockupError):
    """Raised when a compositor cannot produce a readable raster."""


class EncodeDecodeError(MockupError):
    """Raised when the basic fallback cannot read or write an image."""

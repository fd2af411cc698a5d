from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from mockup_service.models.mockups import MockupMode


# Mode names used by older clients of the service.
LEGACY_MODES: Dict[str, MockupMode] = {
    "photopea": MockupMode.REMOTE_EDITOR,
    "psdjs": MockupMode.LOCAL_DOCUMENT,
}


class CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RenderMockupRequest(CamelModel):
    """Request body for rendering a single mockup."""

    design_id: str = Field(..., min_length=1, description="Identifier of the user's design.")
    sku: str = Field(..., min_length=1, description="Product identifier used to pick the template.")
    image_url: str = Field(..., min_length=1, description="URL of the design image.")
    mode: MockupMode = Field(
        default=MockupMode.AUTO,
        description="Compositing mode: auto, remoteEditor or localDocument.",
    )

    @field_validator("mode", mode="before")
    @classmethod
    def _map_legacy_mode(cls, value: Any) -> Any:
        if value is None or value == "":
            return MockupMode.AUTO
        if isinstance(value, str):
            return LEGACY_MODES.get(value.lower(), value)
        return value


class ProcessingDetails(CamelModel):
    """How the mockup was produced."""

    template_found: bool = Field(..., description="Whether any template was resolved for the SKU.")
    template_type: str | None = Field(default=None, description="Template file extension, e.g. 'psd'.")
    strategy_used: str = Field(..., description="Strategy that produced the output.")
    fallback_used: bool = Field(..., description="Whether the basic fallback mockup was used.")
    error_message: str | None = Field(default=None, description="Last attempt error when a fallback was used.")


class RenderMockupResponse(CamelModel):
    """
    Response for a render request.

    `mockup_url` is always set: on failure it carries the original design URL
    so that the caller still has an image to show.
    """

    success: bool
    mockup_url: str | None = None
    design_id: str | None = None
    sku: str | None = None
    processing_details: ProcessingDetails | None = None
    local_path: str | None = None
    error: str | None = None


class HealthResponse(CamelModel):
    status: str = "ok"
    service: str = "mockup-service"
    templates_dir: str
    templates_dir_exists: bool
    temp_dir_exists: bool
    browser_path: str | None = None

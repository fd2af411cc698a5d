import logging

from fastapi import APIRouter, Request

from mockup_service.api.v1.schemas import (
    HealthResponse,
    ProcessingDetails,
    RenderMockupRequest,
    RenderMockupResponse,
)
from mockup_service.config import Settings
from mockup_service.models.mockups import MockupResult
from mockup_service.services.errors import FetchError
from mockup_service.services.orchestrator import MockupOrchestrator


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")

# Un-versioned paths used by existing integrations.
root_router = APIRouter()


def get_orchestrator(request: Request) -> MockupOrchestrator:
    """Return the orchestrator the application was created with."""
    return request.app.state.orchestrator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def build_health(settings: Settings) -> HealthResponse:
    return HealthResponse(
        templates_dir=str(settings.templates_dir),
        templates_dir_exists=settings.templates_dir.is_dir(),
        temp_dir_exists=settings.temp_dir.is_dir(),
        browser_path=settings.chromium_path,
    )


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(request: Request) -> HealthResponse:
    """API v1 health check with a short diagnostic view of the service."""
    return build_health(get_settings(request))


@router.post(
    "/render-mockup",
    response_model=RenderMockupResponse,
    response_model_exclude_none=True,
    tags=["mockups"],
    summary="Render a product mockup for a design",
)
async def render_mockup(payload: RenderMockupRequest, request: Request) -> RenderMockupResponse:
    """
    Composite the design at `imageUrl` onto the template for `sku`.

    The response always carries a `mockupUrl`. When rendering fails the
    original design URL is returned so the client still has an image to show.
    """
    orchestrator = get_orchestrator(request)
    settings = get_settings(request)
    logger.info(
        "Render request: design=%s sku=%s mode=%s image=%s",
        payload.design_id, payload.sku, payload.mode.value, payload.image_url[:80],
    )

    try:
        result = await orchestrator.run(payload.design_id, payload.sku, payload.image_url, payload.mode)
    except FetchError as exc:
        logger.error("Design image unavailable for design=%s: %s", payload.design_id, exc)
        return _failure(payload, str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Mockup generation failed for design=%s sku=%s", payload.design_id, payload.sku)
        return _failure(payload, f"Mockup generation failed: {exc}")

    return RenderMockupResponse(
        success=True,
        mockup_url=public_url(settings, result),
        design_id=payload.design_id,
        sku=payload.sku,
        processing_details=ProcessingDetails(
            template_found=result.template.found,
            template_type=result.template.extension,
            strategy_used=result.strategy_used.value,
            fallback_used=result.fallback_used,
            error_message=result.error_message,
        ),
        local_path=str(result.output_image_path),
    )


root_router.add_api_route(
    "/render-mockup",
    render_mockup,
    methods=["POST"],
    response_model=RenderMockupResponse,
    response_model_exclude_none=True,
    tags=["mockups"],
    summary="Render a product mockup for a design (un-versioned path)",
)


def public_url(settings: Settings, result: MockupResult) -> str:
    base = settings.base_url.rstrip("/")
    path = "/" + settings.public_path.strip("/")
    return f"{base}{path}/{result.filename}"


def _failure(payload: RenderMockupRequest, error: str) -> RenderMockupResponse:
    return RenderMockupResponse(
        success=False,
        error=error,
        mockup_url=payload.image_url,
        design_id=payload.design_id,
        sku=payload.sku,
    )

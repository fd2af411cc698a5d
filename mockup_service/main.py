import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from mockup_service.api.v1.routes import build_health, root_router, router as api_v1_router
from mockup_service.api.v1.schemas import HealthResponse
from mockup_service.config import Settings
from mockup_service.services.orchestrator import MockupOrchestrator


logger = logging.getLogger(__name__)

# Load environment variables from .env before any settings are built.
env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(dotenv_path=env_path, override=False)
    logger.info("Loaded environment from %s", env_path)


def create_app(settings: Settings | None = None, orchestrator: MockupOrchestrator | None = None) -> FastAPI:
    """
    Application factory for the Mockup Service.

    Settings and the orchestrator can be injected, which is how the tests
    build isolated applications.
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
    settings.ensure_directories()

    app = FastAPI(
        title="Mockup Service",
        version="0.1.0",
        description="Composites design images onto product templates.",
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator or MockupOrchestrator(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # Infrastructure-level health check (non-versioned) primarily for ops.
    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def root_health_check() -> HealthResponse:
        """Simple root health check endpoint."""
        return build_health(settings)

    # Public, versioned API routes.
    app.include_router(api_v1_router)
    app.include_router(root_router)

    # Generated mockups are published straight from the output directory.
    public_path = "/" + settings.public_path.strip("/")
    app.mount(public_path, StaticFiles(directory=settings.resolved_output_dir), name="mockups")

    logger.info(
        "Mockup service configured: templates=%s temp=%s base_url=%s",
        settings.templates_dir, settings.temp_dir, settings.base_url,
    )
    return app


app = create_app()

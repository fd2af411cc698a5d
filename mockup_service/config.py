"""
Service configuration.

All paths, feature flags and timing constants live on a single immutable
Settings value that is handed to the orchestrator at construction time.
`Settings.from_env()` is the only place that reads the process environment.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

from mockup_service.models.mockups import Strategy


logger = logging.getLogger(__name__)

DEFAULT_LAYER_NAMES: Tuple[str, ...] = (
    "Design",
    "YOUR DESIGN",
    "YOUR DESIGN HERE",
    "DESIGN",
    "DESIGN HERE",
    "place-design",
    "design-placeholder",
)

DEFAULT_STRATEGY_ORDER: Tuple[Strategy, ...] = (Strategy.REMOTE_EDITOR, Strategy.LOCAL_DOCUMENT)

# Strategies that can insert a design into a layered document.
LAYERED_STRATEGIES = frozenset({Strategy.REMOTE_EDITOR, Strategy.LOCAL_DOCUMENT})


@dataclass(frozen=True, slots=True)
class Settings:
    templates_dir: Path = Path("assets/templates")
    temp_dir: Path = Path("temp")
    # Published directory; defaults to <temp_dir>/mockups.
    output_dir: Path | None = None
    remote_template_url: str | None = None

    layer_names: Tuple[str, ...] = DEFAULT_LAYER_NAMES
    auto_strategy_order: Tuple[Strategy, ...] = DEFAULT_STRATEGY_ORDER

    download_attempts: int = 3
    download_retry_delay: float = 1.0
    download_timeout: float = 15.0
    template_download_attempts: int = 2

    # Outer bound for a single composition attempt, in seconds.
    attempt_timeout: float = 180.0

    editor_url: str = "https://www.photopea.com"
    navigation_timeout: float = 60.0
    editor_poll_attempts: int = 20
    editor_poll_interval: float = 1.0
    document_poll_attempts: int = 20
    chromium_path: str | None = None
    browser_args: Tuple[str, ...] = (
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
    )

    flat_margin: int = 50

    port: int = 3000
    base_url: str = "http://localhost:3000"
    public_path: str = "/mockups"
    cors_origins: Tuple[str, ...] = ("*",)
    debug: bool = False

    @property
    def resolved_output_dir(self) -> Path:
        return self.output_dir if self.output_dir is not None else self.temp_dir / "mockups"

    @property
    def jobs_dir(self) -> Path:
        return self.temp_dir / "jobs"

    @property
    def template_cache_dir(self) -> Path:
        return self.temp_dir / "templates"

    @property
    def staging_dir(self) -> Path:
        """Unpublished directory that composition attempts write into."""
        return self.temp_dir / "staging"

    def with_overrides(self, **changes: Any) -> Settings:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def ensure_directories(self) -> None:
        for directory in (self.templates_dir, self.temp_dir, self.resolved_output_dir):
            if not directory.exists():
                directory.mkdir(parents=True, exist_ok=True)
                logger.info("Created directory: %s", directory)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        config_file: str | os.PathLike | None = None,
    ) -> Settings:
        """
        Build settings from environment variables and an optional config.json.

        Environment variables take precedence over values from the JSON file.
        """
        env = os.environ if environ is None else environ
        file_config = _load_config_file(config_file or env.get("MOCKUP_CONFIG_FILE", "config.json"))
        template_cfg = file_config.get("templateSettings", {}) or {}
        service_cfg = file_config.get("serviceSettings", {}) or {}

        port = int(env.get("PORT") or service_cfg.get("port") or 3000)
        temp_dir = Path(env.get("TEMP_DIR", "temp"))
        output_dir = env.get("OUTPUT_DIR")

        layer_names = _parse_list(env.get("DESIGN_LAYER_NAMES")) or tuple(
            file_config.get("layerNames") or DEFAULT_LAYER_NAMES
        )
        placeholder = env.get("DESIGN_PLACEHOLDER_NAME") or template_cfg.get("designPlaceholderName")
        if placeholder and placeholder not in layer_names:
            layer_names = (placeholder, *layer_names)

        cors_cfg = file_config.get("corsSettings", {}) or {}
        cors_origins = _parse_list(env.get("CORS_ORIGIN")) or _as_list(cors_cfg.get("allowedOrigins")) or ("*",)

        return cls(
            templates_dir=Path(env.get("TEMPLATES_DIR", "assets/templates")),
            temp_dir=temp_dir,
            output_dir=Path(output_dir) if output_dir else None,
            remote_template_url=env.get("PSD_TEMPLATE_URL") or template_cfg.get("psdTemplateUrl") or None,
            layer_names=tuple(layer_names),
            auto_strategy_order=_parse_strategy_order(env.get("AUTO_STRATEGY_ORDER")),
            download_attempts=int(env.get("DOWNLOAD_ATTEMPTS", 3)),
            download_retry_delay=float(env.get("DOWNLOAD_RETRY_DELAY", 1.0)),
            download_timeout=float(env.get("DOWNLOAD_TIMEOUT", 15.0)),
            attempt_timeout=float(env.get("ATTEMPT_TIMEOUT", 180.0)),
            editor_url=env.get("EDITOR_URL", "https://www.photopea.com"),
            navigation_timeout=float(env.get("NAVIGATION_TIMEOUT", 60.0)),
            editor_poll_attempts=int(env.get("EDITOR_POLL_ATTEMPTS", 20)),
            editor_poll_interval=float(env.get("EDITOR_POLL_INTERVAL", 1.0)),
            document_poll_attempts=int(env.get("DOCUMENT_POLL_ATTEMPTS", 20)),
            chromium_path=env.get("PUPPETEER_EXECUTABLE_PATH") or env.get("CHROMIUM_PATH") or None,
            flat_margin=int(env.get("FLAT_TEMPLATE_MARGIN", 50)),
            port=port,
            base_url=env.get("BASE_URL") or service_cfg.get("baseUrl") or f"http://localhost:{port}",
            public_path=env.get("PUBLIC_PATH", "/mockups"),
            cors_origins=cors_origins,
            debug=env.get("DEBUG", "").lower() == "true" or file_config.get("debug") is True,
        )


def _load_config_file(path: str | os.PathLike) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.is_file():
        return {}
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("Error loading %s: %s", config_path, exc)
        return {}
    logger.info("Loaded configuration from %s", config_path)
    return data if isinstance(data, dict) else {}


def _parse_list(raw: str | None) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _parse_strategy_order(raw: str | None) -> Tuple[Strategy, ...]:
    """Parse e.g. "localDocument,remoteEditor"; unknown names are rejected."""
    names = _parse_list(raw)
    if not names:
        return DEFAULT_STRATEGY_ORDER
    order = []
    for name in names:
        strategy = Strategy(name)
        if strategy not in LAYERED_STRATEGIES:
            raise ValueError(f"{name!r} cannot be used for layered templates")
        if strategy not in order:
            order.append(strategy)
    return tuple(order)


def _as_list(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return _parse_list(value)
    return tuple(str(item) for item in value)

"""FastAPI application entry point."""

import logging
import tomllib
from contextlib import asynccontextmanager
from importlib import metadata
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import chat, health, models, providers, system
from core.config import settings
from core.factory import close_providers, get_provider_registry

logger = logging.getLogger(__name__)


PACKAGE_NAME = "foundry-webui"


def _get_version() -> str:
    """Installed package version, else the one declared in pyproject.toml."""
    try:
        return f"v{metadata.version(PACKAGE_NAME)}"
    except metadata.PackageNotFoundError:
        pass

    pyproject = Path(__file__).resolve().parent.parent / "pyproject.toml"
    try:
        with pyproject.open("rb") as f:
            return f"v{tomllib.load(f)['project']['version']}"
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        return "dev"


APP_VERSION = _get_version()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    registry = get_provider_registry()
    logger.info("Foundry Web UI %s starting with providers: %s", APP_VERSION, ", ".join(registry.names))

    yield

    # Shutdown
    await close_providers()


app = FastAPI(
    title="Foundry Web UI API",
    description="Browser chat backend for Foundry Local",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS - wide open. This API binds to localhost and serves a local UI.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(health.router)
app.include_router(providers.router, prefix="/api")
app.include_router(models.router, prefix="/api")
app.include_router(chat.router, prefix="/api")
app.include_router(system.router, prefix="/api")


@app.get("/api/info")
async def api_info():
    """API info endpoint."""
    return {
        "name": "Foundry Web UI API",
        "version": APP_VERSION,
    }


# Serve the static UI when a frontend directory is configured.
# The SPA mount handles "/" so we skip the JSON root endpoint.
if settings.FRONTEND_DIR and settings.FRONTEND_DIR.is_dir():
    from starlette.staticfiles import StaticFiles
    app.mount("/", StaticFiles(directory=settings.FRONTEND_DIR, html=True), name="frontend")
else:
    @app.get("/")
    async def root():
        """Root endpoint (only when no frontend is being served)."""
        return {
            "name": "Foundry Web UI API",
            "version": APP_VERSION,
        }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT, log_level=settings.LOG_LEVEL.lower())

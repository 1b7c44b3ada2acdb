"""FastAPI application for the maestro orchestration control plane."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from maestro import __version__
from maestro.app.config import Settings
from maestro.app.routes import router
from maestro.app.services import Services, build_services
from maestro.storage import StoreError

settings = Settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(
    config: Optional[Settings] = None,
    services: Optional[Services] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings (default: module settings)
        services: Prebuilt services; built from config at startup if omitted
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown."""
        logger.info("Starting maestro API")
        app.state.services = services or build_services(config)

        if config.scheduler_enabled:
            app.state.services.scheduler.start()

        yield

        logger.info("Shutting down maestro API")
        await app.state.services.close()

    app = FastAPI(
        title="Maestro API",
        description="Orchestration control plane for task-executing agents",
        version=__version__,
        lifespan=lifespan,
        debug=config.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"State store unavailable for {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "State store unavailable"})

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Maestro API",
            "version": __version__,
            "status": "running"
        }

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

"""
backend/app/main.py

FastAPI Entrypoint.
Serves the photo-to-3D generation backend.

Responsibilities:
- Initialize FastAPI app and build shared clients at startup
- Register routers (generate, cleanup, status)
- Setup middleware (CORS) and error handlers
- Health check endpoints
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import Settings, settings as default_settings
from app.core.dependencies import build_services
from app.core.errors import AuthError, PipelineError
from app.core.logger import logger, setup_logger
from app.models.response_models import HealthResponse
from app.routes import cleanup, generate, status


def create_app(app_settings: Optional[Settings] = None, services=None) -> FastAPI:
    """
    Build the application.

    `services` may be passed pre-built (tests); otherwise they are wired from
    settings at startup.
    """
    app_settings = app_settings or default_settings
    setup_logger(app_settings.LOG_LEVEL, app_settings.LOG_FILE)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            try:
                app.state.services = build_services(app_settings)
            except AuthError as e:
                # Stay up so /health can report the misconfiguration
                logger.error(f"Startup configuration error: {e}")
                app.state.startup_error = e
        yield

    app = FastAPI(
        title="Photo3D Backend",
        description="API for photo-to-3D model generation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.services = services
    app.state.startup_error = None

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid request: {detail}"})

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"message": "Photo3D Backend is running"}

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        """Reports whether the record store and inference credentials are configured."""
        services = request.app.state.services
        details = {
            "supabase": services is not None,
            "replicate": services is not None and services.gateway.check_credentials(),
        }
        return HealthResponse(healthy=all(details.values()), details=details)

    app.include_router(generate.router, prefix=app_settings.API_V1_STR)
    app.include_router(cleanup.router, prefix=app_settings.API_V1_STR)
    app.include_router(status.router, prefix=app_settings.API_V1_STR)

    return app


app = create_app()

"""FastAPI application bootstrap and router wiring."""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from product_importer.api.routers import files, health, import_jobs, mapping_profiles
from product_importer.core.config import get_settings
from product_importer.core.errors import ImportServiceError
from product_importer.core.logging import configure_logging

logger = logging.getLogger(__name__)


async def import_service_error_handler(request: Request, exc: ImportServiceError) -> JSONResponse:
    """Render domain errors as ``{"detail": {code, message, details?}}``."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.to_api_error().to_dict()},
        headers=exc.headers(),
    )


def create_app() -> FastAPI:
    """Instantiate the FastAPI app and include top-level routers."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )
    app.add_exception_handler(ImportServiceError, import_service_error_handler)

    app.include_router(health.router)
    app.include_router(import_jobs.router, prefix="/api/imports/jobs", tags=["imports"])
    app.include_router(mapping_profiles.router, prefix="/api/mapping-profiles", tags=["mapping-profiles"])
    app.include_router(files.router, prefix="/api/files", tags=["files"])

    return app


app = create_app()

# backend/app/main.py
import logging
import traceback
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from backend.app.api.rate_limit import configure_rate_limiting
from backend.app.api.v1.router import api_router
from backend.app.core.cache import build_cache
from backend.app.core.config import Settings, get_settings
from backend.app.core.exceptions import AppError, NotFoundError
from backend.app.core.logging_config import configure_logging
from backend.app.db.session import Database, create_engine_from_settings
from backend.app.services import Services, build_services
from backend.app.storage.blob_store import LocalBlobStore

logger = logging.getLogger(__name__)


def _error_body(settings: Settings, body: dict, exc: Exception) -> dict:
    # Stack traces only when explicitly running in development
    if settings.is_development:
        body["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return body


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if isinstance(exc, NotFoundError) and exc.reason:
            logger.info(f"{request.method} {request.url.path}: not found ({exc.reason})")
        elif exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.kind}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=_error_body(settings, exc.to_dict(), exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        body = {
            "error": "Validation",
            "message": "Request validation failed",
            "details": {"errors": exc.errors()},
        }
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=jsonable_encoder(body))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        body = {"error": "InternalError", "message": "An unexpected error occurred"}
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            content=_error_body(settings, body, exc))


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Without `services` the lifespan owns every resource: it builds the
    engine, cache and blob store on startup and disposes them on shutdown.
    Passing a ready container (tests) skips that.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return

        database = Database(create_engine_from_settings(settings))
        cache = build_cache(settings)
        blobs = LocalBlobStore(settings.BLOB_STORAGE_ROOT)
        if settings.is_sqlite:
            # Local development: create tables on startup
            await database.create_all()
        app.state.services = build_services(settings, database, cache, blobs)
        logger.info(f"{settings.PROJECT_NAME} started ({settings.ENVIRONMENT})")
        try:
            yield
        finally:
            await cache.close()
            await database.dispose()
            logger.info(f"{settings.PROJECT_NAME} stopped")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.PROJECT_VERSION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Set up CORS
    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_exception_handlers(app, settings)
    configure_rate_limiting(app, settings)
    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/")
    def root():
        return {"message": f"Welcome to {settings.PROJECT_NAME} API"}

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


# uvicorn backend.app.main:app
app = create_app()

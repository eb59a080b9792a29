"""FastAPI application entry point."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from digestion.api.routers import digestion, health
from digestion.config import config
from digestion.db.redis import close_redis_pool
from digestion.errors import (
    BrokerUnreachableError,
    CaptureNotFoundError,
    DigestionError,
    InvalidCaptureStateError,
    JobCreationPausedError,
)
from digestion.utils.logger import setup_logging

logger = logging.getLogger(__name__)

# HTTP status for each domain error; anything else is a 500
ERROR_STATUS_CODES: dict[type[DigestionError], int] = {
    CaptureNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidCaptureStateError: status.HTTP_409_CONFLICT,
    JobCreationPausedError: status.HTTP_503_SERVICE_UNAVAILABLE,
    BrokerUnreachableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging requests and adding request IDs."""

    async def dispatch(self, request: Request, call_next):
        """Process the request and log details."""
        request_id = str(uuid4())
        request.state.request_id = request_id

        start_time = time.time()

        logger.info(
            f"Request {request_id}: {request.method} {request.url.path} "
            f"from {request.client.host if request.client else 'unknown'}"
        )

        try:
            response = await call_next(request)

            process_time = time.time() - start_time

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{process_time:.4f}"

            logger.info(
                f"Response {request_id}: {response.status_code} "
                f"in {process_time:.4f}s"
            )

            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"Error {request_id}: {str(e)} in {process_time:.4f}s"
            )
            raise


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan context manager."""
    setup_logging()
    logger.info(f"Starting {config.app_name} v{config.app_version}")
    logger.info(f"Environment: {config.environment}")

    yield

    logger.info("Shutting down application...")
    await close_redis_pool()
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Submit captures for AI digestion and inspect the digestion queue",
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
        openapi_url="/openapi.json" if config.is_development else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=config.cors_allow_credentials,
        allow_methods=config.cors_allow_methods,
        allow_headers=config.cors_allow_headers,
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Health"])
    app.include_router(digestion.router, prefix="/api/digestion", tags=["Digestion"])

    return app


def register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request validation errors."""
        errors = []
        for error in exc.errors():
            errors.append({
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            })

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": "Validation error",
                "errors": errors,
            },
        )

    @app.exception_handler(DigestionError)
    async def digestion_error_handler(request: Request, exc: DigestionError) -> JSONResponse:
        """Map domain errors to HTTP responses."""
        status_code = next(
            (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        if status_code >= 500:
            logger.error(f"{exc.code}: {exc.message}")

        headers = None
        if isinstance(exc, JobCreationPausedError):
            headers = {"Retry-After": str(int(exc.estimated_wait_seconds) or 60)}

        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "code": exc.code},
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle all other exceptions."""
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception(f"Unhandled exception in request {request_id}: {exc}")

        # Don't expose internal errors in production
        if config.is_production:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "detail": "An internal error occurred",
                    "request_id": request_id,
                },
            )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": str(exc),
                "type": type(exc).__name__,
                "request_id": request_id,
            },
        )


# Create the application instance
app = create_app()


@app.get("/", include_in_schema=False)
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": config.app_name,
        "version": config.app_version,
        "status": "operational",
        "docs": "/docs" if config.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "digestion.api.app:app",
        host=config.host,
        port=config.port,
        reload=config.is_development,
        workers=1 if config.is_development else config.workers,
        log_level=config.log_level.lower(),
    )

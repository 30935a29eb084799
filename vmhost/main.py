"""Main FastAPI application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vmhost import __version__
from vmhost.config import settings
from vmhost.core.exceptions import VMHostError
from vmhost.utils.logger import setup_logging, get_logger
from vmhost.utils.telemetry import setup_telemetry, instrument_app
from vmhost.middleware.logging import LoggingMiddleware
from vmhost.api.v1.router import api_router
from vmhost.dependencies import build_registry
from vmhost.services.registry import VMRegistry

# Setup logging and telemetry
setup_logging()
setup_telemetry()
logger = get_logger(__name__)


async def vmhost_error_handler(request: Request, exc: VMHostError) -> JSONResponse:
    """Map domain errors to their HTTP status with kind and category."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "VM operation rejected",
        extra={
            "path": request.url.path,
            "error": exc.detail,
            "error_type": exc.kind,
            "category": exc.category,
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(
    registry_factory: Optional[Callable[[], Awaitable[VMRegistry]]] = None,
) -> FastAPI:
    """Build the application; ``registry_factory`` replaces the configured registry."""
    factory = registry_factory or build_registry

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan events."""
        # Startup
        logger.info(
            f"Starting {settings.PROJECT_NAME}",
            extra={
                "version": __version__,
                "environment": settings.ENVIRONMENT,
                "debug": settings.DEBUG,
                "api_prefix": settings.API_V1_PREFIX,
            },
        )

        registry = await factory()
        await registry.open()
        app.state.registry = registry

        instrument_app(app)

        yield

        # Shutdown
        logger.info(f"Shutting down {settings.PROJECT_NAME}")
        await registry.close()
        await registry.store.engine.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=__version__,
        description="Lifecycle manager for QEMU virtual machines",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
        debug=settings.DEBUG,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.add_exception_handler(VMHostError, vmhost_error_handler)

    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API information."""
        return {
            "name": settings.PROJECT_NAME,
            "version": __version__,
            "environment": settings.ENVIRONMENT,
            "docs_url": "/docs",
            "health_check": f"{settings.API_V1_PREFIX}/health",
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "vmhost.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()

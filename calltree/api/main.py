"""
Call-tree analytics FastAPI service

Read-only REST surface over live metrics, alerts, recommendations and
stored trace reports.

Run:
    uvicorn calltree.api.main:app --port 8000
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from calltree import __version__
from calltree.analytics.exceptions import BackendUnavailableError
from calltree.analytics.integration import AnalyticsIntegration
from calltree.api.errors import (
    APIException,
    LoggingMiddleware,
    api_exception_handler,
    backend_unavailable_handler,
    global_exception_handler,
    http_exception_handler,
)
from calltree.api.logging_config import setup_logging
from calltree.api.routes import analytics, health
from calltree.api.state import clear_app_state, get_app_state, set_app_state
from config import get_config

# Load .env
load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Set up logging from LOG_LEVEL / LOG_FILE, falling back to the config file"""
    logging_config = get_config().logging
    setup_logging(
        log_level=os.getenv("LOG_LEVEL", logging_config.level),
        log_file=os.getenv("LOG_FILE", logging_config.file),
        max_bytes=logging_config.max_bytes,
        backup_count=logging_config.backup_count,
        log_format=logging_config.format,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle"""
    logger.info("Call-tree analytics API starting...")

    # A pre-set integration (tests, embedding hosts) is used as is
    integration = get_app_state().get("analytics")
    owned = integration is None
    if owned:
        integration = AnalyticsIntegration(get_config().analytics)
        set_app_state("analytics", integration)

    try:
        integration.initialize()
        logger.info("Call-tree analytics API started")

        yield

    finally:
        logger.info("Call-tree analytics API shutting down...")
        if owned:
            integration.stop()
            clear_app_state("analytics")
        logger.info("Call-tree analytics API stopped")


def create_app() -> FastAPI:
    """Build the FastAPI application"""
    app = FastAPI(
        title="Call-tree Analytics API",
        description="Execution analytics for tool-calling agents",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_config().api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware, log_level="INFO")

    # ===== Exception handling =====

    @app.exception_handler(APIException)
    async def api_exception_handler_wrapper(request: Request, exc: APIException):
        return await api_exception_handler(request, exc)

    @app.exception_handler(BackendUnavailableError)
    async def backend_unavailable_handler_wrapper(request: Request, exc: BackendUnavailableError):
        return await backend_unavailable_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler_wrapper(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def global_exception_handler_wrapper(request: Request, exc: Exception):
        return await global_exception_handler(request, exc)

    # ===== Routes =====

    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(analytics.router, prefix="/api/v1")

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    api_config = get_config().api
    uvicorn.run(
        "calltree.api.main:app",
        host=api_config.host,
        port=api_config.port,
        reload=api_config.reload,
        workers=api_config.workers,
    )

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from repartilo import __version__
from repartilo.config import settings
from repartilo.core.database import close_db, init_db
from repartilo.core.errors import RepartiloError
from repartilo.core.errors.middleware import repartilo_error_handler
from repartilo.core.errors.registry import error_registry
from repartilo.core.log_middleware import RequestIdMiddleware
from repartilo.core.structured_logging import setup_logging
from repartilo.routers import ledger

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

logger = logging.getLogger(__name__)

API_TITLE = "Repartilo Ledger API"

TAGS_METADATA = [
    {"name": "ledger", "description": "Subscription snapshot, usage counting and saved optimizations"},
    {"name": "health", "description": "Service status"},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting %s v%s...", API_TITLE, __version__)

    error_registry.load()
    init_db()
    logger.info("Database initialized")

    yield

    logger.info("Shutting down %s...", API_TITLE)
    close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=API_TITLE,
        version=__version__,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(RepartiloError, repartilo_error_handler)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(ledger.router, tags=["ledger"])

    @app.get("/", tags=["health"], summary="API Root")
    async def root():
        return {
            "name": API_TITLE,
            "version": __version__,
            "status": "running",
        }

    return app


app = create_app()

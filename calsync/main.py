"""calsync web application: provider integrations over HTTP."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from calsync.core.config import settings
from calsync.core.database import create_db_and_tables
from calsync.core.logging_setup import configure_logging
from calsync.core.scheduler import shutdown_scheduler, start_scheduler
from calsync.errors import (
    AuthError,
    IntegrationError,
    ProviderRejectedError,
    ProviderUnavailableError,
    RateLimitError,
    SyncInProgressError,
    ValidationError,
)
from calsync.routes import events, integrations, messages

configure_logging()
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    AuthError: 401,
    RateLimitError: 429,
    ProviderUnavailableError: 503,
    ProviderRejectedError: 502,
    ValidationError: 422,
    SyncInProgressError: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""
    logger.info("Starting calsync application")
    create_db_and_tables()
    start_scheduler()
    yield
    shutdown_scheduler()
    logger.info("calsync application shut down")


app = FastAPI(
    title=settings.app_name,
    description="Calendar provider integrations: OAuth, sync, availability and Meet links",
    version="0.1.0",
    lifespan=lifespan,
)

origins = (
    ["*"]
    if settings.allowed_origins == "*"
    else [o.strip() for o in settings.allowed_origins.split(",")]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(integrations.router)
app.include_router(events.router)
app.include_router(messages.router)


@app.exception_handler(IntegrationError)
async def integration_error_handler(request: Request, exc: IntegrationError):
    """Render runtime errors as JSON with a status matching their type."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        502,
    )
    logger.warning(f"{request.method} {request.url.path} failed ({exc.reason}): {exc}")

    headers = {}
    if isinstance(exc, RateLimitError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}

"""Renobid Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from renobid.errors import RenobidError
from renobid.logging_config import setup_renobid_logging

from .config import get_settings
from .database import create_store
from .logging_config import configure_logging, get_logger, log_request_error
from .rate_limit import limiter
from .routes import admin_payments_router, admin_router, contractor_router, homeowner_router
from .services import build_services

API_PREFIX = "/api/v1"

logger = get_logger("renobid.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    configure_logging(settings.log_level)
    setup_renobid_logging(settings.log_level)
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(
            create_store(settings), policy_cache_seconds=settings.policy_cache_seconds
        )
    logger.info(
        f"Starting Renobid Backend API (debug={settings.debug}, store={settings.document_store})"
    )
    yield
    logger.info("Shutting down Renobid Backend API")


app = FastAPI(
    title="Renobid Backend API",
    description="Bidding, escrow and fee workflows for home renovation projects",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RenobidError)
async def renobid_error_handler(request: Request, exc: RenobidError):
    """Answer domain errors with their code table status."""
    log_request_error(logger, request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
    )


# Include routers
app.include_router(homeowner_router, prefix=API_PREFIX)
app.include_router(contractor_router, prefix=API_PREFIX)
app.include_router(admin_router, prefix=API_PREFIX)
app.include_router(admin_payments_router, prefix=API_PREFIX)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "renobid-backend",
        "version": "0.1.0",
        "status": "ok",
    }


@app.get("/health")
async def health(request: Request):
    """Detailed health check that round-trips the document store."""
    store_status = "disconnected"
    try:
        await request.app.state.services.store.get("settings", "bidding")
        store_status = "connected"
    except Exception as e:
        logger.warning(f"Health check store read failed: {e}")
        store_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if store_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "store": store_status,
    }

"""
PrintRun API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from core.errors import (
    AuditPublishError,
    InvalidTransition,
    NotFound,
    PrintRunError,
    StoreFailure,
    ValidationError,
)

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("PrintRun API starting up", version=settings.app_version)
    yield
    logger.info("PrintRun API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="School uniform print-order workflow, scheduling and garment audits",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Error mapping ──────────────────────────────────────────────────────────


def _error_response(status_code: int, exc: PrintRunError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__, **exc.details},
    )


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    logger.info("api.invalid_transition", path=request.url.path, **exc.details)
    return _error_response(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _error_response(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, exc)


@app.exception_handler(AuditPublishError)
async def audit_publish_error_handler(request: Request, exc: AuditPublishError):
    logger.error("api.audit_publish_failed", path=request.url.path, **exc.details)
    return _error_response(status.HTTP_502_BAD_GATEWAY, exc)


@app.exception_handler(StoreFailure)
async def store_failure_handler(request: Request, exc: StoreFailure):
    logger.error("api.store_failure", path=request.url.path, error=exc.message)
    return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


# Import and register routers
from api.v1.routers import audits, machines, orders, production, sweeps

app.include_router(orders.router)
app.include_router(audits.router)
app.include_router(machines.router)
app.include_router(production.router)
app.include_router(sweeps.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}

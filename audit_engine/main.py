"""
Main FastAPI application entry point.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from audit_engine.core.config import settings
from audit_engine.core.database import SessionLocal, init_db
from audit_engine.core.errors import AuditEngineError, ConfigurationError, RecordTamperError, TransientIOError
from audit_engine.core.logging_config import setup_logging
from audit_engine.api.v1.router import api_router
from audit_engine.middleware.request_logging import RequestLoggingMiddleware

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger.info(f"Starting up {settings.APP_NAME} ({settings.APP_ENV})...")

    try:
        init_db()
        logger.info("Database tables created/verified successfully")
    except SQLAlchemyError as e:
        # Don't fail startup - let the health endpoint report the issue
        logger.error(f"Failed to create database tables: {e}", exc_info=True)

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            db.commit()
            logger.info("Database connectivity verified")
        finally:
            db.close()
    except SQLAlchemyError as e:
        trace_id = str(uuid.uuid4())
        logger.error(f"[{trace_id}] Database connectivity test failed: {e}", exc_info=True)

    if not settings.is_signing_key_configured():
        logger.warning(
            "AUDIT_SIGNING_KEY is not set: activity writes and integrity sweeps will be refused"
        )

    yield
    logger.info(f"Shutting down {settings.APP_NAME}...")


app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description="Tamper-evident activity log with retention sweeps and security alerting",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    redirect_slashes=False,
)

# Request logging middleware (must be added before other middleware)
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


def _error_body(request: Request, exc: Exception, detail: str) -> dict:
    return {
        "detail": detail,
        "trace_id": getattr(request.state, "trace_id", str(uuid.uuid4())),
        "error": type(exc).__name__,
    }


@app.exception_handler(AuditEngineError)
async def engine_exception_handler(request: Request, exc: AuditEngineError):
    """Map engine errors that escaped an endpoint to HTTP statuses."""
    if isinstance(exc, ConfigurationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, RecordTamperError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, TransientIOError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    body = _error_body(request, exc, str(exc))
    logger.warning(f"[{body['trace_id']}] {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors with trace_id."""
    if isinstance(exc, HTTPException):
        raise exc
    if isinstance(exc, SQLAlchemyError):
        detail = "Database error: check DATABASE_URL"
    else:
        detail = str(exc) if settings.DEBUG else "Internal Server Error"
    body = _error_body(request, exc, detail)
    logger.error(f"[{body['trace_id']}] Unhandled exception: {type(exc).__name__}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content=body)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": f"{settings.APP_NAME} API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """
    Liveness probe. Returns 200 without touching the database;
    /api/v1/health checks the database.
    """
    return {"status": "ok"}

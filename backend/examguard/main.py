from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
import logging
import re

from .core.config import settings
from .core.database import AsyncSessionLocal, create_db_and_tables
from .core.cache import cache
from .core.exceptions import ProctoringError
from .api.v1.api import api_router
from .middleware.performance import PerformanceMiddleware
from .middleware.timezone import TimezoneMiddleware
from .monitoring.monitor import ProctoringMonitor
from .services.session_store import SessionStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Detector-facing routes answer malformed payloads with 400 instead of 422
INGEST_PATH = re.compile(r"^/api/v1/sessions/[^/]+/(events|observations)$")

app = FastAPI(
    title="ExamGuard API",
    description="Exam session integrity monitoring: violation ingestion, suspicion scoring and review",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None
)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(TimezoneMiddleware)
app.add_middleware(
    PerformanceMiddleware,
    slow_request_threshold=settings.slow_request_threshold,
    ingest_slow_request_threshold=settings.ingest_slow_request_threshold,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ProctoringError)
async def proctoring_exception_handler(request: Request, exc: ProctoringError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    status_code = 400 if request.method == "POST" and INGEST_PATH.match(request.url.path) else 422
    return JSONResponse(
        status_code=status_code,
        content={
            "error": "malformed_event" if status_code == 400 else "validation_error",
            "message": "Request validation failed",
            "detail": jsonable_encoder(exc.errors()),
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
            "request_id": getattr(request.state, 'request_id', 'unknown')
        }
    )


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info("Starting ExamGuard API...")

    await create_db_and_tables()
    logger.info("Database initialized")

    if cache.enabled:
        if await cache.ahealth_check():
            logger.info("Cache connection established")
        else:
            logger.warning("Cache connection failed - running without cache")

    monitor = ProctoringMonitor.from_settings(SessionStore(AsyncSessionLocal), settings)
    await monitor.start()
    app.state.monitor = monitor
    logger.info("ExamGuard API startup completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info("Shutting down ExamGuard API...")

    monitor = getattr(app.state, "monitor", None)
    if monitor is not None:
        await monitor.stop()

    try:
        await cache.close()
        logger.info("Cache connections closed")
    except Exception as e:
        logger.error(f"Error closing cache connections: {e}")

    logger.info("ExamGuard API shutdown completed")


app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def read_root():
    return {
        "message": "ExamGuard exam integrity monitoring API",
        "version": "1.0.0",
    }

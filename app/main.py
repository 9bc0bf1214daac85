"""
FastAPI application main module.

Startup creates the tables, the SMTP notifier and the job runtime (ingest and
send lanes) and releases distribution claims orphaned by a previous process;
shutdown stops intake and lets queued jobs drain. Pipeline
errors raised by the service layer are turned into JSON responses here.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
import time
import uuid
from contextlib import asynccontextmanager
from app.api.v1 import api_router
from app.utils import setup_logging, get_logger
from app.jobs.handlers import register_payslip_jobs
from app.jobs.runtime import JobRuntime
from app.jobs.worker import create_queue
from app.database import engine, Base, SessionLocal
from app.config import APP_SETTINGS, QUEUE_SETTINGS
from app.models import db as _models  # noqa: F401  (register tables on Base.metadata)
from app.services.errors import (
    BatchConflictError,
    BatchNotFoundError,
    BatchNotReadyError,
    JobNotFoundError,
    PayslipAlreadySentError,
    PayslipNotFoundError,
    PipelineError,
    QueueUnavailableError,
    UploadValidationError,
)
from app.services.identifier import PdfIdentifierExtractor
from app.services.notifier import SmtpNotifier
from app.services.payslip_service import PayslipService
from app.services.storage import LocalDocumentStorage

setup_logging(
    log_level=str(APP_SETTINGS["log_level"]),
    log_file=str(APP_SETTINGS["log_file"]) or None,
    enable_console=True
)

logger = get_logger(__name__)

VERSION = "1.0.0"
SERVICE_NAME = "payslip-distribution-service"

# First match wins; anything else is a 500
ERROR_STATUS_CODES = (
    (UploadValidationError, 400),
    ((BatchNotFoundError, PayslipNotFoundError, JobNotFoundError), 404),
    ((BatchNotReadyError, BatchConflictError, PayslipAlreadySentError), 409),
    (QueueUnavailableError, 503),
)


def status_code_for(exc: PipelineError) -> int:
    for error_types, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_types):
            return status_code
    return 500


def check_redis_health() -> bool:
    """Ping the Redis server backing the job lanes."""
    try:
        import redis
        redis_url = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))
        redis.from_url(redis_url, socket_connect_timeout=timeout).ping()
        return True
    except Exception as e:
        logger.warning("Redis health check failed", error=str(e))
        return False


def build_runtime(notifier, *, queue_factory=create_queue) -> JobRuntime:
    """Job runtime with the ingest and send lanes registered (not started)."""
    runtime = JobRuntime(queue_factory=queue_factory)
    register_payslip_jobs(
        runtime,
        session_factory=SessionLocal,
        notifier=notifier,
        storage=LocalDocumentStorage(),
        extractor=PdfIdentifierExtractor(),
    )
    return runtime


def recover_interrupted_work(runtime: JobRuntime, session_factory=SessionLocal) -> list[str]:
    """Release distribution claims left behind by a previous process (call before ``runtime.start()``)."""
    db = session_factory()
    try:
        return PayslipService(db, runtime).recover_interrupted_distributions()
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup initiated")
    runtime: JobRuntime | None = None
    try:
        Base.metadata.create_all(bind=engine)
        if QUEUE_SETTINGS.get("use_redis", False) and not check_redis_health():
            logger.warning("Redis queue is enabled but unavailable, job lanes fall back to memory")

        notifier = SmtpNotifier()
        runtime = build_runtime(notifier)
        recover_interrupted_work(runtime)
        app.state.job_runtime = runtime
        app.state.notifier = notifier
        runtime.start()
        logger.info("Application startup completed", queue_backend="redis" if QUEUE_SETTINGS.get("use_redis") else "memory")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        if runtime is not None:
            timeout = float(APP_SETTINGS["job_shutdown_timeout"])
            logger.info("Draining job runtime", timeout=timeout)
            if not runtime.shutdown(drain=True, timeout=timeout):
                logger.warning("Job runtime did not drain before timeout", timeout=timeout)
        logger.info("Application shutdown completed")


app = FastAPI(
    title="Payslip Distribution Service",
    description="""
    Bulk payslip ingestion and e-mail distribution.

    * **Upload** a PDF or a ZIP (nested ZIPs allowed) of payslips for a pay month
    * Each payslip is matched to an employee by the IPPIS number printed on it
    * **Send** a processed batch; re-sending only retries payslips not yet delivered
    * Follow ingest and send jobs through their job id
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(APP_SETTINGS["cors_origins"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    process_ms = round((time.perf_counter() - started) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(process_ms)
    response.headers["X-Content-Type-Options"] = "nosniff"
    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time_ms=process_ms,
        user_id=request.headers.get("X-User-ID"),
        request_id=request_id
    )
    return response


def _error_response(request: Request, status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": message,
            **extra,
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError):
    status_code = status_code_for(exc)
    logger.warning(
        "Pipeline request rejected",
        error_type=type(exc).__name__,
        error=str(exc),
        batch_id=exc.batch_id,
        status_code=status_code,
        path=request.url.path
    )
    return _error_response(request, status_code, str(exc), error_type=type(exc).__name__)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation failed", errors=exc.errors(), path=request.url.path)
    details = [{"loc": list(err.get("loc", [])), "msg": err.get("msg")} for err in exc.errors()]
    return _error_response(request, 422, "Request validation failed", details=details)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        method=request.method,
        path=request.url.path,
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error")


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    runtime = getattr(app.state, "job_runtime", None)
    return {
        "status": "healthy" if runtime is not None and runtime.accepting else "degraded",
        "service": SERVICE_NAME,
        "version": VERSION,
        "timestamp": time.time(),
        "queue_backend": "redis" if QUEUE_SETTINGS.get("use_redis") else "memory",
    }


@app.get("/health/detailed", tags=["health"], summary="Database, queue and job lane status")
async def detailed_health_check():
    checks: dict = {}
    status = "healthy"

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {e}"
        status = "degraded"

    if QUEUE_SETTINGS.get("use_redis"):
        checks["redis"] = "healthy" if check_redis_health() else "unavailable"

    runtime = getattr(app.state, "job_runtime", None)
    if runtime is None:
        checks["jobs"] = "not started"
        status = "degraded"
    else:
        checks["jobs"] = runtime.snapshot()

    return {"status": status, "service": SERVICE_NAME, "version": VERSION, "timestamp": time.time(), "checks": checks}


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "Payslip Distribution Service API",
        "version": VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["app"],
        log_level="info",
        access_log=True
    )

"""
Dependencies for database sessions, the job runtime and the payslip service.
"""
from typing import Generator, Optional
from fastapi import Depends, HTTPException, Header, Request
from sqlalchemy.orm import Session
from app.database import SessionLocal
from app.jobs.runtime import JobRuntime
from app.services.notifier import Notifier
from app.services.payslip_service import PayslipService
from app.utils import get_logger

logger = get_logger(__name__)

def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()

def get_runtime(request: Request) -> JobRuntime:
    """Job runtime created in the application lifespan."""
    runtime: Optional[JobRuntime] = getattr(request.app.state, "job_runtime", None)
    if runtime is None or not runtime.accepting:
        raise HTTPException(status_code=503, detail="Job runtime not available")
    return runtime

def get_notifier(request: Request) -> Optional[Notifier]:
    return getattr(request.app.state, "notifier", None)

def get_current_user_id(x_user_id: Optional[int] = Header(None, alias="X-User-ID")) -> Optional[int]:
    """Acting user forwarded by the gateway; authentication happens upstream."""
    return x_user_id

def get_payslip_service(
    request: Request,
    db: Session = Depends(get_db),
) -> PayslipService:
    runtime: Optional[JobRuntime] = getattr(request.app.state, "job_runtime", None)
    return PayslipService(db, runtime, get_notifier(request))

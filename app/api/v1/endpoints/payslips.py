"""
Payslip batch endpoints: upload, send, status and reporting.
"""
from typing import Optional
from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
import time
from app.api.deps import get_current_user_id, get_payslip_service, get_runtime
from app.jobs.runtime import JobRuntime
from app.models.db.enums import DistributionStatus, IngestStatus
from app.models.schemas.base import ResponseBase
from app.models.schemas.payslips import (
    BatchDetail,
    BatchPage,
    BatchRead,
    JobStatusRead,
    PayslipPage,
    PayslipRecordRead,
    PayslipSummary,
    SendAccepted,
    UploadAccepted,
)
from app.services.payslip_service import PayslipService
from app.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "/upload",
    response_model=ResponseBase,
    status_code=202,
    summary="Upload a PDF or ZIP of payslips for background processing"
)
async def upload_payslips(
    request: Request,
    file: UploadFile = File(...),
    pay_month: str = Form(..., description="Pay period, YYYY-MM"),
    user_id: Optional[int] = Depends(get_current_user_id),
    service: PayslipService = Depends(get_payslip_service),
    _runtime: JobRuntime = Depends(get_runtime),
) -> ResponseBase:
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    content = await file.read()
    filename = file.filename or ""

    logger.info(
        "Payslip upload received",
        file_name=filename,
        size_bytes=len(content),
        pay_month=pay_month,
        request_id=request_id
    )
    accepted = service.enqueue_upload(content, filename, pay_month, user_id=user_id)

    log_performance(
        operation="upload_payslips",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"size_bytes": len(content)}
    )
    return ResponseBase(
        success=True,
        message="Payslip upload queued for processing",
        data=UploadAccepted(**accepted).model_dump(mode="json"),
    )


@router.get(
    "/upload/jobs/{job_id}",
    response_model=ResponseBase,
    summary="Background job status"
)
async def get_job_status(
    job_id: str,
    service: PayslipService = Depends(get_payslip_service),
) -> ResponseBase:
    status = service.get_job_status(job_id)
    return ResponseBase(data=JobStatusRead(**status).model_dump(mode="json"))


@router.post(
    "/batches/{batch_ref}/send",
    response_model=ResponseBase,
    status_code=202,
    summary="Queue e-mail distribution for a processed batch"
)
async def send_batch(
    batch_ref: str,
    request: Request,
    user_id: Optional[int] = Depends(get_current_user_id),
    service: PayslipService = Depends(get_payslip_service),
    _runtime: JobRuntime = Depends(get_runtime),
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    accepted = service.enqueue_send(batch_ref, user_id=user_id)
    logger.info("Batch send queued", batch_id=accepted["batch_id"], job_id=accepted["job_id"], request_id=request_id)
    return ResponseBase(
        message=f"Sending {accepted['total_payslips']} payslip(s) in the background",
        data=SendAccepted(**accepted).model_dump(mode="json"),
    )


@router.get(
    "/batches",
    response_model=ResponseBase,
    summary="List upload batches"
)
async def list_batches(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    pay_month: Optional[str] = Query(None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$"),
    status: Optional[IngestStatus] = Query(None),
    email_status: Optional[DistributionStatus] = Query(None),
    service: PayslipService = Depends(get_payslip_service),
) -> ResponseBase:
    result = service.list_batches(page=page, limit=limit, pay_month=pay_month, status=status, email_status=email_status)
    return ResponseBase(data=BatchPage(**result).model_dump(mode="json"))


@router.get(
    "/batches/pending",
    response_model=ResponseBase,
    summary="Processed batches that have not been sent yet"
)
async def list_pending_batches(
    service: PayslipService = Depends(get_payslip_service),
) -> ResponseBase:
    batches = [BatchRead(**b).model_dump(mode="json") for b in service.list_pending_batches()]
    return ResponseBase(data={"items": batches, "total": len(batches)})


@router.get(
    "/batches/{batch_ref}",
    response_model=ResponseBase,
    summary="Batch details by id or uuid"
)
async def get_batch(
    batch_ref: str,
    include_records: bool = Query(False, description="Include per-payslip delivery state"),
    service: PayslipService = Depends(get_payslip_service),
) -> ResponseBase:
    batch = service.get_batch(batch_ref, include_records=include_records)
    return ResponseBase(data=BatchDetail(**batch).model_dump(mode="json"))


@router.get(
    "/employee/{employee_id}",
    response_model=ResponseBase,
    summary="Payslips of one employee, newest first"
)
async def list_employee_payslips(
    employee_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: PayslipService = Depends(get_payslip_service),
) -> ResponseBase:
    result = service.list_employee_payslips(employee_id, page=page, limit=limit)
    return ResponseBase(data=PayslipPage(**result).model_dump(mode="json"))


@router.get(
    "/unsent",
    response_model=ResponseBase,
    summary="Payslips not yet delivered (never sent or failed)"
)
async def list_unsent_payslips(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: PayslipService = Depends(get_payslip_service),
) -> ResponseBase:
    result = service.list_unsent_payslips(page=page, limit=limit)
    return ResponseBase(data=PayslipPage(**result).model_dump(mode="json"))


@router.get(
    "/summary",
    response_model=ResponseBase,
    summary="Payslip delivery totals"
)
async def get_summary(
    service: PayslipService = Depends(get_payslip_service),
) -> ResponseBase:
    return ResponseBase(data=PayslipSummary(**service.get_summary()).model_dump(mode="json"))


@router.post(
    "/resend/{payslip_id}",
    response_model=ResponseBase,
    summary="Resend a single payslip that has not been delivered"
)
async def resend_payslip(
    payslip_id: int,
    user_id: Optional[int] = Depends(get_current_user_id),
    service: PayslipService = Depends(get_payslip_service),
) -> ResponseBase:
    record = service.resend_payslip(payslip_id, user_id=user_id)
    delivered = record["email_status"] == "sent"
    return ResponseBase(
        success=delivered,
        message="Payslip resent" if delivered else "Payslip could not be sent",
        data=PayslipRecordRead(**record).model_dump(mode="json"),
    )

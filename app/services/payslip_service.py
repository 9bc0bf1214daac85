"""Payslip submission and status facade.

Thin layer between the HTTP endpoints and the job runtime / batch store:
validates uploads, creates batches, takes the distribution claim before a
send job is queued, and projects batches and job records into plain dicts.
"""
from __future__ import annotations

import math
import re
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Query, Session, defer, joinedload

from app.config import PAY_MONTH_PATTERN
from app.jobs.distribution_job import deliver_payslip
from app.jobs.payloads import DistributionJobPayload, IngestJobPayload
from app.jobs.runtime import JobRuntime
from app.models.db.enums import DeliveryStatus, DistributionStatus, IngestStatus
from app.models.db.payslip_uploads import PayslipUpload
from app.models.db.payslips import Payslip
from app.services.errors import (
    BatchConflictError,
    BatchNotReadyError,
    JobNotFoundError,
    PayslipAlreadySentError,
    PayslipNotFoundError,
    QueueUnavailableError,
    UploadValidationError,
)
from app.services.extraction import is_container, is_document
from app.services.notifier import Notifier
from app.services.record_store import INTERRUPTED_NOTE, BatchRecordStore
from app.utils import get_logger, log_business_event

logger = get_logger(__name__)

_PAY_MONTH_RE = re.compile(PAY_MONTH_PATTERN)
_SUBMIT_ERRORS = (ValueError, RuntimeError, OverflowError)


def validate_upload(content: bytes, filename: str, pay_month: str) -> None:
    if not filename or not (is_document(filename) or is_container(filename)):
        raise UploadValidationError("Only PDF or ZIP files are allowed", details={"file_name": filename})
    if not content:
        raise UploadValidationError("Uploaded file is empty", details={"file_name": filename})
    if not pay_month or not _PAY_MONTH_RE.match(pay_month):
        raise UploadValidationError("pay_month must be in YYYY-MM format", details={"pay_month": pay_month})


def batch_projection(batch: PayslipUpload, *, payslip_count: int | None = None) -> Dict[str, Any]:
    return {
        "id": batch.id,
        "uuid": batch.uuid,
        "pay_month": batch.pay_month,
        "file_name": batch.file_name,
        "status": batch.status.value,
        "email_status": batch.email_status.value,
        "total_files": batch.total_files,
        "processed_files": batch.processed_files,
        "failed_files": batch.failed_files,
        "success_count": batch.success_count,
        "failure_count": batch.failure_count,
        "skipped_count": batch.skipped_count,
        "row_errors": list(batch.row_errors or []),
        "distribution_note": batch.distribution_note,
        "ingest_job_id": batch.ingest_job_id,
        "distribution_job_id": batch.distribution_job_id,
        "payslip_count": payslip_count,
        "created_by": batch.created_by,
        "created_at": batch.created_at,
        "sent_at": batch.sent_at,
        "completed_at": batch.completed_at,
    }


def paginate(
    query: Query,
    page: int,
    limit: int,
    projection: Callable[[Any], Dict[str, Any]],
    *,
    options: tuple = (),
) -> Dict[str, Any]:
    """One page of ``query`` (1-based ``page``, ``limit`` capped at 100) with totals.

    ``options`` are loader options for the page rows only, not the count.
    """
    page = max(1, page)
    limit = max(1, min(limit, 100))
    total = query.order_by(None).count()
    rows = query.options(*options).offset((page - 1) * limit).limit(limit).all()
    return {
        "items": [projection(row) for row in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


def payslip_projection(payslip: Payslip) -> Dict[str, Any]:
    employee = payslip.employee
    return {
        "id": payslip.id,
        "upload_id": payslip.upload_id,
        "pay_month": payslip.pay_month,
        "ippis_number": payslip.ippis_number,
        "employee": {
            "id": employee.id,
            "name": employee.full_name,
            "email": employee.email,
        } if employee else None,
        "file_name": payslip.file_name,
        "origin": payslip.origin,
        "email_status": payslip.email_status.value,
        "email_error": payslip.email_error,
        "email_sent_at": payslip.email_sent_at,
    }


class PayslipService:
    def __init__(self, session: Session, runtime: Optional[JobRuntime], notifier: Optional[Notifier] = None) -> None:
        self.session = session
        self.runtime = runtime
        self.notifier = notifier
        self.store = BatchRecordStore(session)

    def _require_runtime(self) -> JobRuntime:
        if self.runtime is None or not self.runtime.accepting:
            raise QueueUnavailableError("Job runtime is not available")
        return self.runtime

    # ------------------------------ submission ------------------------------ #
    def enqueue_upload(self, content: bytes, filename: str, pay_month: str, user_id: int | None = None) -> Dict[str, Any]:
        validate_upload(content, filename, pay_month)
        runtime = self._require_runtime()

        batch = self.store.create_batch(file_name=filename, pay_month=pay_month, user_id=user_id)
        job_id = runtime.new_job_id()
        batch.ingest_job_id = job_id
        self.session.commit()
        payload = IngestJobPayload(
            upload_id=batch.id, content=content, file_name=filename, pay_month=pay_month, user_id=user_id
        )
        try:
            runtime.submit(payload, job_id=job_id)
        except _SUBMIT_ERRORS as e:
            logger.error("Could not queue upload", batch_id=batch.uuid, error=str(e))
            self.store.fail_ingest(batch.id)
            raise QueueUnavailableError(f"Could not queue upload: {e}", batch_id=batch.uuid) from e

        self.session.refresh(batch)
        log_business_event(
            "PAYSLIP_BATCH_UPLOAD_QUEUED",
            {"upload_id": batch.id, "batch_id": batch.uuid, "file_name": filename, "pay_month": pay_month, "size_bytes": len(content)},
            user_id=user_id,
            job_id=job_id,
        )
        return {"upload_id": batch.id, "batch_id": batch.uuid, "job_id": job_id, "pay_month": pay_month}

    def enqueue_send(self, batch_ref: int | str, user_id: int | None = None) -> Dict[str, Any]:
        runtime = self._require_runtime()
        batch = self.store.get_batch(batch_ref)
        if batch.status != IngestStatus.PROCESSED:
            raise BatchNotReadyError(
                f"Batch {batch.uuid} is not ready to send (status: {batch.status.value})", batch_id=batch.uuid
            )
        batch_id, batch_ref, pay_month = batch.id, batch.uuid, batch.pay_month
        previous = batch.email_status
        job_id = runtime.new_job_id()
        if not self.store.claim_distribution(batch_id, job_id=job_id, user_id=user_id):
            raise BatchConflictError(f"Batch {batch_ref} is already being distributed", batch_id=batch_ref)

        payload = DistributionJobPayload(batch_id=batch_id, batch_uuid=batch_ref, user_id=user_id)
        try:
            runtime.submit(payload, job_id=job_id)
        except _SUBMIT_ERRORS as e:
            logger.error("Could not queue distribution", batch_id=batch_ref, error=str(e))
            self.store.release_claim(batch_id, job_id=job_id, previous=previous)
            raise QueueUnavailableError(f"Could not queue distribution: {e}", batch_id=batch_ref) from e

        total = self.store.count_payslips(batch_id)
        log_business_event(
            "PAYSLIP_BATCH_SEND_QUEUED",
            {"batch_id": batch_ref, "total_payslips": total},
            user_id=user_id,
            job_id=job_id,
        )
        return {"upload_id": batch_id, "batch_id": batch_ref, "job_id": job_id, "pay_month": pay_month, "total_payslips": total}

    # ------------------------------- queries ------------------------------- #
    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        status = self.runtime.status(job_id) if self.runtime is not None else None
        if status is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return status

    def get_batch(self, batch_ref: int | str, *, include_records: bool = False) -> Dict[str, Any]:
        batch = self.store.get_batch(batch_ref)
        data = batch_projection(batch, payslip_count=self.store.count_payslips(batch.id))
        if include_records:
            records = (
                self.session.query(Payslip)
                .options(defer(Payslip.pdf_content))
                .filter(Payslip.upload_id == batch.id)
                .order_by(Payslip.id.asc())
                .all()
            )
            data["payslips"] = [payslip_projection(p) for p in records]
        return data

    def list_batches(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        pay_month: str | None = None,
        status: IngestStatus | None = None,
        email_status: DistributionStatus | None = None,
    ) -> Dict[str, Any]:
        query = self.session.query(PayslipUpload)
        if pay_month:
            query = query.filter(PayslipUpload.pay_month == pay_month)
        if status is not None:
            query = query.filter(PayslipUpload.status == status)
        if email_status is not None:
            query = query.filter(PayslipUpload.email_status == email_status)
        return paginate(query.order_by(PayslipUpload.id.desc()), page, limit, batch_projection)

    def list_employee_payslips(self, employee_id: int, *, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """Payslips of one employee across batches, newest first, without document bytes."""
        query = (
            self.session.query(Payslip)
            .options(defer(Payslip.pdf_content))
            .filter(Payslip.employee_id == employee_id)
            .order_by(Payslip.id.desc())
        )
        return paginate(query, page, limit, payslip_projection, options=(joinedload(Payslip.employee),))

    def list_unsent_payslips(self, *, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """Payslips still owed a delivery (never sent or last send failed), newest first."""
        query = (
            self.session.query(Payslip)
            .options(defer(Payslip.pdf_content))
            .filter(Payslip.email_status.in_([DeliveryStatus.NOT_SENT, DeliveryStatus.SEND_FAILED]))
            .order_by(Payslip.id.desc())
        )
        return paginate(query, page, limit, payslip_projection, options=(joinedload(Payslip.employee),))

    def list_pending_batches(self) -> List[Dict[str, Any]]:
        """Processed batches that have never been sent, oldest first."""
        rows = (
            self.session.query(PayslipUpload, func.count(Payslip.id))
            .outerjoin(Payslip, Payslip.upload_id == PayslipUpload.id)
            .filter(
                PayslipUpload.status == IngestStatus.PROCESSED,
                PayslipUpload.email_status == DistributionStatus.PENDING,
            )
            .group_by(PayslipUpload.id)
            .order_by(PayslipUpload.created_at.asc(), PayslipUpload.id.asc())
            .all()
        )
        return [batch_projection(batch, payslip_count=count) for batch, count in rows]

    def get_summary(self) -> Dict[str, int]:
        rows = self.session.query(Payslip.email_status, func.count(Payslip.id)).group_by(Payslip.email_status).all()
        counts = {status: count for status, count in rows}
        sent = counts.get(DeliveryStatus.SENT, 0)
        failed = counts.get(DeliveryStatus.SEND_FAILED, 0)
        not_sent = counts.get(DeliveryStatus.NOT_SENT, 0)
        return {
            "total_payslips": sent + failed + not_sent,
            "sent_payslips": sent,
            "pending_payslips": failed + not_sent,
            "failed_payslips": failed,
        }

    # ------------------------------ recovery ------------------------------ #
    def recover_interrupted_distributions(self) -> List[str]:
        """Fail DISTRIBUTING batches whose send job no longer exists. Returns their uuids.

        Run at startup before the workers start: a claim whose job id is not
        queued or running belonged to a process that stopped mid-run.
        """
        live = self.runtime.live_job_ids() if self.runtime is not None else set()
        recovered = self.store.recover_stale_distributions(live)
        for batch_ref in recovered:
            log_business_event("PAYSLIP_BATCH_SENT_FAILED", {"batch_id": batch_ref, "error": INTERRUPTED_NOTE})
        if recovered:
            logger.warning("Released interrupted distributions", count=len(recovered), batch_ids=recovered)
        return recovered

    # ------------------------------- resend ------------------------------- #
    def resend_payslip(self, payslip_id: int, user_id: int | None = None) -> Dict[str, Any]:
        if self.notifier is None:
            raise QueueUnavailableError("Notifier is not configured")
        payslip = self.store.load_payslip(payslip_id)
        if payslip is None:
            raise PayslipNotFoundError(f"Payslip {payslip_id} not found")
        if payslip.email_status == DeliveryStatus.SENT:
            raise PayslipAlreadySentError(
                f"Payslip {payslip_id} was already sent",
                batch_id=payslip.upload_id,
                details={"email_sent_at": payslip.email_sent_at},
            )

        outcome = deliver_payslip(self.store, self.notifier, payslip_id, user_id=user_id)
        payslip = self.store.load_payslip(payslip_id)
        log_business_event(
            "PAYSLIP_RESENT",
            {"payslip_id": payslip_id, "employee_id": payslip.employee_id, "status": outcome.status, "error": outcome.error},
            user_id=user_id,
        )
        return payslip_projection(payslip)


__all__ = ["PayslipService", "validate_upload", "batch_projection", "payslip_projection", "paginate"]

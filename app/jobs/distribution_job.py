"""Distribution job: e-mail every outstanding payslip of a processed batch.

``run_distribution(payload, context, ...)``:
1. Verifies the batch exists, finished ingest, and that this job holds (or
   can take) the distribution claim.
2. Selects payslips that are ``not_sent`` or ``send_failed``, oldest first.
   Already delivered payslips are never re-sent; a rerun after a partial run
   therefore only retries the failures.
3. Sends in chunks with a pause between chunks. Before every send the record
   is re-read and skipped if another run already delivered it.
4. Each delivery result is committed on its own, so a crash mid-run keeps
   everything sent so far.
5. Stores the outcome: ``completed`` (no failures), ``partial`` (some sent,
   some failed) or ``all_failed`` (nothing sent, something failed).

If the run itself cannot proceed (batch unreadable, store unavailable) the
batch is marked ``failed``, provided this job still holds the claim, and the
error is re-raised. A store error on a single payslip only fails that payslip.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import DISTRIBUTION_SETTINGS
from app.jobs.payloads import DistributionJobPayload
from app.models.db.enums import DeliveryStatus, DistributionStatus, IngestStatus
from app.services.errors import BatchConflictError, BatchNotFoundError, BatchNotReadyError
from app.services.notifier import Notifier
from app.services.record_store import BatchRecordStore
from app.utils import get_logger, log_business_event, log_performance
from app.utils.chunking import iter_chunks, progress_payload, scaled_percentage
from app.utils.time import elapsed_seconds, utc_now

logger = get_logger(__name__)

DEFAULT_SEND_ERROR = "Failed to send email"
NOTHING_TO_SEND = "All payslips already sent"


@dataclass(slots=True)
class DeliveryOutcome:
    payslip_id: int
    status: str  # "sent" | "failed" | "skipped"
    error: Optional[str] = None


def final_distribution_status(success: int, failure: int) -> DistributionStatus:
    if failure == 0:
        return DistributionStatus.COMPLETED
    if success > 0:
        return DistributionStatus.PARTIAL
    return DistributionStatus.ALL_FAILED


def deliver_payslip(store: BatchRecordStore, notifier: Notifier, payslip_id: int, *, user_id: int | None = None) -> DeliveryOutcome:
    """Send one payslip and record the result. Never raises for per-record problems."""
    try:
        payslip = store.load_payslip(payslip_id)
        if payslip is None or payslip.email_status == DeliveryStatus.SENT:
            return DeliveryOutcome(payslip_id, "skipped")
        employee = payslip.employee
        recipient = employee.email if employee is not None else None
        recipient_name = employee.full_name if employee is not None else None
        content, file_name = payslip.pdf_content, payslip.file_name
    except SQLAlchemyError as e:
        store.session.rollback()
        logger.error("Could not load payslip for delivery", payslip_id=payslip_id, error=str(e))
        return DeliveryOutcome(payslip_id, "failed", str(e))

    error: Optional[str] = None
    if not recipient:
        ok = False
        error = "Recipient has no email address"
    else:
        try:
            ok = bool(notifier.send_payslip(recipient, content, file_name, recipient_name))
        except Exception as e:
            ok = False
            error = str(e) or type(e).__name__
            logger.warning("Notifier raised while sending payslip", payslip_id=payslip_id, error=error)

    try:
        if ok:
            store.record_sent(payslip, when=utc_now(), user_id=user_id)
            return DeliveryOutcome(payslip_id, "sent")
        store.record_failed(payslip, error or DEFAULT_SEND_ERROR, user_id=user_id)
        return DeliveryOutcome(payslip_id, "failed", error or DEFAULT_SEND_ERROR)
    except SQLAlchemyError as e:
        logger.error("Could not record delivery result", payslip_id=payslip_id, delivered=ok, error=str(e))
        return DeliveryOutcome(payslip_id, "failed", str(e))


def _take_claim(store: BatchRecordStore, batch: Any, job_id: str, user_id: int | None) -> None:
    if batch.email_status == DistributionStatus.DISTRIBUTING:
        if batch.distribution_job_id != job_id:
            raise BatchConflictError(
                f"Batch {batch.uuid} is already being distributed",
                batch_id=batch.uuid,
                details={"job_id": batch.distribution_job_id},
            )
        return
    if not store.claim_distribution(batch.id, job_id=job_id, user_id=user_id):
        raise BatchConflictError(f"Batch {batch.uuid} is already being distributed", batch_id=batch.uuid)


def run_distribution(
    payload: DistributionJobPayload,
    context: Any,
    *,
    session_factory: Callable[[], Session],
    notifier: Notifier,
    chunk_size: int | None = None,
    chunk_delay_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    chunk_size = int(chunk_size or DISTRIBUTION_SETTINGS["chunk_size"])
    delay = float(chunk_delay_seconds if chunk_delay_seconds is not None else DISTRIBUTION_SETTINGS["chunk_delay_seconds"])
    started = utc_now()
    perf_start = time.perf_counter()
    session = session_factory()
    store = BatchRecordStore(session)
    batch_ref = payload.batch_uuid
    try:
        batch = store.get_batch(payload.batch_id)
        if batch.status != IngestStatus.PROCESSED:
            raise BatchNotReadyError(
                f"Batch {batch.uuid} is not ready to send (status: {batch.status.value})",
                batch_id=batch.uuid,
            )
        _take_claim(store, batch, context.job_id, payload.user_id)
        batch = store.refresh(batch)
        batch_id = batch.id
        batch_ref = batch.uuid
        pay_month = batch.pay_month

        already_sent = store.count_payslips(batch_id, DeliveryStatus.SENT)
        pending_ids = store.outstanding_payslip_ids(batch_id)
        total = len(pending_ids)
        log_business_event(
            "PAYSLIP_BATCH_SENT_STARTED",
            {"batch_id": batch_ref, "pending": total, "already_sent": already_sent},
            user_id=payload.user_id,
            job_id=context.job_id,
        )

        if not pending_ids:
            store.finish_distribution(
                batch,
                email_status=DistributionStatus.COMPLETED,
                success=0,
                failure=0,
                skipped=0,
                note=NOTHING_TO_SEND,
                user_id=payload.user_id,
            )
            context.update_progress(progress_payload("completed", 0, 0, 100, success_count=0, failure_count=0, skipped_count=0))
            logger.info(NOTHING_TO_SEND, batch_id=batch_ref)
            return {
                "batch_id": batch_ref,
                "pay_month": pay_month,
                "total_payslips": 0,
                "success_count": 0,
                "failure_count": 0,
                "skipped_count": 0,
                "email_status": DistributionStatus.COMPLETED.value,
                "message": NOTHING_TO_SEND,
                "processing_time": elapsed_seconds(started),
            }

        success = failure = 0
        skipped = already_sent
        context.update_progress(progress_payload("sending", 0, total, 0, success_count=0, failure_count=0, skipped_count=skipped))
        chunks: List[List[int]] = [list(c) for c in iter_chunks(pending_ids, chunk_size)]
        done = 0
        for index, chunk in enumerate(chunks):
            for payslip_id in chunk:
                outcome = deliver_payslip(store, notifier, payslip_id, user_id=payload.user_id)
                if outcome.status == "sent":
                    success += 1
                elif outcome.status == "skipped":
                    skipped += 1
                else:
                    failure += 1
            store.release_payslips()
            done += len(chunk)
            context.update_progress(progress_payload(
                "sending",
                done,
                total,
                scaled_percentage(done, total),
                success_count=success,
                failure_count=failure,
                skipped_count=skipped,
            ))
            if delay > 0 and index < len(chunks) - 1:
                sleep(delay)

        email_status = final_distribution_status(success, failure)
        batch = store.get_batch(batch_id)
        store.finish_distribution(
            batch,
            email_status=email_status,
            success=success,
            failure=failure,
            skipped=skipped,
            user_id=payload.user_id,
        )
        result = {
            "batch_id": batch_ref,
            "pay_month": pay_month,
            "total_payslips": total,
            "success_count": success,
            "failure_count": failure,
            "skipped_count": skipped,
            "email_status": email_status.value,
            "processing_time": elapsed_seconds(started),
        }
        context.update_progress(progress_payload(
            "completed", total, total, 100, success_count=success, failure_count=failure, skipped_count=skipped
        ))
        log_business_event(
            "PAYSLIP_BATCH_SENT_COMPLETED",
            {k: v for k, v in result.items() if k != "processing_time"},
            user_id=payload.user_id,
            job_id=context.job_id,
        )
        log_performance("distribution", round((time.perf_counter() - perf_start) * 1000, 2), {"batch_id": batch_ref, "total": total})
        return result
    except (BatchNotFoundError, BatchNotReadyError, BatchConflictError):
        raise
    except Exception as e:
        logger.error("Distribution failed", batch_id=batch_ref, error=str(e), error_type=type(e).__name__)
        try:
            # Only a claim this job holds is released
            store.fail_distribution(payload.batch_id, job_id=context.job_id)
        except Exception as mark_error:
            logger.error("Could not mark batch distribution as failed", batch_id=batch_ref, error=str(mark_error))
        log_business_event(
            "PAYSLIP_BATCH_SENT_FAILED",
            {"batch_id": batch_ref, "error": str(e)},
            user_id=payload.user_id,
            job_id=context.job_id,
        )
        raise
    finally:
        session.close()


def abandon_distribution(payload: DistributionJobPayload, job_id: str, *, session_factory: Callable[[], Session]) -> None:
    """Release the claim of a send job that was dequeued but will never run."""
    session = session_factory()
    try:
        if BatchRecordStore(session).fail_distribution(payload.batch_id, job_id=job_id):
            log_business_event(
                "PAYSLIP_BATCH_SENT_FAILED",
                {"batch_id": payload.batch_uuid, "error": "Send job abandoned before it ran"},
                user_id=payload.user_id,
                job_id=job_id,
            )
    finally:
        session.close()


__all__ = ["DeliveryOutcome", "run_distribution", "deliver_payslip", "final_distribution_status", "abandon_distribution"]

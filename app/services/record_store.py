"""Batch record store: chunked, transactional persistence for upload batches and payslips.

Every method that changes state commits its own unit of work, so a crash
between calls leaves the batch in the last fully committed lifecycle state:

* ingest writes one transaction per chunk (payslip rows + batch counters),
* distribution writes one transaction per payslip delivery result,
* lifecycle transitions (ingesting, processed, failed, distributing, final
  send outcome) are single-row updates committed immediately.

The distribution claim is an atomic conditional UPDATE rather than a
read-then-write, so two concurrent send requests for the same batch cannot
both succeed.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.models.db.enums import DeliveryStatus, DistributionStatus, IngestStatus, SENDABLE_DISTRIBUTION_STATES
from app.models.db.payslip_uploads import PayslipUpload
from app.models.db.payslips import Payslip
from app.services.errors import BatchNotFoundError
from app.utils import get_logger
from app.utils.time import utc_now

logger = get_logger(__name__)

INTERRUPTED_NOTE = "Distribution interrupted before it finished"


@dataclass(slots=True)
class NewPayslip:
    ippis_number: str
    employee_id: int
    file_name: str
    file_path: str
    content: bytes
    origin: str


def _ref_filter(batch_ref: int | str):
    if isinstance(batch_ref, int):
        return PayslipUpload.id == batch_ref
    ref = str(batch_ref).strip()
    if ref.isdigit():
        return (PayslipUpload.id == int(ref)) | (PayslipUpload.uuid == ref)
    return PayslipUpload.uuid == ref


class BatchRecordStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    # ------------------------------ batches ------------------------------ #
    def create_batch(self, *, file_name: str, pay_month: str, user_id: int | None = None) -> PayslipUpload:
        batch = PayslipUpload(
            file_name=file_name,
            pay_month=pay_month,
            status=IngestStatus.CREATED,
            email_status=DistributionStatus.PENDING,
            created_by=user_id,
        )
        self.session.add(batch)
        self.session.commit()
        self.session.refresh(batch)
        return batch

    def find_batch(self, batch_ref: int | str) -> Optional[PayslipUpload]:
        return self.session.query(PayslipUpload).filter(_ref_filter(batch_ref)).first()

    def get_batch(self, batch_ref: int | str) -> PayslipUpload:
        batch = self.find_batch(batch_ref)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_ref} not found", batch_id=batch_ref)
        return batch

    def refresh(self, batch: PayslipUpload) -> PayslipUpload:
        self.session.refresh(batch)
        return batch

    def delete_batch(self, batch: PayslipUpload) -> None:
        self.session.delete(batch)
        self.session.commit()

    # ------------------------------ ingest ------------------------------ #
    def mark_ingesting(self, batch: PayslipUpload, *, job_id: str | None = None) -> None:
        batch.status = IngestStatus.INGESTING
        batch.ingest_job_id = job_id
        batch.total_files = 0
        batch.processed_files = 0
        batch.failed_files = 0
        batch.row_errors = []
        self.session.commit()

    def set_total(self, batch: PayslipUpload, total: int) -> None:
        batch.total_files = total
        self.session.commit()

    def write_chunk(
        self,
        batch: PayslipUpload,
        payslips: Sequence[NewPayslip],
        *,
        failed: int,
        row_errors: Iterable[dict],
        user_id: int | None = None,
    ) -> None:
        """Persist one chunk of resolved payslips and bump the batch counters atomically."""
        try:
            for item in payslips:
                self.session.add(Payslip(
                    ippis_number=item.ippis_number,
                    upload_id=batch.id,
                    employee_id=item.employee_id,
                    pay_month=batch.pay_month,
                    file_name=item.file_name,
                    file_path=item.file_path,
                    pdf_content=item.content,
                    origin=item.origin,
                    email_status=DeliveryStatus.NOT_SENT,
                    created_by=user_id,
                ))
            batch.processed_files = (batch.processed_files or 0) + len(payslips)
            batch.failed_files = (batch.failed_files or 0) + failed
            new_errors = list(row_errors)
            if new_errors:
                # Reassign so the JSON column is flagged dirty
                batch.row_errors = list(batch.row_errors or []) + new_errors
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        # Drop ORM copies of the chunk's PDFs; the batch row stays attached
        self.release_payslips()

    def finish_ingest(self, batch: PayslipUpload, *, user_id: int | None = None) -> None:
        batch.status = IngestStatus.PROCESSED
        batch.total_files = (batch.processed_files or 0) + (batch.failed_files or 0)
        batch.updated_by = user_id
        self.session.commit()

    def fail_ingest(self, batch_id: int) -> None:
        """Best-effort transition to FAILED in a fresh transaction."""
        self.session.rollback()
        self.session.execute(
            update(PayslipUpload)
            .where(PayslipUpload.id == batch_id)
            .values(status=IngestStatus.FAILED)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.expire_all()

    # ---------------------------- distribution ---------------------------- #
    def claim_distribution(self, batch_id: int, *, job_id: str, user_id: int | None = None) -> bool:
        """Atomically move a ready batch to DISTRIBUTING. False if not ready or already claimed."""
        result = self.session.execute(
            update(PayslipUpload)
            .where(
                PayslipUpload.id == batch_id,
                PayslipUpload.status == IngestStatus.PROCESSED,
                PayslipUpload.email_status.in_(list(SENDABLE_DISTRIBUTION_STATES)),
            )
            .values(
                email_status=DistributionStatus.DISTRIBUTING,
                distribution_job_id=job_id,
                sent_at=utc_now(),
                updated_by=user_id,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.expire_all()
        return result.rowcount == 1

    def release_claim(self, batch_id: int, *, job_id: str, previous: DistributionStatus) -> None:
        self.session.rollback()
        self.session.execute(
            update(PayslipUpload)
            .where(PayslipUpload.id == batch_id, PayslipUpload.distribution_job_id == job_id)
            .values(email_status=previous, distribution_job_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.expire_all()

    def outstanding_payslip_ids(self, batch_id: int) -> List[int]:
        """Ids of payslips still owed a delivery, in creation order."""
        rows = (
            self.session.query(Payslip.id)
            .filter(
                Payslip.upload_id == batch_id,
                Payslip.email_status.in_([DeliveryStatus.NOT_SENT, DeliveryStatus.SEND_FAILED]),
            )
            .order_by(Payslip.id.asc())
            .all()
        )
        return [row[0] for row in rows]

    def count_payslips(self, batch_id: int, status: DeliveryStatus | None = None) -> int:
        query = self.session.query(func.count(Payslip.id)).filter(Payslip.upload_id == batch_id)
        if status is not None:
            query = query.filter(Payslip.email_status == status)
        return int(query.scalar() or 0)

    def load_payslip(self, payslip_id: int) -> Optional[Payslip]:
        """Fresh read from the database, bypassing any cached identity."""
        return self.session.get(Payslip, payslip_id, populate_existing=True)

    def record_sent(self, payslip: Payslip, *, when: datetime | None = None, user_id: int | None = None) -> None:
        try:
            payslip.mark_sent(when or utc_now(), user_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def record_failed(self, payslip: Payslip, error: str, *, user_id: int | None = None) -> None:
        try:
            payslip.mark_failed(error, user_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def release_payslips(self) -> None:
        """Detach loaded payslips (and their PDF bytes) at a chunk boundary."""
        for obj in list(self.session.identity_map.values()):
            if isinstance(obj, Payslip):
                self.session.expunge(obj)

    def finish_distribution(
        self,
        batch: PayslipUpload,
        *,
        email_status: DistributionStatus,
        success: int,
        failure: int,
        skipped: int,
        note: str | None = None,
        user_id: int | None = None,
    ) -> None:
        batch.email_status = email_status
        batch.success_count = success
        batch.failure_count = failure
        batch.skipped_count = skipped
        batch.distribution_note = note
        batch.distribution_job_id = None
        batch.completed_at = utc_now()
        batch.updated_by = user_id
        self.session.commit()

    def fail_distribution(self, batch_id: int, *, job_id: str | None = None) -> bool:
        """Mark the distribution FAILED and drop the claim; with ``job_id``, only while that job holds it."""
        self.session.rollback()
        statement = update(PayslipUpload).where(PayslipUpload.id == batch_id)
        if job_id is not None:
            statement = statement.where(
                PayslipUpload.email_status == DistributionStatus.DISTRIBUTING,
                PayslipUpload.distribution_job_id == job_id,
            )
        result = self.session.execute(
            statement
            .values(email_status=DistributionStatus.FAILED, distribution_job_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.expire_all()
        return result.rowcount == 1

    def recover_stale_distributions(self, live_job_ids: Iterable[str]) -> List[str]:
        """Fail DISTRIBUTING batches whose claim no live job holds. Returns their uuids."""
        live = set(live_job_ids)
        stale = [
            (batch_id, batch_ref)
            for batch_id, batch_ref, job_id in self.session.query(
                PayslipUpload.id, PayslipUpload.uuid, PayslipUpload.distribution_job_id
            ).filter(PayslipUpload.email_status == DistributionStatus.DISTRIBUTING)
            if job_id is None or job_id not in live
        ]
        if not stale:
            return []
        self.session.execute(
            update(PayslipUpload)
            .where(
                PayslipUpload.id.in_([batch_id for batch_id, _ in stale]),
                PayslipUpload.email_status == DistributionStatus.DISTRIBUTING,
            )
            .values(
                email_status=DistributionStatus.FAILED,
                distribution_job_id=None,
                distribution_note=INTERRUPTED_NOTE,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.expire_all()
        return [batch_ref for _, batch_ref in stale]


__all__ = ["BatchRecordStore", "NewPayslip"]

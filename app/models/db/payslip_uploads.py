from __future__ import annotations
"""SQLAlchemy model for an uploaded payslip batch (one upload-to-distribution unit)."""
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, List
from sqlalchemy import Integer, String, DateTime, Enum, Text, JSON
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.sql import func
from app.database import Base
from .enums import IngestStatus, DistributionStatus

if TYPE_CHECKING:  # pragma: no cover
    from .payslips import Payslip


def _new_reference() -> str:
    return str(uuid.uuid4())


class PayslipUpload(Base):
    __tablename__ = "payslip_uploads"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # Shareable reference code exposed to operators instead of the numeric id
    uuid: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, default=_new_reference, index=True)
    pay_month: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(String, nullable=False)

    # Ingest counters; total_files is authoritative only once status == PROCESSED
    total_files: Mapped[int] = mapped_column(Integer, default=0)
    processed_files: Mapped[int] = mapped_column(Integer, default=0)
    failed_files: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[IngestStatus] = mapped_column(Enum(IngestStatus), default=IngestStatus.CREATED, nullable=False, index=True)
    # Per-row failures kept for operators: [{"origin", "identifier", "reason"}]
    row_errors: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # Distribution counters reflect the most recent send run
    email_status: Mapped[DistributionStatus] = mapped_column(Enum(DistributionStatus), default=DistributionStatus.PENDING, nullable=False, index=True)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    distribution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    ingest_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Job currently holding the distribution claim
    distribution_job_id: Mapped[str | None] = mapped_column(String, nullable=True)

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payslips: Mapped[List["Payslip"]] = relationship(
        "Payslip", back_populates="upload", order_by="Payslip.id", cascade="all, delete-orphan"
    )

    @property
    def is_ready_to_send(self) -> bool:
        return self.status == IngestStatus.PROCESSED and self.email_status != DistributionStatus.DISTRIBUTING

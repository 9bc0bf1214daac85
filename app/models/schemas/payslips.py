"""
Pydantic schemas for payslip batches, records and background jobs.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class RowError(BaseModel):
    """A candidate document that could not be turned into a payslip."""
    origin: str = Field(description="Path of the document inside the upload, e.g. 'inner.zip::a.pdf'")
    identifier: str
    reason: str


class EmployeeSummary(BaseModel):
    id: int
    name: str
    email: str


class PayslipRecordRead(BaseModel):
    id: int
    upload_id: Optional[int] = None
    pay_month: Optional[str] = None
    ippis_number: str
    employee: Optional[EmployeeSummary] = None
    file_name: str
    origin: Optional[str] = None
    email_status: str = Field(description="not_sent|sent|send_failed")
    email_error: Optional[str] = None
    email_sent_at: Optional[datetime] = None


class BatchRead(BaseModel):
    id: int
    uuid: str
    pay_month: str
    file_name: str
    status: str = Field(description="created|ingesting|processed|failed")
    email_status: str = Field(description="pending|distributing|completed|partial|all_failed|failed")
    total_files: int = 0
    processed_files: int = 0
    failed_files: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    row_errors: List[RowError] = Field(default_factory=list)
    distribution_note: Optional[str] = None
    ingest_job_id: Optional[str] = None
    distribution_job_id: Optional[str] = None
    payslip_count: Optional[int] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class BatchDetail(BatchRead):
    payslips: Optional[List[PayslipRecordRead]] = None


class BatchPage(BaseModel):
    items: List[BatchRead]
    total: int
    page: int
    limit: int
    total_pages: int


class PayslipPage(BaseModel):
    items: List[PayslipRecordRead]
    total: int
    page: int
    limit: int
    total_pages: int


class UploadAccepted(BaseModel):
    upload_id: int
    batch_id: str = Field(description="Shareable batch reference (uuid)")
    job_id: str
    pay_month: str


class SendAccepted(BaseModel):
    upload_id: int
    batch_id: str
    job_id: str
    pay_month: str
    total_payslips: int


class JobStatusRead(BaseModel):
    job_id: str
    name: str
    state: str = Field(description="queued|active|completed|failed")
    progress: Any = None
    result: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class PayslipSummary(BaseModel):
    total_payslips: int
    sent_payslips: int
    pending_payslips: int
    failed_payslips: int

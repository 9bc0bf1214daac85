from .base import ResponseBase
from .payslips import (
    RowError,
    EmployeeSummary,
    PayslipRecordRead,
    BatchRead,
    BatchDetail,
    BatchPage,
    PayslipPage,
    UploadAccepted,
    SendAccepted,
    JobStatusRead,
    PayslipSummary,
)

__all__ = [
    # Base
    "ResponseBase",

    # Payslips
    "RowError",
    "EmployeeSummary",
    "PayslipRecordRead",
    "BatchRead",
    "BatchDetail",
    "BatchPage",
    "PayslipPage",
    "UploadAccepted",
    "SendAccepted",
    "JobStatusRead",
    "PayslipSummary",
]

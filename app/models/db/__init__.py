from .employees import Employee
from .payslip_uploads import PayslipUpload
from .payslips import Payslip
from .enums import IngestStatus, DistributionStatus, DeliveryStatus, JobState

__all__ = [
    "Employee",
    "PayslipUpload",
    "Payslip",
    "IngestStatus",
    "DistributionStatus",
    "DeliveryStatus",
    "JobState",
]

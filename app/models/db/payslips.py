from __future__ import annotations
"""SQLAlchemy model for a single persisted payslip (one resolved employee in a batch)."""
from datetime import datetime
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String, DateTime, Enum, Text, LargeBinary, ForeignKey
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.sql import func
from app.database import Base
from .enums import DeliveryStatus

if TYPE_CHECKING:  # pragma: no cover
    from .employees import Employee
    from .payslip_uploads import PayslipUpload


class Payslip(Base):
    __tablename__ = "payslips"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # Identifier read from the document (may be the fallback sentinel)
    ippis_number: Mapped[str] = mapped_column(String, nullable=False)
    upload_id: Mapped[int] = mapped_column(Integer, ForeignKey("payslip_uploads.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    pay_month: Mapped[str] = mapped_column(String(7), nullable=False, index=True)

    file_name: Mapped[str] = mapped_column(String, nullable=False)
    file_path: Mapped[str] = mapped_column(String, nullable=False)
    pdf_content: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    origin: Mapped[str | None] = mapped_column(String, nullable=True)

    email_status: Mapped[DeliveryStatus] = mapped_column(Enum(DeliveryStatus), default=DeliveryStatus.NOT_SENT, nullable=False, index=True)
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    email_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    upload: Mapped["PayslipUpload"] = relationship("PayslipUpload", back_populates="payslips")
    employee: Mapped["Employee"] = relationship("Employee", back_populates="payslips")

    def mark_sent(self, when: datetime, user_id: int | None = None) -> None:
        self.email_status = DeliveryStatus.SENT
        self.email_sent_at = when
        self.email_error = None
        self.updated_by = user_id

    def mark_failed(self, error: str, user_id: int | None = None) -> None:
        self.email_status = DeliveryStatus.SEND_FAILED
        self.email_error = error or "Failed to send email"
        self.updated_by = user_id

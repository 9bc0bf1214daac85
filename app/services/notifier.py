"""Outbound payslip delivery.

A notifier sends one PDF to one address and reports success as a bool.
A refused delivery may come back as ``False``; SMTP and connection errors
propagate so the caller can record the actual reason. The distribution job
turns both into a per-payslip error message.
"""
from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import Protocol

from app.config import SMTP_SETTINGS
from app.utils import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    def send_payslip(self, to: str, content: bytes, file_name: str, employee_name: str) -> bool: ...


def build_payslip_message(*, sender: str, to: str, content: bytes, file_name: str, employee_name: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = f"Your Payslip - {file_name}"
    message.set_content(
        f"Dear {employee_name},\n\n"
        "Please find your payslip attached.\n\n"
        "Best regards,\nHR Department\n"
    )
    message.add_attachment(content, maintype="application", subtype="pdf", filename=file_name)
    return message


class SmtpNotifier:
    def __init__(self, settings: dict | None = None) -> None:
        cfg = dict(SMTP_SETTINGS)
        if settings:
            cfg.update(settings)
        self.host = str(cfg["host"])
        self.port = int(cfg["port"])  # type: ignore[arg-type]
        self.user = cfg.get("user")
        self.password = cfg.get("password")
        self.sender = str(cfg["from_address"])
        self.use_tls = bool(cfg.get("use_tls"))
        self.timeout = float(cfg.get("timeout_seconds") or 30)  # type: ignore[arg-type]

    def send_payslip(self, to: str, content: bytes, file_name: str, employee_name: str) -> bool:
        message = build_payslip_message(
            sender=self.sender, to=to, content=content, file_name=file_name, employee_name=employee_name
        )
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.user and self.password:
                    smtp.login(str(self.user), str(self.password))
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Error sending payslip email", to=to, file_name=file_name, error=str(e))
            raise
        return True

    def test_connection(self) -> bool:
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.noop()
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Email service connection failed", host=self.host, port=self.port, error=str(e))
            return False


__all__ = ["Notifier", "SmtpNotifier", "build_payslip_message"]

import smtplib
from unittest.mock import MagicMock

import pytest

from app.services import notifier as notifier_module
from app.services.notifier import SmtpNotifier

SETTINGS = {
    "host": "smtp.test",
    "port": 2525,
    "user": "hr",
    "password": "secret",
    "from_address": "hr@example.com",
    "use_tls": True,
    "timeout_seconds": 5,
}


@pytest.fixture()
def smtp(monkeypatch):
    """Replaces ``smtplib.SMTP``; the returned mock is the connection used inside ``with``."""
    connection = MagicMock()
    factory = MagicMock()
    factory.return_value.__enter__.return_value = connection
    factory.return_value.__exit__.return_value = False
    monkeypatch.setattr(notifier_module.smtplib, "SMTP", factory)
    return connection


def test_delivery_returns_true(smtp):
    assert SmtpNotifier(SETTINGS).send_payslip("ada@example.com", b"%PDF", "EMP001-jan.pdf", "Ada Obi") is True
    smtp.starttls.assert_called_once()
    smtp.login.assert_called_once_with("hr", "secret")
    message = smtp.send_message.call_args.args[0]
    assert message["To"] == "ada@example.com"
    assert message["Subject"] == "Your Payslip - EMP001-jan.pdf"


def test_smtp_error_is_raised_to_the_caller(smtp):
    smtp.send_message.side_effect = smtplib.SMTPRecipientsRefused({"ada@example.com": (550, b"no such user")})
    with pytest.raises(smtplib.SMTPRecipientsRefused):
        SmtpNotifier(SETTINGS).send_payslip("ada@example.com", b"%PDF", "EMP001-jan.pdf", "Ada Obi")


def test_connection_error_is_raised_to_the_caller(monkeypatch):
    monkeypatch.setattr(notifier_module.smtplib, "SMTP", MagicMock(side_effect=ConnectionRefusedError("refused")))
    with pytest.raises(ConnectionRefusedError):
        SmtpNotifier(SETTINGS).send_payslip("ada@example.com", b"%PDF", "EMP001-jan.pdf", "Ada Obi")

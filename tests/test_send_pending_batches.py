from app.models.db.enums import DeliveryStatus, DistributionStatus, IngestStatus
from app.scripts.send_pending_batches import main, send_pending_batches
from app.services.errors import BatchConflictError
from app.services.payslip_service import PayslipService

NOT_SENT = DeliveryStatus.NOT_SENT


def test_sends_every_pending_batch_and_reports(db_session, runtime, notifier, employee_factory, batch_factory):
    staff = [employee_factory(f"EMP00{i}") for i in range(1, 4)]
    notifier.fail_for.add(staff[1].email)
    january = batch_factory([(staff[0], NOT_SENT), (staff[1], NOT_SENT)], pay_month="2025-01")
    february = batch_factory([(staff[2], NOT_SENT)], pay_month="2025-02")
    batch_factory([(staff[2], NOT_SENT)], pay_month="2025-03", status=IngestStatus.INGESTING)
    lines = []

    summary = send_pending_batches(PayslipService(db_session, runtime), runtime, timeout=10, out=lines.append)

    assert (summary["pending"], summary["completed"], summary["errors"]) == (2, 2, 0)
    assert (summary["sent"], summary["failed"]) == (2, 1)
    assert lines[0].startswith(f"{january.uuid} (2025-01, 2 payslips): partial")
    assert lines[1].startswith(f"{february.uuid} (2025-02, 1 payslips): completed")
    assert lines[-1].startswith("Batches sent: 2/2, errors: 0")
    db_session.expire_all()
    assert february.email_status == DistributionStatus.COMPLETED


def test_nothing_pending(db_session, runtime):
    lines = []
    summary = send_pending_batches(PayslipService(db_session, runtime), runtime, out=lines.append)
    assert summary["pending"] == 0
    assert lines[0] == "No pending batches found"


def test_exit_status_is_one_when_a_batch_fails(session_factory, runtime, employee_factory, batch_factory, monkeypatch, capsys):
    batch_factory([(employee_factory("EMP001"), NOT_SENT)])

    def refuse(self, batch_ref, user_id=None):
        raise BatchConflictError(f"Batch {batch_ref} is already being distributed", batch_id=batch_ref)

    monkeypatch.setattr(PayslipService, "enqueue_send", refuse)
    assert main([], session_factory=session_factory, runtime=runtime) == 1
    assert "not queued" in capsys.readouterr().out


def test_exit_status_is_zero_when_all_batches_send(session_factory, runtime, employee_factory, batch_factory, notifier):
    employee = employee_factory("EMP001")
    batch_factory([(employee, NOT_SENT)])
    assert main(["--timeout", "10"], session_factory=session_factory, runtime=runtime) == 0
    assert notifier.sent_to(employee.email) == 1

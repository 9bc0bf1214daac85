from fastapi.testclient import TestClient

from app.main import app
from app.models.db.enums import DeliveryStatus, DistributionStatus

from factories import make_pdf, make_zip

BASE = "/api/v1/payslips"


def _upload(client: TestClient, content: bytes, name: str = "january.zip", pay_month: str = "2025-01"):
    return client.post(
        f"{BASE}/upload",
        files={"file": (name, content, "application/octet-stream")},
        data={"pay_month": pay_month},
        headers={"X-User-ID": "11"},
    )


def test_upload_then_send_flow(client: TestClient, runtime, notifier, employee_factory):
    first = employee_factory("EMP001")
    second = employee_factory("EMP002")
    upload = make_zip([("a.pdf", make_pdf("EMP001")), ("b.pdf", make_pdf("EMP002"))])

    r = _upload(client, upload)
    assert r.status_code == 202, r.text
    accepted = r.json()["data"]
    assert accepted["pay_month"] == "2025-01"
    runtime.wait_for(accepted["job_id"], timeout=10)

    r = client.get(f"{BASE}/upload/jobs/{accepted['job_id']}")
    assert r.status_code == 200
    job = r.json()["data"]
    assert job["state"] == "completed"
    assert job["result"]["processed_files"] == 2

    r = client.get(f"{BASE}/batches/pending")
    assert [b["uuid"] for b in r.json()["data"]["items"]] == [accepted["batch_id"]]

    r = client.post(f"{BASE}/batches/{accepted['batch_id']}/send")
    assert r.status_code == 202, r.text
    send = r.json()["data"]
    assert send["total_payslips"] == 2
    assert runtime.wait_for(send["job_id"], timeout=10)["state"] == "completed"

    r = client.get(f"{BASE}/batches/{accepted['batch_id']}", params={"include_records": True})
    batch = r.json()["data"]
    assert batch["email_status"] == "completed"
    assert batch["success_count"] == 2
    assert {p["email_status"] for p in batch["payslips"]} == {"sent"}
    assert notifier.sent_to(first.email) == 1
    assert notifier.sent_to(second.email) == 1

    # Nothing outstanding: a second send is accepted and is a no-op
    r = client.post(f"{BASE}/batches/{accepted['batch_id']}/send")
    assert r.status_code == 202
    result = runtime.wait_for(r.json()["data"]["job_id"], timeout=10)["result"]
    assert result["message"] == "All payslips already sent"
    assert result["skipped_count"] == 0
    assert notifier.sent_to(first.email) == 1


def test_upload_rejects_wrong_file_type(client: TestClient):
    r = _upload(client, b"hello", name="payroll.txt")
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert "PDF or ZIP" in body["message"]


def test_upload_rejects_bad_pay_month(client: TestClient):
    r = _upload(client, make_pdf("EMP001"), name="a.pdf", pay_month="2025/01")
    assert r.status_code == 400


def test_upload_requires_pay_month(client: TestClient):
    r = client.post(f"{BASE}/upload", files={"file": ("a.pdf", make_pdf("EMP001"), "application/pdf")})
    assert r.status_code == 422
    assert r.json()["success"] is False


def test_upload_unavailable_without_runtime(client: TestClient):
    app.state.job_runtime = None  # type: ignore[attr-defined]
    r = _upload(client, make_pdf("EMP001"), name="a.pdf")
    assert r.status_code == 503


def test_send_conflicts_while_distributing(client: TestClient, employee_factory, batch_factory):
    batch = batch_factory(
        [(employee_factory("EMP001"), DeliveryStatus.NOT_SENT)],
        email_status=DistributionStatus.DISTRIBUTING,
    )
    r = client.post(f"{BASE}/batches/{batch.uuid}/send")
    assert r.status_code == 409


def test_unknown_batch_and_job_are_404(client: TestClient):
    assert client.get(f"{BASE}/batches/not-a-batch").status_code == 404
    assert client.post(f"{BASE}/batches/not-a-batch/send").status_code == 404
    r = client.get(f"{BASE}/upload/jobs/missing")
    assert r.status_code == 404
    assert r.json()["message"] == "Job missing not found"


def test_list_batches_and_summary(client: TestClient, employee_factory, batch_factory):
    first, second = employee_factory("EMP001"), employee_factory("EMP002")
    batch_factory([(first, DeliveryStatus.SENT), (second, DeliveryStatus.SEND_FAILED)],
                  email_status=DistributionStatus.PARTIAL)
    batch_factory([(first, DeliveryStatus.NOT_SENT)], pay_month="2025-02")

    r = client.get(f"{BASE}/batches", params={"email_status": "partial"})
    assert r.status_code == 200
    page = r.json()["data"]
    assert page["total"] == 1
    assert page["items"][0]["pay_month"] == "2025-01"

    r = client.get(f"{BASE}/batches", params={"pay_month": "2025-13"})
    assert r.status_code == 422

    r = client.get(f"{BASE}/summary")
    assert r.json()["data"] == {
        "total_payslips": 3,
        "sent_payslips": 1,
        "pending_payslips": 2,
        "failed_payslips": 1,
    }


def test_resend_single_payslip(client: TestClient, notifier, employee_factory, batch_factory):
    employee = employee_factory("EMP001")
    batch = batch_factory([(employee, DeliveryStatus.SEND_FAILED)], email_status=DistributionStatus.ALL_FAILED)
    payslip_id = batch.payslips[0].id

    r = client.post(f"{BASE}/resend/{payslip_id}")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["data"]["email_status"] == "sent"
    assert notifier.sent_to(employee.email) == 1

    r = client.post(f"{BASE}/resend/{payslip_id}")
    assert r.status_code == 409
    assert client.post(f"{BASE}/resend/999999").status_code == 404


def test_employee_payslip_history(client: TestClient, employee_factory, batch_factory):
    employee = employee_factory("EMP001")
    batch_factory([(employee, DeliveryStatus.SENT)], pay_month="2025-01")
    batch_factory([(employee, DeliveryStatus.NOT_SENT)], pay_month="2025-02")

    r = client.get(f"{BASE}/employee/{employee.id}", params={"limit": 1})
    assert r.status_code == 200
    page = r.json()["data"]
    assert (page["total"], page["page"], page["limit"], page["total_pages"]) == (2, 1, 1, 2)
    assert page["items"][0]["pay_month"] == "2025-02"
    assert "pdf_content" not in page["items"][0]

    r = client.get(f"{BASE}/employee/{employee.id}", params={"limit": 101})
    assert r.status_code == 422


def test_unsent_payslips_listing(client: TestClient, employee_factory, batch_factory):
    sent, failed = employee_factory("EMP001"), employee_factory("EMP002")
    batch_factory([(sent, DeliveryStatus.SENT), (failed, DeliveryStatus.SEND_FAILED)])

    r = client.get(f"{BASE}/unsent")
    assert r.status_code == 200
    page = r.json()["data"]
    assert page["total"] == 1
    assert page["items"][0]["employee"]["email"] == failed.email
    assert page["items"][0]["email_status"] == "send_failed"

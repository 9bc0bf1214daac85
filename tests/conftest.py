import os
import sys
import threading
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'app' package resolves when running from a checkout
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.main import app  # type: ignore
from app.database import Base  # type: ignore
from app.api import deps  # type: ignore
"""Pytest fixtures and factories.

Important: SQLAlchemy relationship configuration requires all model modules to be imported
before Base.metadata.create_all(), otherwise back_populates targets might not exist yet.
"""
from app.models.db import Employee, Payslip, PayslipUpload
from app.models.db.enums import DeliveryStatus, DistributionStatus, IngestStatus
from app.jobs.handlers import register_payslip_jobs
from app.jobs.payloads import INGEST_JOB, SEND_JOB
from app.jobs.queue import PriorityJobQueue
from app.jobs.runtime import JobRuntime
from app.services.identifier import build_identifier_pattern, match_identifier
from app.services.storage import LocalDocumentStorage

# Use file-based SQLite for thread-safe multi-connection access (worker thread + test thread)
# In-memory with StaticPool (single connection) caused cross-thread flush anomalies.
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_payslips.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Anything that still reaches for app.database.SessionLocal sees the test DB too
import app.database as _app_database  # noqa: E402
_app_database.SessionLocal = TestingSessionLocal  # type: ignore

# Generous start limits so a test never waits on the production 5-per-minute window
TEST_JOB_LIMITS = {
    INGEST_JOB: {"concurrency": 1, "rate_limit": 100, "window_seconds": 1},
    SEND_JOB: {"concurrency": 1, "rate_limit": 100, "window_seconds": 1},
}


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_payslips.db")
    except OSError:
        pass


@pytest.fixture(autouse=True)
def _clean_tables(create_test_db):
    """Each test starts with empty tables (workers commit, so no transaction rollback trick)."""
    yield
    session = TestingSessionLocal()
    try:
        session.query(Payslip).delete()
        session.query(PayslipUpload).delete()
        session.query(Employee).delete()
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db


# ---------- Collaborator fakes ----------

class FakeIdentifierExtractor:
    """Reads the identifier straight from the raw bytes (test PDFs carry it in a comment line)."""

    def __init__(self):
        self._pattern = build_identifier_pattern("IPPIS", "Number")

    def extract(self, content: bytes):
        return match_identifier(content.decode("latin-1"), self._pattern, "Step")


class FakeNotifier:
    """Records deliveries. Addresses in ``fail_for`` return False, in ``raise_for`` raise."""

    def __init__(self):
        self.sent: list[dict] = []
        self.fail_for: set[str] = set()
        self.raise_for: dict[str, Exception] = {}
        self._lock = threading.Lock()

    def send_payslip(self, to, content, file_name, employee_name):
        if to in self.raise_for:
            raise self.raise_for[to]
        if to in self.fail_for:
            return False
        with self._lock:
            self.sent.append({"to": to, "file_name": file_name, "employee_name": employee_name, "size": len(content)})
        return True

    def sent_to(self, email: str) -> int:
        with self._lock:
            return sum(1 for item in self.sent if item["to"] == email)


class RecordingContext:
    """Minimal JobContext stand-in for calling job functions directly."""

    def __init__(self, job_id: str = "test-job"):
        self.job_id = job_id
        self.updates: list = []

    def update_progress(self, progress):
        self.updates.append(progress)


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture()
def extractor():
    return FakeIdentifierExtractor()


@pytest.fixture()
def storage(tmp_path):
    return LocalDocumentStorage(tmp_path / "uploads")


@pytest.fixture()
def session_factory():
    return TestingSessionLocal


@pytest.fixture()
def job_context():
    return RecordingContext()


@pytest.fixture()
def runtime(notifier, extractor, storage):
    rt = JobRuntime(queue_factory=PriorityJobQueue, poll_timeout=0.05)
    register_payslip_jobs(
        rt,
        session_factory=TestingSessionLocal,
        notifier=notifier,
        storage=storage,
        extractor=extractor,
        chunk_delay_seconds=0,
        job_limits=TEST_JOB_LIMITS,
    )
    rt.start()
    yield rt
    rt.shutdown(drain=True, timeout=10)


@pytest.fixture()
def client(runtime, notifier):
    # Tests bypass lifespan, so replicate the app.state wiring here
    app.state.job_runtime = runtime  # type: ignore[attr-defined]
    app.state.notifier = notifier  # type: ignore[attr-defined]
    yield TestClient(app)
    app.state.job_runtime = None  # type: ignore[attr-defined]
    app.state.notifier = None  # type: ignore[attr-defined]


# ---------- Data factory helpers ----------

@pytest.fixture()
def employee_factory(db_session):
    def _create(ippis_number: str, *, email: str | None = None, first_name: str = "Ada", last_name: str = "Obi", deleted: bool = False):
        from app.utils.time import utc_now
        employee = Employee(
            ippis_number=ippis_number,
            first_name=first_name,
            last_name=last_name,
            email=email or f"{ippis_number.lower()}@example.com",
            deleted_at=utc_now() if deleted else None,
        )
        db_session.add(employee)
        db_session.commit()
        db_session.refresh(employee)
        return employee
    return _create


@pytest.fixture()
def batch_factory(db_session):
    """Create a processed batch with one payslip per (employee, delivery status) pair."""
    from app.utils.time import utc_now

    def _create(rows, *, pay_month: str = "2025-01", status: IngestStatus = IngestStatus.PROCESSED,
                email_status: DistributionStatus = DistributionStatus.PENDING):
        batch = PayslipUpload(
            file_name="january.zip",
            pay_month=pay_month,
            status=status,
            email_status=email_status,
            total_files=len(rows),
            processed_files=len(rows),
            failed_files=0,
        )
        db_session.add(batch)
        db_session.flush()
        for employee, delivery in rows:
            payslip = Payslip(
                ippis_number=employee.ippis_number,
                upload_id=batch.id,
                employee_id=employee.id,
                pay_month=pay_month,
                file_name=f"{employee.ippis_number}-january.pdf",
                file_path=f"{batch.uuid}/{employee.ippis_number}.pdf",
                pdf_content=b"%PDF-1.4 test",
                origin=f"{employee.ippis_number}.pdf",
                email_status=delivery,
            )
            if delivery == DeliveryStatus.SEND_FAILED:
                payslip.email_error = "Failed to send email"
            elif delivery == DeliveryStatus.SENT:
                payslip.email_sent_at = utc_now()
            db_session.add(payslip)
        db_session.commit()
        db_session.refresh(batch)
        return batch
    return _create

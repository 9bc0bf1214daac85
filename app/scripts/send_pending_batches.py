"""Send every processed batch that has not been distributed yet.

    python -m app.scripts.send_pending_batches [--timeout SECONDS]

Pending batches (ingest finished, never sent) are claimed and sent one after
another through a local job runtime, so the usual chunking, pacing and
per-payslip bookkeeping apply. Prints one line per batch and a summary.
Exits with 1 if any batch could not be queued or its send job did not
complete, 0 otherwise.
"""
from __future__ import annotations

import argparse
import sys
import time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app import database
from app.jobs.queue import PriorityJobQueue
from app.jobs.runtime import JobRuntime
from app.main import build_runtime
from app.models.db.enums import JobState
from app.services.errors import PipelineError
from app.services.notifier import SmtpNotifier
from app.services.payslip_service import PayslipService
from app.utils import get_logger, log_performance

logger = get_logger(__name__)


def send_pending_batches(
    service: PayslipService,
    runtime: JobRuntime,
    *,
    timeout: float | None = None,
    out: Callable[[str], Any] = print,
) -> Dict[str, Any]:
    """Queue and await a send job per pending batch. Returns the run summary."""
    started = time.perf_counter()
    pending: List[Dict[str, Any]] = service.list_pending_batches()
    summary: Dict[str, Any] = {"pending": len(pending), "completed": 0, "errors": 0, "sent": 0, "failed": 0}
    if not pending:
        out("No pending batches found")

    for batch in pending:
        label = f"{batch['uuid']} ({batch['pay_month']}, {batch['payslip_count'] or 0} payslips)"
        try:
            accepted = service.enqueue_send(batch["uuid"])
        except PipelineError as e:
            summary["errors"] += 1
            logger.error("Could not queue pending batch", batch_id=batch["uuid"], error=str(e))
            out(f"{label}: not queued: {e}")
            continue

        status = runtime.wait_for(accepted["job_id"], timeout)
        if status is None or status["state"] != JobState.COMPLETED.value:
            summary["errors"] += 1
            reason = (status or {}).get("failed_reason") or "send job did not finish in time"
            logger.error("Pending batch send failed", batch_id=batch["uuid"], job_id=accepted["job_id"], reason=reason)
            out(f"{label}: failed: {reason}")
            continue

        result = status["result"]
        summary["completed"] += 1
        summary["sent"] += result["success_count"]
        summary["failed"] += result["failure_count"]
        out(
            f"{label}: {result['email_status']} "
            f"(sent {result['success_count']}, failed {result['failure_count']}, skipped {result['skipped_count']})"
        )

    summary["duration_seconds"] = round(time.perf_counter() - started, 2)
    out(
        f"Batches sent: {summary['completed']}/{summary['pending']}, errors: {summary['errors']}; "
        f"payslips sent: {summary['sent']}, failed: {summary['failed']}; took {summary['duration_seconds']}s"
    )
    log_performance("send_pending_batches", summary["duration_seconds"] * 1000, {"batches": summary["pending"]})
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Send all processed payslip batches that have not been sent yet")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for each batch's send job (default: wait until it finishes)",
    )
    return parser


def main(
    argv: Optional[List[str]] = None,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    runtime: Optional[JobRuntime] = None,
) -> int:
    args = build_parser().parse_args(argv)
    # Jobs stay in this process; a Redis lane could hand them to a running server
    own_runtime = runtime is None
    if runtime is None:
        runtime = build_runtime(SmtpNotifier(), queue_factory=PriorityJobQueue)
        runtime.start()

    session = (session_factory or database.SessionLocal)()
    try:
        summary = send_pending_batches(PayslipService(session, runtime), runtime, timeout=args.timeout)
    finally:
        session.close()
        if own_runtime:
            runtime.shutdown(drain=True, timeout=args.timeout)
    return 1 if summary["errors"] else 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

"""Wire the payslip jobs into a JobRuntime."""
from __future__ import annotations

from functools import partial
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.jobs.distribution_job import abandon_distribution, run_distribution
from app.jobs.ingest_job import abandon_ingest, run_ingest
from app.jobs.payloads import INGEST_JOB, SEND_JOB
from app.jobs.runtime import JobRuntime
from app.services.extraction import DocumentSplitter
from app.services.identifier import IdentifierExtractor
from app.services.notifier import Notifier
from app.services.storage import DocumentStorage


def register_payslip_jobs(
    runtime: JobRuntime,
    *,
    session_factory: Callable[[], Session],
    notifier: Notifier,
    storage: DocumentStorage,
    extractor: IdentifierExtractor,
    splitter: Optional[DocumentSplitter] = None,
    ingest_chunk_size: int | None = None,
    send_chunk_size: int | None = None,
    chunk_delay_seconds: float | None = None,
    job_limits: Optional[Dict[str, dict]] = None,
) -> JobRuntime:
    """Register the ingest and send handlers. ``job_limits`` overrides QUEUE_SETTINGS["job_types"] per job name.

    A job dropped at shutdown before it ran fails its batch: an upload batch
    becomes ``failed``, a send batch loses the claim the job was holding.
    """
    limits = job_limits or {}
    runtime.register(
        INGEST_JOB,
        partial(
            run_ingest,
            session_factory=session_factory,
            storage=storage,
            extractor=extractor,
            splitter=splitter,
            chunk_size=ingest_chunk_size,
        ),
        on_abandon=partial(abandon_ingest, session_factory=session_factory),
        **limits.get(INGEST_JOB, {}),
    )
    runtime.register(
        SEND_JOB,
        partial(
            run_distribution,
            session_factory=session_factory,
            notifier=notifier,
            chunk_size=send_chunk_size,
            chunk_delay_seconds=chunk_delay_seconds,
        ),
        on_abandon=partial(abandon_distribution, session_factory=session_factory),
        **limits.get(SEND_JOB, {}),
    )
    return runtime


__all__ = ["register_payslip_jobs"]

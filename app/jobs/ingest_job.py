"""Ingest job: turn one uploaded PDF/ZIP into persisted per-employee payslips.

Single public function ``run_ingest(payload, context, ...)`` that:
1. Marks the batch ``ingesting`` (counters and row errors reset).
2. Splits the upload into candidates (archive order, fallback identifier for
   unreadable documents).
3. Records the candidate count as ``total_files``.
4. Resolves and persists candidates in chunks: each chunk's payslip rows and
   batch counter updates are one transaction, and the chunk's byte buffers are
   released before the next chunk starts.
5. Marks the batch ``processed`` with final counts.

Unresolved candidates are never persisted. They are counted as failed and
described in ``row_errors``. A corrupt upload or any store error marks the
batch ``failed`` and re-raises so the job itself fails (no retry).
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config import INGEST_SETTINGS
from app.jobs.payloads import IngestJobPayload
from app.services.errors import BatchNotFoundError
from app.services.extraction import Candidate, DocumentSplitter, split_upload
from app.services.identifier import IdentifierExtractor
from app.services.record_store import BatchRecordStore, NewPayslip
from app.services.resolver import DirectoryResolver, Recipient, RecipientResolver
from app.services.storage import DocumentStorage
from app.utils import get_logger, log_business_event, log_performance
from app.utils.chunking import drain_chunks, progress_payload, scaled_percentage
from app.utils.time import elapsed_seconds, utc_now

logger = get_logger(__name__)

REASON_NOT_FOUND = "recipient not found"
REASON_DUPLICATE = "duplicate recipient in batch"

_ARCHIVE_SUFFIX = re.compile(r"\.zip$", re.IGNORECASE)


@dataclass(slots=True)
class CandidateOutcome:
    """Result of resolving one candidate. Exactly one of recipient/reason is set."""
    origin: str
    identifier: str
    recipient: Optional[Recipient] = None
    reason: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.recipient is not None

    def row_error(self) -> Dict[str, str]:
        return {"origin": self.origin, "identifier": self.identifier, "reason": self.reason or REASON_NOT_FOUND}


def record_file_name(identifier: str, upload_name: str) -> str:
    """``<identifier>-<upload name>`` with a ``.zip`` upload renamed to ``.pdf``."""
    return f"{identifier}-{_ARCHIVE_SUFFIX.sub('.pdf', upload_name)}"


def resolve_candidate(candidate: Candidate, resolver: RecipientResolver, seen: set[int]) -> CandidateOutcome:
    recipient = resolver.resolve(candidate.identifier)
    if recipient is None:
        return CandidateOutcome(candidate.origin, candidate.identifier, reason=REASON_NOT_FOUND)
    if recipient.id in seen:
        return CandidateOutcome(candidate.origin, candidate.identifier, reason=REASON_DUPLICATE)
    seen.add(recipient.id)
    return CandidateOutcome(candidate.origin, candidate.identifier, recipient=recipient)


def _discard_files(storage: DocumentStorage, locators: List[str], batch_ref: str) -> None:
    for locator in locators:
        try:
            storage.delete(locator)
        except OSError as e:
            logger.warning("Could not remove stored payslip file", batch_id=batch_ref, locator=locator, error=str(e))


def run_ingest(
    payload: IngestJobPayload,
    context: Any,
    *,
    session_factory: Callable[[], Session],
    storage: DocumentStorage,
    extractor: IdentifierExtractor,
    resolver: Optional[RecipientResolver] = None,
    splitter: Optional[DocumentSplitter] = None,
    chunk_size: int | None = None,
) -> Dict[str, Any]:
    chunk_size = int(chunk_size or INGEST_SETTINGS["chunk_size"])
    started = utc_now()
    perf_start = time.perf_counter()
    session = session_factory()
    store = BatchRecordStore(session)
    resolver = resolver or DirectoryResolver(session)
    batch_id = payload.upload_id
    batch_ref: str | None = None

    try:
        batch = store.get_batch(batch_id)
        batch_ref = batch.uuid
        store.mark_ingesting(batch, job_id=context.job_id)
        context.update_progress(progress_payload("parsing", 0, None, 0))

        candidates = split_upload(payload.content, payload.file_name, extractor=extractor, splitter=splitter)
        total = len(candidates)
        store.set_total(batch, total)
        context.update_progress(progress_payload("processing", 0, total, 5, processed_count=0, failed_count=0))
        logger.info("Ingest started", batch_id=batch_ref, total_candidates=total, chunk_size=chunk_size)

        seen: set[int] = set()
        done = 0
        for chunk in drain_chunks(candidates, chunk_size):
            outcomes: List[CandidateOutcome] = [resolve_candidate(c, resolver, seen) for c in chunk]
            new_payslips: List[NewPayslip] = []
            row_errors: List[Dict[str, str]] = []
            try:
                for candidate, outcome in zip(chunk, outcomes):
                    if not outcome.resolved:
                        row_errors.append(outcome.row_error())
                        continue
                    locator = storage.save(candidate.content, f"{candidate.identifier}.pdf", batch_ref)
                    new_payslips.append(NewPayslip(
                        ippis_number=candidate.identifier,
                        employee_id=outcome.recipient.id,  # type: ignore[union-attr]
                        file_name=record_file_name(candidate.identifier, payload.file_name),
                        file_path=locator,
                        content=candidate.content,
                        origin=candidate.origin,
                    ))
                store.write_chunk(batch, new_payslips, failed=len(row_errors), row_errors=row_errors, user_id=payload.user_id)
            except Exception:
                # Rows of this chunk were rolled back; their files go too
                _discard_files(storage, [p.file_path for p in new_payslips], batch_ref)
                raise
            for candidate in chunk:
                candidate.release()
            new_payslips.clear()

            done += len(outcomes)
            context.update_progress(progress_payload(
                "processing",
                done,
                total,
                scaled_percentage(done, total, start=5, end=100),
                processed_count=batch.processed_files,
                failed_count=batch.failed_files,
            ))
            logger.debug("Ingest chunk persisted", batch_id=batch_ref, done=done, total=total)

        store.finish_ingest(batch, user_id=payload.user_id)
        result = {
            "upload_id": batch_id,
            "batch_id": batch_ref,
            "processed_files": batch.processed_files,
            "failed_files": batch.failed_files,
            "total_files": batch.total_files,
            "pay_month": batch.pay_month,
            "processing_time": elapsed_seconds(started),
        }
        context.update_progress(progress_payload(
            "completed",
            total,
            total,
            100,
            processed_count=result["processed_files"],
            failed_count=result["failed_files"],
        ))
        log_business_event(
            "PAYSLIP_BATCH_UPLOADED_COMPLETED",
            {k: v for k, v in result.items() if k != "processing_time"},
            user_id=payload.user_id,
            job_id=context.job_id,
        )
        log_performance("ingest", round((time.perf_counter() - perf_start) * 1000, 2), {"batch_id": batch_ref, "total": total})
        return result
    except BatchNotFoundError:
        raise
    except Exception as e:
        logger.error("Ingest failed", batch_id=batch_ref, error=str(e), error_type=type(e).__name__)
        try:
            store.fail_ingest(batch_id)
        except Exception as mark_error:
            logger.error("Could not mark batch as failed", batch_id=batch_ref, error=str(mark_error))
        log_business_event(
            "PAYSLIP_BATCH_UPLOADED_FAILED",
            {"upload_id": batch_id, "batch_id": batch_ref, "error": str(e)},
            user_id=payload.user_id,
            job_id=context.job_id,
        )
        raise
    finally:
        session.close()


def abandon_ingest(payload: IngestJobPayload, job_id: str, *, session_factory: Callable[[], Session]) -> None:
    """Fail the batch of an upload job that was dequeued but will never run."""
    session = session_factory()
    try:
        BatchRecordStore(session).fail_ingest(payload.upload_id)
        log_business_event(
            "PAYSLIP_BATCH_UPLOADED_FAILED",
            {"upload_id": payload.upload_id, "error": "Upload job abandoned before it ran"},
            user_id=payload.user_id,
            job_id=job_id,
        )
    finally:
        session.close()


__all__ = ["CandidateOutcome", "run_ingest", "abandon_ingest", "resolve_candidate", "record_file_name", "REASON_NOT_FOUND", "REASON_DUPLICATE"]

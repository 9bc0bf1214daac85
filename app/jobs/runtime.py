"""Job runtime: named queue lanes, worker slots, rate limits and job records.

One ``JobRuntime`` is created at application startup and handed to whoever
submits or inspects jobs (FastAPI keeps it on ``app.state``). Each registered
job name gets its own lane, a fixed number of worker threads and a
rolling-window limiter on job starts.

Job records live in process memory. A job moves ``queued -> active ->
completed | failed``; there is no automatic retry, a failed job stays failed
and the caller decides whether to submit again.
"""
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from app.config import QUEUE_SETTINGS
from app.jobs.payloads import QueuedJob, parse_job_payload
from app.jobs.worker import JobWorker, QueueProtocol, create_queue
from app.models.db.enums import JobState
from app.utils import get_logger, job_log_context, log_performance
from app.utils.ratelimiter import RollingWindowRateLimiter
from app.utils.time import utc_now

logger = get_logger(__name__)


@dataclass
class JobRecord:
    id: str
    name: str
    priority: str = "normal"
    state: JobState = JobState.QUEUED
    progress: Any = 0
    result: Optional[dict] = None
    failed_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    done: threading.Event = field(default_factory=threading.Event, repr=False)

    def snapshot(self) -> dict:
        return {
            "job_id": self.id,
            "name": self.name,
            "state": self.state.value,
            "progress": self.progress,
            "result": self.result,
            "failed_reason": self.failed_reason,
            "created_at": self.created_at,
            "processed_at": self.processed_at,
            "finished_at": self.finished_at,
        }


class JobContext:
    """Handle passed to a running job so it can report progress."""

    def __init__(self, record: JobRecord, lock: threading.Lock) -> None:
        self._record = record
        self._lock = lock

    @property
    def job_id(self) -> str:
        return self._record.id

    def update_progress(self, progress: Any) -> None:
        with self._lock:
            self._record.progress = progress


Handler = Callable[[Any, JobContext], dict]


@dataclass
class _Lane:
    name: str
    handler: Handler
    queue: QueueProtocol
    limiter: RollingWindowRateLimiter
    worker: JobWorker
    on_abandon: Optional[Callable[[Any, str], None]] = None


class JobRuntime:
    def __init__(self, *, queue_factory: Callable[[str], QueueProtocol] = create_queue, poll_timeout: float | None = None):
        self._queue_factory = queue_factory
        self._poll_timeout = float(poll_timeout if poll_timeout is not None else QUEUE_SETTINGS.get("poll_timeout", 1.0))
        self._lanes: Dict[str, _Lane] = {}
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()
        self._accepting = True
        self._started = False

    # --------------------------- configuration --------------------------- #
    def register(
        self,
        name: str,
        handler: Handler,
        *,
        concurrency: int | None = None,
        rate_limit: int | None = None,
        window_seconds: float | None = None,
        on_abandon: Optional[Callable[[Any, str], None]] = None,
    ) -> None:
        """Register a handler for a job name. Unset limits come from QUEUE_SETTINGS["job_types"].

        ``on_abandon(payload, job_id)`` is called for a job of this name that
        was taken off the lane but will never run (see ``shutdown``).
        """
        if name in self._lanes:
            raise ValueError(f"Job '{name}' already registered")
        defaults = QUEUE_SETTINGS.get("job_types", {}).get(name, {})
        concurrency = int(concurrency if concurrency is not None else defaults.get("concurrency", 1))
        rate_limit = int(rate_limit if rate_limit is not None else defaults.get("rate_limit", 5))
        window_seconds = float(window_seconds if window_seconds is not None else defaults.get("window_seconds", 60))

        queue = self._queue_factory(name)
        limiter = RollingWindowRateLimiter(rate_limit, window_seconds)
        worker = JobWorker(
            queue,
            self._execute,
            limiter=limiter,
            slots=concurrency,
            poll_timeout=self._poll_timeout,
            discard=self._abandon,
        )
        self._lanes[name] = _Lane(name=name, handler=handler, queue=queue, limiter=limiter, worker=worker, on_abandon=on_abandon)
        logger.info(
            "Job type registered",
            job_name=name,
            concurrency=concurrency,
            rate_limit=rate_limit,
            window_seconds=window_seconds,
        )
        if self._started:
            worker.start()

    def start(self) -> None:
        self._started = True
        for lane in self._lanes.values():
            lane.worker.start()
        logger.info("Job runtime started", lanes=list(self._lanes))

    # ----------------------------- submission ----------------------------- #
    @staticmethod
    def new_job_id() -> str:
        return uuid.uuid4().hex

    def submit(self, payload: Any, *, job_id: str | None = None, priority: str = "normal") -> str:
        """Validate and enqueue a job payload. Returns the job id.

        Raises ``pydantic.ValidationError`` for a malformed payload and
        ``ValueError`` for an unregistered job name or a runtime that no
        longer accepts work.
        """
        payload = parse_job_payload(payload)
        lane = self._lanes.get(payload.job_name)
        if lane is None:
            raise ValueError(f"No handler registered for job '{payload.job_name}'")
        job_id = job_id or self.new_job_id()
        with self._lock:
            if not self._accepting:
                raise ValueError("Job runtime is shutting down")
            if job_id in self._jobs:
                raise ValueError(f"Job '{job_id}' already exists")
            record = JobRecord(id=job_id, name=payload.job_name, priority=priority)
            self._jobs[job_id] = record
        try:
            lane.queue.enqueue(QueuedJob(job_id=job_id, payload=payload, priority=priority), priority=priority)
        except Exception:
            with self._lock:
                self._jobs.pop(job_id, None)
            raise
        logger.info("Job queued", job_id=job_id, job_name=payload.job_name, priority=priority)
        return job_id

    # ----------------------------- execution ----------------------------- #
    def _execute(self, job: QueuedJob) -> None:
        lane = self._lanes[job.name]
        with self._lock:
            record = self._jobs.get(job.job_id)
            if record is None:
                # Restored from a persistent lane after a restart
                record = JobRecord(id=job.job_id, name=job.name, priority=job.priority)
                self._jobs[job.job_id] = record
            record.state = JobState.ACTIVE
            record.processed_at = utc_now()

        with job_log_context(job_id=job.job_id, job_name=job.name):
            self._run_handler(lane, job, record)

    def _run_handler(self, lane: _Lane, job: QueuedJob, record: JobRecord) -> None:
        logger.info("Processing job", job_id=job.job_id, job_name=job.name)
        started = time.perf_counter()
        try:
            result = lane.handler(job.payload, JobContext(record, self._lock))
        except Exception as e:
            with self._lock:
                record.state = JobState.FAILED
                record.failed_reason = f"{type(e).__name__}: {e}"
                record.finished_at = utc_now()
            logger.error("Job failed", job_id=job.job_id, job_name=job.name, error=str(e), exc_info=True)
        else:
            with self._lock:
                record.state = JobState.COMPLETED
                record.result = result
                record.finished_at = utc_now()
            logger.info("Job completed", job_id=job.job_id, job_name=job.name)
        finally:
            log_performance(
                f"job.{job.name}",
                round((time.perf_counter() - started) * 1000, 2),
                {"job_id": job.job_id, "state": record.state.value},
            )
            record.done.set()

    def _abandon(self, job: QueuedJob, reason: str) -> None:
        """Fail a job that left its lane but will never run, and let the lane release what it holds."""
        lane = self._lanes.get(job.name)
        with self._lock:
            record = self._jobs.get(job.job_id)
            if record is None:
                record = JobRecord(id=job.job_id, name=job.name, priority=job.priority)
                self._jobs[job.job_id] = record
            record.state = JobState.FAILED
            record.failed_reason = f"JobAbandoned: {reason}"
            record.finished_at = utc_now()
        logger.warning("Job abandoned before it ran", job_id=job.job_id, job_name=job.name, reason=reason)
        try:
            if lane is not None and lane.on_abandon is not None:
                lane.on_abandon(job.payload, job.job_id)
        except Exception as e:
            logger.error("Abandoned job cleanup failed", job_id=job.job_id, job_name=job.name, error=str(e), exc_info=True)
        finally:
            record.done.set()

    # ----------------------------- inspection ----------------------------- #
    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.get(job_id)

    def status(self, job_id: str) -> Optional[dict]:
        with self._lock:
            record = self._jobs.get(job_id)
            return record.snapshot() if record else None

    def wait_for(self, job_id: str, timeout: float | None = None) -> Optional[dict]:
        """Block until the job finishes (or ``timeout``) and return its status."""
        record = self.get_job(job_id)
        if record is None:
            return None
        record.done.wait(timeout)
        return self.status(job_id)

    def live_job_ids(self) -> set[str]:
        """Ids of jobs that may still run: unfinished records plus anything waiting in a lane."""
        with self._lock:
            live = {job_id for job_id, record in self._jobs.items() if record.state in (JobState.QUEUED, JobState.ACTIVE)}
        for lane in self._lanes.values():
            live.update(lane.queue.pending_job_ids())
        return live

    @property
    def accepting(self) -> bool:
        return self._accepting

    def snapshot(self) -> dict:
        with self._lock:
            states: Dict[str, int] = {}
            for record in self._jobs.values():
                states[record.state.value] = states.get(record.state.value, 0) + 1
        return {
            "accepting": self._accepting,
            "jobs": states,
            "lanes": {
                name: {"queue": lane.queue.snapshot(), "rate_limit": lane.limiter.snapshot(), "slots": lane.worker.slots}
                for name, lane in self._lanes.items()
            },
        }

    # ------------------------------ shutdown ------------------------------ #
    def shutdown(self, *, drain: bool = True, timeout: float | None = None) -> bool:
        """Stop accepting jobs and stop the workers.

        With ``drain`` queued and running jobs are allowed to finish first.
        Jobs still waiting in an in-memory lane afterwards (no drain, or the
        drain timed out) are abandoned: their records fail and the lane's
        ``on_abandon`` runs. Jobs held in Redis stay queued for the next start.
        Returns True when every worker thread exited within ``timeout``.
        """
        with self._lock:
            self._accepting = False
        for lane in self._lanes.values():
            lane.queue.shutdown()
            if drain:
                lane.worker.drain()
            else:
                lane.worker.stop()
        deadline = None if timeout is None else time.monotonic() + timeout
        stopped = True
        for lane in self._lanes.values():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            stopped = lane.worker.join(remaining) and stopped

        if not drain or not stopped:
            for lane in self._lanes.values():
                lane.worker.stop()
                for job in lane.queue.take_unpersisted():
                    if isinstance(job, QueuedJob):
                        self._abandon(job, "runtime shut down before the job started")
        logger.info("Job runtime stopped", drained=drain, clean=stopped)
        return stopped


__all__ = ["JobRuntime", "JobRecord", "JobContext"]

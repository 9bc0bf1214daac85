"""Background worker slots for one job lane."""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional, Protocol, Union

from app.config import QUEUE_SETTINGS
from app.jobs.payloads import QueuedJob
from app.jobs.queue import PriorityJobQueue
from app.jobs.redis_queue import RedisQueue
from app.utils import get_logger
from app.utils.ratelimiter import RollingWindowRateLimiter

logger = get_logger(__name__)


class QueueProtocol(Protocol):
    name: str

    def enqueue(self, job: Any, *, priority: str = "normal") -> Any: ...
    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Any: ...
    def shutdown(self) -> None: ...
    def depth(self) -> int: ...
    def snapshot(self) -> dict: ...
    def take_unpersisted(self) -> list: ...
    def pending_job_ids(self) -> list[str]: ...


class JobWorker:
    """Fixed pool of threads pulling jobs from one lane.

    Each slot blocks on the queue, then on the lane's rate limiter, then hands
    the job to ``execute``. ``execute`` owns error handling; anything that
    escapes it is logged and the slot keeps running. A job taken off the queue
    that a stop request keeps from starting goes to ``discard``.
    """

    def __init__(
        self,
        queue: QueueProtocol,
        execute: Callable[[QueuedJob], None],
        *,
        limiter: RollingWindowRateLimiter,
        slots: int = 1,
        poll_timeout: float = 1.0,
        discard: Optional[Callable[[QueuedJob, str], None]] = None,
    ):
        if slots < 1:
            raise ValueError("slots must be >= 1")
        self.queue = queue
        self.execute = execute
        self.limiter = limiter
        self.slots = slots
        self.poll_timeout = poll_timeout
        self.discard = discard
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._draining = threading.Event()

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):  # pragma: no cover
            return
        self._threads = [
            threading.Thread(target=self._loop, name=f"{self.queue.name}-worker-{i}", daemon=True)
            for i in range(self.slots)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Job worker started", queue=self.queue.name, slots=self.slots)

    def drain(self) -> None:
        """Finish queued work, then exit once the lane is empty."""
        self._draining.set()
        logger.info("Job worker drain requested", queue=self.queue.name)

    def stop(self) -> None:
        self._stop_event.set()
        logger.info("Job worker stop requested", queue=self.queue.name)

    def join(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(t.is_alive() for t in self._threads)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.queue.dequeue(timeout=self.poll_timeout)
                if job is None:
                    if self._draining.is_set():
                        break
                    continue
                if not isinstance(job, QueuedJob):
                    logger.warning("Skipping unknown job type", queue=self.queue.name, job_type=type(job).__name__)
                    continue
                if self._stop_event.is_set() or not self.limiter.acquire(stop_event=self._stop_event):
                    logger.warning("Worker stopped before job could start", queue=self.queue.name, job_id=job.job_id)
                    self._discard(job, "worker stopped before the job started")
                    break
                self.execute(job)
            except Exception as e:  # pragma: no cover - execute handles job errors
                logger.error("Worker loop error", queue=self.queue.name, error=str(e), exc_info=True)
                time.sleep(1)

    def _discard(self, job: QueuedJob, reason: str) -> None:
        if self.discard is None:
            return
        try:
            self.discard(job, reason)
        except Exception as e:
            logger.error("Discard callback failed", queue=self.queue.name, job_id=job.job_id, error=str(e), exc_info=True)


def create_queue(name: str = "default") -> Union[PriorityJobQueue, RedisQueue]:
    """Create the queue for one lane based on configuration."""
    use_redis = QUEUE_SETTINGS.get("use_redis", False)

    if use_redis:
        try:
            redis_queue = RedisQueue(name)
            if redis_queue.health_check():
                logger.info("Using Redis-backed queue", queue=name)
                return redis_queue
            logger.warning("REDIS CONNECTION FAILED: Redis server is not reachable. Using in-memory queue.", queue=name)
        except Exception as e:
            logger.warning("Error initializing Redis queue, falling back to in-memory queue", queue=name, error=str(e))

    logger.info("Using in-memory queue", queue=name)
    return PriorityJobQueue(name)


__all__ = ["JobWorker", "QueueProtocol", "create_queue"]

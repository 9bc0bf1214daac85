"""In-memory priority queue for one job lane (single-process).

Features:
- Priority ordering (lower numeric priority value = higher priority).
- FIFO within a priority (monotonic sequence number breaks ties).
- Capacity limits / backpressure via QUEUE_SETTINGS.
- Thread-safe with condition variable; blocking dequeue with timeout.
- Shutdown wakes every waiting worker; queued items can still be drained.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
import threading
import time
import heapq

from app.config import QUEUE_SETTINGS
from app.utils import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class QueueItem:
    job: Any
    priority_label: str
    priority_value: int
    enqueued_at: float
    seq: int


class PriorityJobQueue:
    def __init__(self, name: str = "default") -> None:
        priorities_cfg = QUEUE_SETTINGS.get("priorities", {})
        self.name = name
        self._priority_map: dict[str, int] = priorities_cfg if isinstance(priorities_cfg, dict) else {"normal": 5}
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))
        self._max_in_memory = int(QUEUE_SETTINGS.get("max_in_memory", 5000))
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)
        self._heap: list[tuple[int, int, QueueItem]] = []  # (priority_value, seq, item)
        self._seq_counter = 0
        self._shutdown = False

    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    # ----------------------------- public API ----------------------------- #
    def enqueue(self, job: Any, *, priority: str = "normal") -> QueueItem:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if len(self._heap) >= self._max_in_memory:
                raise OverflowError("Queue capacity exceeded")
            if priority not in self._priority_map:
                raise ValueError(f"Unknown priority '{priority}'")
            item = QueueItem(
                job=job,
                priority_label=priority,
                priority_value=self._priority_map[priority],
                enqueued_at=time.time(),
                seq=self._next_seq(),
            )
            heapq.heappush(self._heap, (item.priority_value, item.seq, item))
            if len(self._heap) >= self._warn_depth:
                logger.warning("Queue depth warning", queue=self.name, depth=len(self._heap))
            self._cv.notify()
            return item

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Any:
        """Pop next job. Returns None if non-blocking and empty, on timeout, or once shut down and empty."""
        end_time = None if timeout is None else time.time() + timeout
        with self._lock:
            while True:
                if self._heap:
                    _, _, item = heapq.heappop(self._heap)
                    return item.job
                if self._shutdown or not block:
                    return None
                remaining = None if end_time is None else end_time - time.time()
                if remaining is not None and remaining <= 0:
                    return None
                self._cv.wait(timeout=remaining)

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._cv.notify_all()

    def purge(self) -> None:
        """Remove all queued jobs. Workers already running a job are unaffected."""
        with self._lock:
            self._heap.clear()
            self._cv.notify_all()

    def take_unpersisted(self) -> list:
        """Remove and return every queued job; nothing in this queue survives a restart."""
        with self._lock:
            jobs = [heapq.heappop(self._heap)[2].job for _ in range(len(self._heap))]
            self._cv.notify_all()
            return jobs

    # ----------------------------- inspection ----------------------------- #
    def depth(self) -> int:
        with self._lock:
            return len(self._heap)

    def pending_job_ids(self) -> list[str]:
        with self._lock:
            ids = [getattr(item.job, "job_id", None) for _, _, item in sorted(self._heap)]
        return [job_id for job_id in ids if job_id]

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "queue": self.name,
                "depth": len(self._heap),
                "shutdown": self._shutdown,
            }


__all__ = ["PriorityJobQueue", "QueueItem"]

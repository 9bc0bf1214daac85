import threading
import time

import pytest

from app.jobs.payloads import DistributionJobPayload, QueuedJob
from app.jobs.queue import PriorityJobQueue


def _job(job_id: str, batch_id: int = 1) -> QueuedJob:
    return QueuedJob(job_id=job_id, payload=DistributionJobPayload(batch_id=batch_id, batch_uuid=f"b-{batch_id}"))


def test_priority_queue_ordering():
    q = PriorityJobQueue("payslip-send")
    q.enqueue(_job("low"), priority="low")
    q.enqueue(_job("high"), priority="high")
    q.enqueue(_job("normal-1"), priority="normal")
    q.enqueue(_job("normal-2"), priority="normal")
    snap = q.snapshot()
    assert snap["depth"] == 4
    assert snap["queue"] == "payslip-send"
    order = [q.dequeue(block=False).job_id for _ in range(4)]
    assert order == ["high", "normal-1", "normal-2", "low"]
    assert q.dequeue(block=False) is None


def test_unknown_priority_rejected():
    q = PriorityJobQueue()
    with pytest.raises(ValueError):
        q.enqueue(_job("x"), priority="urgent")


def test_enqueue_after_shutdown_rejected_but_queued_jobs_drain():
    q = PriorityJobQueue()
    q.enqueue(_job("a"))
    q.shutdown()
    with pytest.raises(RuntimeError):
        q.enqueue(_job("b"))
    assert q.dequeue(timeout=0.1).job_id == "a"
    # shut down and empty: returns immediately instead of waiting
    started = time.monotonic()
    assert q.dequeue(timeout=5) is None
    assert time.monotonic() - started < 1


def test_capacity_limit(monkeypatch):
    from app.config import QUEUE_SETTINGS
    monkeypatch.setitem(QUEUE_SETTINGS, "max_in_memory", 2)
    q = PriorityJobQueue()
    q.enqueue(_job("a"))
    q.enqueue(_job("b"))
    with pytest.raises(OverflowError):
        q.enqueue(_job("c"))


def test_blocking_dequeue_wakes_on_enqueue():
    q = PriorityJobQueue()
    received = []

    def consumer():
        received.append(q.dequeue(timeout=2))

    thread = threading.Thread(target=consumer)
    thread.start()
    time.sleep(0.05)
    q.enqueue(_job("late"))
    thread.join(2)
    assert received and received[0].job_id == "late"


def test_purge_empties_queue():
    q = PriorityJobQueue()
    q.enqueue(_job("a"))
    q.enqueue(_job("b"))
    q.purge()
    assert q.depth() == 0


def test_pending_ids_and_take_unpersisted_follow_priority_order():
    q = PriorityJobQueue("payslip-send")
    q.enqueue(_job("low"), priority="low")
    q.enqueue(_job("high"), priority="high")
    q.enqueue(_job("normal"))
    assert q.pending_job_ids() == ["high", "normal", "low"]

    taken = q.take_unpersisted()
    assert [job.job_id for job in taken] == ["high", "normal", "low"]
    assert q.depth() == 0
    assert q.pending_job_ids() == []

"""Tests for the Redis-backed lane queue using a mocked Redis client.

The mock keeps one Python list per key and implements the handful of list
commands RedisQueue relies on (RPUSH, LPOP, BLPOP, LLEN, DEL, PING).
"""
import json
from unittest.mock import MagicMock, patch

import pytest
import redis

from app.config import QUEUE_SETTINGS
from app.jobs.payloads import DistributionJobPayload, IngestJobPayload, QueuedJob
from app.jobs.queue import PriorityJobQueue
from app.jobs.redis_queue import RedisQueue
from app.jobs.worker import create_queue


@pytest.fixture
def mock_redis():
    with patch("redis.from_url") as mock_from_url:
        mock_client = MagicMock()
        mock_client.ping.return_value = True
        lists: dict[str, list] = {}

        def rpush(key, value):
            lists.setdefault(key, []).append(value.encode("utf-8") if isinstance(value, str) else value)
            return len(lists[key])

        def lpop(key):
            items = lists.get(key) or []
            return items.pop(0) if items else None

        def blpop(keys, timeout=0):
            for key in keys:
                items = lists.get(key) or []
                if items:
                    return (key.encode("utf-8"), items.pop(0))
            return None

        def llen(key):
            return len(lists.get(key) or [])

        def lrange(key, start, end):
            items = lists.get(key) or []
            return list(items[start:] if end == -1 else items[start:end + 1])

        def delete(*keys):
            for key in keys:
                lists.pop(key, None)
            return len(keys)

        mock_client.rpush.side_effect = rpush
        mock_client.lpop.side_effect = lpop
        mock_client.blpop.side_effect = blpop
        mock_client.llen.side_effect = llen
        mock_client.lrange.side_effect = lrange
        mock_client.delete.side_effect = delete
        mock_client.lists = lists
        mock_from_url.return_value = mock_client
        yield mock_client


def _send_job(job_id: str = "job-1") -> QueuedJob:
    return QueuedJob(job_id=job_id, payload=DistributionJobPayload(batch_id=7, batch_uuid="abc", user_id=3))


def test_enqueue_serializes_envelope_under_lane_key(mock_redis):
    queue = RedisQueue("payslip-send")
    queue.enqueue(_send_job(), priority="high")
    key = f"{QUEUE_SETTINGS['redis_key_prefix']}:payslip-send:ready"
    stored = mock_redis.lists[key]
    assert len(stored) == 1
    envelope = json.loads(stored[0])
    assert envelope["job_id"] == "job-1"
    assert envelope["priority"] == "high"
    assert json.loads(envelope["payload"])["job_name"] == "payslip-send"


def test_round_trip_keeps_binary_upload_content(mock_redis):
    queue = RedisQueue("payslip-upload")
    content = b"%PDF-1.4\x00\xff binary"
    job = QueuedJob(
        job_id="up-1",
        payload=IngestJobPayload(upload_id=1, content=content, file_name="jan.pdf", pay_month="2025-01"),
    )
    queue.enqueue(job)
    restored = queue.dequeue(timeout=1)
    assert isinstance(restored, QueuedJob)
    assert restored.job_id == "up-1"
    assert isinstance(restored.payload, IngestJobPayload)
    assert restored.payload.content == content


def test_dequeue_is_fifo(mock_redis):
    queue = RedisQueue("payslip-send")
    for i in range(3):
        queue.enqueue(_send_job(f"job-{i}"))
    assert queue.depth() == 3
    assert [queue.dequeue(block=False).job_id for _ in range(3)] == ["job-0", "job-1", "job-2"]
    assert queue.dequeue(block=False) is None


def test_unknown_priority_rejected(mock_redis):
    queue = RedisQueue("payslip-send")
    with pytest.raises(ValueError):
        queue.enqueue(_send_job(), priority="urgent")


def test_malformed_envelope_is_discarded(mock_redis):
    queue = RedisQueue("payslip-send")
    mock_redis.lists[queue._ready_key] = [b"not json"]
    assert queue.dequeue(block=False) is None
    assert queue.depth() == 0


def test_fallback_when_redis_unavailable():
    with patch("redis.from_url") as mock_from_url:
        mock_client = MagicMock()
        mock_client.ping.side_effect = redis.ConnectionError("down")
        mock_from_url.return_value = mock_client
        queue = RedisQueue("payslip-send")
        assert queue.health_check() is False
        queue.enqueue(_send_job())
        assert queue.snapshot()["redis_active"] is False
        assert queue.depth() == 1
        assert queue.dequeue(block=False).job_id == "job-1"


def test_purge_clears_lane(mock_redis):
    queue = RedisQueue("payslip-send")
    queue.enqueue(_send_job("a"))
    queue.enqueue(_send_job("b"))
    queue.purge()
    assert queue.depth() == 0


def test_snapshot_reports_redis_state(mock_redis):
    queue = RedisQueue("payslip-send")
    queue.enqueue(_send_job())
    snap = queue.snapshot()
    assert snap["redis_active"] is True
    assert snap["depth"] == 1


def test_create_queue_prefers_redis_when_enabled(mock_redis, monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", True)
    assert isinstance(create_queue("payslip-send"), RedisQueue)


def test_create_queue_defaults_to_memory(monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", False)
    assert isinstance(create_queue("payslip-send"), PriorityJobQueue)


def test_pending_job_ids_lists_redis_jobs_without_consuming_them(mock_redis):
    queue = RedisQueue("payslip-send")
    queue.enqueue(_send_job("a"))
    queue.enqueue(_send_job("b"))
    mock_redis.lists[queue._ready_key].append(b"not json")
    assert queue.pending_job_ids() == ["a", "b"]
    assert queue.depth() == 3


def test_only_fallback_jobs_are_unpersisted(mock_redis):
    queue = RedisQueue("payslip-send")
    queue.enqueue(_send_job("in-redis"))
    queue._fallback_queue.enqueue(_send_job("in-memory"))

    assert queue.pending_job_ids() == ["in-memory", "in-redis"]
    assert [job.job_id for job in queue.take_unpersisted()] == ["in-memory"]
    assert queue.pending_job_ids() == ["in-redis"]

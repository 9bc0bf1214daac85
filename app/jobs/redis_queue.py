"""Redis-backed job queue for one lane.

Features:
- Queued jobs survive application restarts.
- FIFO per lane (RPUSH on enqueue, BLPOP on dequeue). Priority labels are
  validated and carried in the envelope but not reordered in Redis.
- Thread-safe operations.
- Fallback to the in-memory queue if Redis is unavailable.

Data structures in Redis:
 1. List: <prefix>:<lane>:ready - serialized job envelopes waiting for a worker

Envelope format (JSON):
    {"job_id": str, "priority": str, "enqueued_at": float, "payload": str}
where ``payload`` is the job payload's own JSON (bytes fields base64 encoded).

Redis health check is performed before operations with fallback to in-memory queue.
"""
from __future__ import annotations

import json
import time
import threading
from typing import Any, Optional
import redis

from app.config import QUEUE_SETTINGS
from app.jobs.payloads import QueuedJob, dump_job_payload, load_job_payload
from app.jobs.queue import PriorityJobQueue, QueueItem
from app.utils import get_logger

logger = get_logger(__name__)


class RedisQueue:
    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._redis_url: str = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        prefix = str(QUEUE_SETTINGS.get("redis_key_prefix", "payslip"))
        self._ready_key: str = f"{prefix}:{name}:ready"
        self._health_check_timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))
        priorities_cfg = QUEUE_SETTINGS.get("priorities", {})
        self._priority_map: dict[str, int] = priorities_cfg if isinstance(priorities_cfg, dict) else {"normal": 5}

        # In-memory fallback queue
        self._fallback_queue = PriorityJobQueue(name)

        self._redis_client: Optional[redis.Redis] = None
        self._lock = threading.RLock()
        self._is_redis_active = False
        self._shutdown = False
        self._init_redis_client()

    def _init_redis_client(self) -> None:
        """Initialize Redis client and test connection."""
        try:
            self._redis_client = redis.from_url(self._redis_url, socket_connect_timeout=self._health_check_timeout)
            self._redis_client.ping()
            self._is_redis_active = True
            logger.info("Connected to Redis successfully", url=self._redis_url, queue=self.name)
        except (redis.RedisError, ConnectionError) as e:
            self._is_redis_active = False
            self._redis_client = None
            logger.warning("Failed to connect to Redis, using in-memory fallback queue", queue=self.name, error=str(e))

    def health_check(self) -> bool:
        """Check if Redis is available and update status accordingly."""
        with self._lock:
            if self._redis_client is None:
                self._init_redis_client()
                return self._is_redis_active
            try:
                self._redis_client.ping()
                if not self._is_redis_active:
                    logger.info("Redis connection restored", queue=self.name)
                self._is_redis_active = True
                return True
            except (redis.RedisError, ConnectionError) as e:
                if self._is_redis_active:
                    logger.warning("Redis connection lost, using in-memory fallback queue", queue=self.name, error=str(e))
                self._is_redis_active = False
                return False

    def _serialize_job(self, item: QueueItem) -> str:
        job: QueuedJob = item.job
        return json.dumps({
            "job_id": job.job_id,
            "priority": item.priority_label,
            "enqueued_at": item.enqueued_at,
            "payload": dump_job_payload(job.payload),
        })

    def _deserialize_job(self, serialized_job: str | bytes) -> QueuedJob:
        if isinstance(serialized_job, bytes):
            serialized_job = serialized_job.decode("utf-8")
        data = json.loads(serialized_job)
        return QueuedJob(
            job_id=data["job_id"],
            payload=load_job_payload(data["payload"]),
            priority=data.get("priority", "normal"),
        )

    def enqueue(self, job: QueuedJob, *, priority: str = "normal") -> QueueItem:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if priority not in self._priority_map:
                raise ValueError(f"Unknown priority '{priority}'")

            if not self.health_check() or self._redis_client is None:
                logger.warning("Redis unavailable, falling back to in-memory queue", queue=self.name)
                return self._fallback_queue.enqueue(job, priority=priority)

            item = QueueItem(
                job=job,
                priority_label=priority,
                priority_value=self._priority_map[priority],
                enqueued_at=time.time(),
                seq=int(time.time() * 1000),
            )
            try:
                self._redis_client.rpush(self._ready_key, self._serialize_job(item))
                queue_depth = self.depth()
                if queue_depth >= self._warn_depth:
                    logger.warning("Queue depth warning", queue=self.name, depth=queue_depth)
                return item
            except redis.RedisError as e:
                logger.error("Redis error during enqueue", queue=self.name, error=str(e))
                self._is_redis_active = False
                return self._fallback_queue.enqueue(job, priority=priority)

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Any:
        """Dequeue the next job; jobs stranded in the fallback queue are served first."""
        fallback_job = self._fallback_queue.dequeue(block=False)
        if fallback_job is not None:
            return fallback_job

        with self._lock:
            if not self.health_check() or self._redis_client is None:
                client = None
            else:
                client = self._redis_client
        if client is None:
            return self._fallback_queue.dequeue(block=block, timeout=timeout)

        try:
            if block:
                # BLPOP timeout is whole seconds; 0 would block forever
                wait = 1 if timeout is None else max(1, int(round(timeout)))
                result = client.blpop([self._ready_key], timeout=wait)
                if result is None:
                    return None
                _, value = result
            else:
                value = client.lpop(self._ready_key)
                if value is None:
                    return None
            return self._deserialize_job(value)
        except redis.RedisError as e:
            logger.error("Redis error during dequeue", queue=self.name, error=str(e))
            self._is_redis_active = False
            return self._fallback_queue.dequeue(block=block, timeout=timeout)
        except (ValueError, KeyError) as e:
            # Malformed envelope; drop it rather than wedge the lane
            logger.error("Discarding unreadable job envelope", queue=self.name, error=str(e))
            return None

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._fallback_queue.shutdown()

    def purge(self) -> None:
        """Remove all queued jobs (both Redis and fallback)."""
        with self._lock:
            self._fallback_queue.purge()
            if not self.health_check() or self._redis_client is None:
                return
            try:
                self._redis_client.delete(self._ready_key)
                logger.info("Redis queue purged", queue=self.name)
            except redis.RedisError as e:
                logger.error("Error purging Redis queue", queue=self.name, error=str(e))
                self._is_redis_active = False

    def take_unpersisted(self) -> list:
        """Jobs held only by the in-memory fallback; jobs in Redis survive a restart and stay put."""
        return self._fallback_queue.take_unpersisted()

    def pending_job_ids(self) -> list[str]:
        ids = self._fallback_queue.pending_job_ids()
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                return ids
            try:
                values = self._redis_client.lrange(self._ready_key, 0, -1)
            except redis.RedisError as e:
                logger.error("Error listing queued jobs", queue=self.name, error=str(e))
                self._is_redis_active = False
                return ids
        for value in values:
            try:
                if isinstance(value, bytes):
                    value = value.decode("utf-8")
                ids.append(json.loads(value)["job_id"])
            except (ValueError, KeyError, TypeError):
                continue
        return ids

    def _safe_int_conversion(self, value: Any) -> int:
        if value is None:
            return 0
        try:
            if isinstance(value, bytes):
                value = value.decode("utf-8")
            return int(value)
        except (ValueError, TypeError) as e:
            logger.warning("Failed to convert Redis response to int", value_type=type(value).__name__, error=str(e))
            return 0

    def depth(self) -> int:
        with self._lock:
            fallback_depth = self._fallback_queue.depth()
            if not self.health_check() or self._redis_client is None:
                return fallback_depth
            try:
                return self._safe_int_conversion(self._redis_client.llen(self._ready_key)) + fallback_depth
            except redis.RedisError as e:
                logger.error("Error getting queue depth", queue=self.name, error=str(e))
                self._is_redis_active = False
                return fallback_depth

    def __len__(self) -> int:
        return self.depth()

    def snapshot(self) -> dict:
        with self._lock:
            snapshot = self._fallback_queue.snapshot()
            snapshot["redis_active"] = False
            if not self.health_check() or self._redis_client is None:
                return snapshot
            try:
                ready = self._safe_int_conversion(self._redis_client.llen(self._ready_key))
            except redis.RedisError as e:
                logger.error("Error getting queue snapshot", queue=self.name, error=str(e))
                self._is_redis_active = False
                return snapshot
            snapshot.update({
                "depth": ready + snapshot["depth"],
                "redis_active": True,
                "redis_url": self._redis_url,
                "shutdown": self._shutdown,
            })
            return snapshot


__all__ = ["RedisQueue"]

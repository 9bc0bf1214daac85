"""Central Enum definitions for pipeline lifecycle states.

These replace scattered string literals to ensure consistency across
DB models, schemas, job handlers and the queue runtime.
"""
from __future__ import annotations
import enum


class IngestStatus(str, enum.Enum):
    CREATED = "created"
    INGESTING = "ingesting"
    PROCESSED = "processed"  # ready to send
    FAILED = "failed"


class DistributionStatus(str, enum.Enum):
    PENDING = "pending"
    DISTRIBUTING = "distributing"
    COMPLETED = "completed"      # every attempted payslip delivered
    PARTIAL = "partial"
    ALL_FAILED = "all_failed"
    FAILED = "failed"            # orchestration error, not per-payslip failures


class DeliveryStatus(str, enum.Enum):
    NOT_SENT = "not_sent"
    SENT = "sent"
    SEND_FAILED = "send_failed"


class JobState(str, enum.Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Lifecycle states a new send request may start from.
SENDABLE_DISTRIBUTION_STATES = frozenset({
    DistributionStatus.PENDING,
    DistributionStatus.COMPLETED,
    DistributionStatus.PARTIAL,
    DistributionStatus.ALL_FAILED,
    DistributionStatus.FAILED,
})

__all__ = [
    "IngestStatus",
    "DistributionStatus",
    "DeliveryStatus",
    "JobState",
    "SENDABLE_DISTRIBUTION_STATES",
]

"""Job payload schemas.

Each job name is one variant of a tagged union discriminated by ``job_name``.
Payloads are validated when they are submitted, not when a worker picks them
up, so a malformed submission fails synchronously at the caller.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.config import PAY_MONTH_PATTERN

INGEST_JOB = "payslip-upload"
SEND_JOB = "payslip-send"


class IngestJobPayload(BaseModel):
    # Raw PDF/ZIP bytes travel base64-encoded when serialized (Redis lane)
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    job_name: Literal["payslip-upload"] = INGEST_JOB
    upload_id: int = Field(gt=0)
    content: bytes = Field(min_length=1, repr=False)
    file_name: str = Field(min_length=1)
    pay_month: str = Field(pattern=PAY_MONTH_PATTERN)
    user_id: Optional[int] = None


class DistributionJobPayload(BaseModel):
    job_name: Literal["payslip-send"] = SEND_JOB
    batch_id: int = Field(gt=0)
    batch_uuid: str = Field(min_length=1)
    user_id: Optional[int] = None


JobPayload = Annotated[Union[IngestJobPayload, DistributionJobPayload], Field(discriminator="job_name")]

_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(JobPayload)


def parse_job_payload(data: Any) -> Union[IngestJobPayload, DistributionJobPayload]:
    if isinstance(data, (IngestJobPayload, DistributionJobPayload)):
        return data
    return _PAYLOAD_ADAPTER.validate_python(data)


def dump_job_payload(payload: Union[IngestJobPayload, DistributionJobPayload]) -> str:
    return payload.model_dump_json()


def load_job_payload(raw: str | bytes) -> Union[IngestJobPayload, DistributionJobPayload]:
    return _PAYLOAD_ADAPTER.validate_json(raw)


@dataclass(slots=True)
class QueuedJob:
    """Envelope placed on a queue lane."""
    job_id: str
    payload: Union[IngestJobPayload, DistributionJobPayload]
    priority: str = "normal"

    @property
    def name(self) -> str:
        return self.payload.job_name


__all__ = [
    "INGEST_JOB",
    "SEND_JOB",
    "IngestJobPayload",
    "DistributionJobPayload",
    "JobPayload",
    "QueuedJob",
    "parse_job_payload",
    "dump_job_payload",
    "load_job_payload",
]

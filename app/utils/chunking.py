"""Chunked iteration and progress helpers shared by the ingest and send jobs.

Two flavours of chunking:

* ``drain_chunks`` consumes its source list from the front. Each yielded chunk
  is removed from the source before it is handed out and cleared once the
  caller asks for the next one, so large byte buffers become unreachable at
  every chunk boundary instead of living until the whole run completes.
* ``iter_chunks`` is the non-destructive variant for sequences that are cheap
  to keep (record ids, ORM rows whose payload is loaded lazily).
"""
from __future__ import annotations

from typing import Any, Iterator, Sequence, TypeVar

T = TypeVar("T")


def _check_size(size: int) -> None:
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")


def drain_chunks(items: list[T], size: int) -> Iterator[list[T]]:
    _check_size(size)
    while items:
        chunk = items[:size]
        del items[:size]
        yield chunk
        chunk.clear()


def iter_chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    _check_size(size)
    for start in range(0, len(items), size):
        yield items[start:start + size]


def scaled_percentage(done: int, total: int, *, start: int = 0, end: int = 100) -> int:
    """Map ``done/total`` onto the ``[start, end]`` band of a progress bar."""
    if total <= 0:
        return end
    ratio = min(max(done / total, 0.0), 1.0)
    return min(end, start + round(ratio * (end - start)))


def progress_payload(stage: str, processed: int, total: int | None, percentage: int, **counts: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "stage": stage,
        "processed": processed,
        "total": total,
        "percentage": percentage,
    }
    payload.update(counts)
    return payload


__all__ = ["drain_chunks", "iter_chunks", "scaled_percentage", "progress_payload"]

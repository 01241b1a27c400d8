from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from dispatch.errors import ApiError
from dispatch.record_parser import CandidateRecord


@dataclass(frozen=True)
class Assignment:
    record: CandidateRecord
    worker: dict[str, Any]


def _no_workers() -> ApiError:
    return ApiError(
        code="WORKERS_UNAVAILABLE",
        message="no active workers available for assignment",
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def pick_worker(index: int, workers: Sequence[dict[str, Any]]) -> dict[str, Any]:
    """Worker at position ``index mod len(workers)`` of the active snapshot."""
    if not workers:
        raise _no_workers()
    return workers[index % len(workers)]


def distribute(
    records: Sequence[CandidateRecord],
    workers: Sequence[dict[str, Any]],
) -> list[Assignment]:
    if not workers:
        raise _no_workers()
    return [Assignment(record=record, worker=pick_worker(i, workers)) for i, record in enumerate(records)]

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from dispatch.distributor import distribute
from dispatch.errors import ApiError
from dispatch.record_parser import ParseResult


def worker_summary(worker: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": worker["workerId"],
        "name": worker.get("name", ""),
        "contactInfo": worker.get("contactInfo", ""),
    }


@dataclass
class Draft:
    tasks: list[dict[str, Any]] = field(default_factory=list)
    total_candidates: int = 0
    total_accepted: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCandidates": self.total_candidates,
            "totalAccepted": self.total_accepted,
            "draft": [dict(task) for task in self.tasks],
        }


def assemble_draft(parsed: ParseResult, workers: Sequence[dict[str, Any]]) -> Draft:
    """Pair parsed records with the active worker snapshot; nothing is persisted."""
    if not parsed.records:
        raise ApiError(
            code="UPLOAD_EMPTY",
            message="upload contained no rows with both a name and a phone",
            error_class="validation",
            retryable=False,
            http_status=400,
            details={"totalCandidates": parsed.total_rows},
        )
    draft = Draft(total_candidates=parsed.total_rows, total_accepted=len(parsed.records))
    for assignment in distribute(parsed.records, workers):
        draft.tasks.append(
            {
                **assignment.record.to_dict(),
                "proposedWorkerId": assignment.worker["workerId"],
                "proposedWorkerSummary": worker_summary(assignment.worker),
            }
        )
    return draft

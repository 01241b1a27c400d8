from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class WorkerSummary(_WireModel):
    id: str | None = None
    name: str | None = None
    contact_info: str | None = Field(default=None, alias="contactInfo")


class DraftEntry(_WireModel):
    contact_name: str | None = Field(default=None, alias="contactName")
    phone: str | None = None
    notes: str | None = None
    proposed_worker_id: str | None = Field(default=None, alias="proposedWorkerId")
    proposed_worker_summary: WorkerSummary | None = Field(default=None, alias="proposedWorkerSummary")


class ConfirmDraftRequest(BaseModel):
    tasks: list[DraftEntry] = Field(default_factory=list)


class StatusUpdateRequest(BaseModel):
    status: Any = None


class ReassignRequest(_WireModel):
    new_worker_id: str = Field(alias="newWorkerId", min_length=1)


class FinalizeRequest(_WireModel):
    worker_id: str | None = Field(default=None, alias="workerId")


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }

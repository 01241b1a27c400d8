from __future__ import annotations

from fastapi import APIRouter, Body, Query, Request

from dispatch.lifecycle import ROLE_WORKER, forbidden, require_admin
from dispatch.routes._deps import caller_from_request, trace_id_from_request
from dispatch.schemas import FinalizeRequest, ReassignRequest, StatusUpdateRequest, success_envelope
from dispatch.store import store

router = APIRouter(prefix="/api/v1", tags=["tasks"])


@router.get("/tasks")
def list_tasks(
    request: Request,
    worker_id: str | None = Query(default=None, alias="workerId"),
    status: str | None = Query(default=None),
    finalized: bool | None = Query(default=None),
):
    require_admin(caller_from_request(request), action="list all tasks")
    items = store.list_tasks(worker_id=worker_id, status=status, finalized=finalized)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/tasks/mine")
def list_my_tasks(
    request: Request,
    finalized: bool | None = Query(default=None),
):
    caller = caller_from_request(request)
    if caller.role != ROLE_WORKER:
        raise forbidden("only workers can list their own tasks")
    items = store.list_tasks(worker_id=caller.id, finalized=finalized)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/tasks/finalize")
def finalize_tasks(
    request: Request,
    payload: FinalizeRequest | None = Body(default=None),
):
    worker_id = payload.worker_id if payload is not None else None
    data = store.finalize_all(caller=caller_from_request(request), worker_id=worker_id)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/tasks/{task_id}")
def get_task(task_id: str, request: Request):
    task = store.get_task_for_caller(task_id=task_id, caller=caller_from_request(request))
    return success_envelope(task, trace_id_from_request(request))


@router.patch("/tasks/{task_id}/status")
def update_task_status(task_id: str, payload: StatusUpdateRequest, request: Request):
    task = store.update_task_status(
        task_id=task_id,
        new_status=payload.status,
        caller=caller_from_request(request),
    )
    return success_envelope(task, trace_id_from_request(request))


@router.patch("/tasks/{task_id}/assignee")
def reassign_task(task_id: str, payload: ReassignRequest, request: Request):
    task = store.reassign_task(
        task_id=task_id,
        new_worker_id=payload.new_worker_id,
        caller=caller_from_request(request),
    )
    return success_envelope(task, trace_id_from_request(request))

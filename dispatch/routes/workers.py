from __future__ import annotations

from fastapi import APIRouter, Query, Request

from dispatch.lifecycle import require_admin
from dispatch.routes._deps import caller_from_request, trace_id_from_request
from dispatch.schemas import success_envelope
from dispatch.store import store

router = APIRouter(prefix="/api/v1", tags=["workers"])


@router.get("/workers")
def list_workers(
    request: Request,
    active_only: bool = Query(default=False, alias="activeOnly"),
):
    require_admin(caller_from_request(request), action="list workers")
    items = store.list_workers(active_only=active_only)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))

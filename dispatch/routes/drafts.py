from __future__ import annotations

from pathlib import PurePath

from fastapi import APIRouter, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse

from dispatch.errors import ApiError
from dispatch.lifecycle import require_admin
from dispatch.routes._deps import caller_from_request, trace_id_from_request
from dispatch.schemas import ConfirmDraftRequest, success_envelope
from dispatch.store import store

router = APIRouter(prefix="/api/v1", tags=["drafts"])


def _declared_kind(file: UploadFile, content_kind: str | None) -> str:
    if content_kind and content_kind.strip():
        return content_kind.strip()
    content_type = (file.content_type or "").strip()
    if content_type and content_type != "application/octet-stream":
        return content_type
    return PurePath(file.filename or "").suffix.lstrip(".").lower()


@router.post("/tasks/drafts")
async def propose_draft(
    request: Request,
    file: UploadFile | None = File(default=None),
    content_kind: str | None = Form(default=None),
):
    require_admin(caller_from_request(request), action="upload task drafts")
    if file is None:
        raise ApiError(
            code="UPLOAD_FILE_MISSING",
            message="no file uploaded",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    file_bytes = await file.read(store.upload_max_bytes + 1)
    data = store.propose_draft(file_bytes=file_bytes, content_kind=_declared_kind(file, content_kind))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/tasks/drafts/confirm")
def confirm_draft(
    payload: ConfirmDraftRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    require_admin(caller_from_request(request), action="confirm task drafts")
    entries = [entry.model_dump(by_alias=True) for entry in payload.tasks]
    if idempotency_key:
        data = store.run_idempotent(
            endpoint="POST:/api/v1/tasks/drafts/confirm",
            idempotency_key=idempotency_key,
            payload=payload.model_dump(by_alias=True, mode="json"),
            execute=lambda: store.commit_draft(entries=entries),
        )
    else:
        data = store.commit_draft(entries=entries)
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))

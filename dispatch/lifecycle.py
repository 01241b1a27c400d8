from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from dispatch.errors import ApiError

ROLE_ADMIN = "admin"
ROLE_WORKER = "worker"
_ROLE_ALIASES = {"agent": ROLE_WORKER}

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TASK_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_FAILED)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    STATUS_PENDING: {STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_FAILED},
    STATUS_IN_PROGRESS: {STATUS_COMPLETED, STATUS_FAILED},
    STATUS_COMPLETED: set(),
    STATUS_FAILED: set(),
}


@dataclass(frozen=True)
class CallerIdentity:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def normalize_role(raw: Any) -> str | None:
    role = str(raw or "").strip().lower()
    role = _ROLE_ALIASES.get(role, role)
    if role in {ROLE_ADMIN, ROLE_WORKER}:
        return role
    return None


def forbidden(message: str) -> ApiError:
    return ApiError(
        code="AUTH_FORBIDDEN",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=403,
    )


def require_admin(caller: CallerIdentity, *, action: str) -> None:
    if not caller.is_admin:
        raise forbidden(f"only admins can {action}")


def ensure_valid_status(status: Any) -> str:
    if not isinstance(status, str) or status not in TASK_STATUSES:
        raise ApiError(
            code="TASK_STATUS_INVALID",
            message=f"invalid status value: {status!r}",
            error_class="validation",
            retryable=False,
            http_status=400,
            details={"allowed": list(TASK_STATUSES)},
        )
    return status


def ensure_can_touch(task: dict[str, Any], caller: CallerIdentity) -> None:
    """Admins may act on any task; workers only on tasks assigned to them."""
    if caller.is_admin:
        return
    if str(task.get("assignedWorkerId") or "") != caller.id:
        raise ApiError(
            code="TASK_NOT_ASSIGNED",
            message="you are not assigned to this task",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


def ensure_transition(
    *,
    current_status: str,
    new_status: str,
    caller: CallerIdentity,
    strict: bool,
) -> None:
    if not strict:
        return
    if new_status == STATUS_FAILED and not caller.is_admin:
        raise forbidden("only admins can mark a task failed")
    if new_status not in ALLOWED_TRANSITIONS.get(current_status, set()):
        raise ApiError(
            code="TASK_TRANSITION_INVALID",
            message=f"invalid transition: {current_status} -> {new_status}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )

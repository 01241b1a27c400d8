from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dispatch.db.postgres import PostgresTxRunner
from dispatch.distributor import pick_worker
from dispatch.drafts import assemble_draft
from dispatch.errors import ApiError
from dispatch.lifecycle import (
    CallerIdentity,
    STATUS_PENDING,
    ensure_can_touch,
    ensure_transition,
    ensure_valid_status,
    require_admin,
)
from dispatch.record_parser import parse_records
from dispatch.repositories.tasks import InMemoryTasksRepository, PostgresTasksRepository
from dispatch.repositories.workers import InMemoryWorkersRepository, PostgresWorkersRepository
from dispatch.runtime_profile import strict_transitions_enabled, upload_max_bytes

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


def _task_not_found(task_id: str) -> ApiError:
    return ApiError(
        code="TASK_NOT_FOUND",
        message=f"task not found: {task_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def _worker_not_found(worker_id: str) -> ApiError:
    return ApiError(
        code="WORKER_NOT_FOUND",
        message=f"worker not found: {worker_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


class InMemoryStore:
    def __init__(self) -> None:
        self.strict_transitions = strict_transitions_enabled()
        self.upload_max_bytes = upload_max_bytes()
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        self.tasks: dict[str, dict[str, Any]] = {}
        self.workers: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.tasks_repository = InMemoryTasksRepository(self.tasks)
        self.workers_repository = InMemoryWorkersRepository(self.workers)

    def reset(self) -> None:
        with self._lock:
            self.strict_transitions = strict_transitions_enabled()
            self.upload_max_bytes = upload_max_bytes()
            self.idempotency_records.clear()
            self.tasks.clear()
            self.workers.clear()

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def _new_task_id() -> str:
        return f"task_{uuid.uuid4().hex[:12]}"

    def run_idempotent(
        self,
        *,
        endpoint: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        key = (endpoint, idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        with self._lock:
            if key in self.idempotency_records:
                record = self.idempotency_records[key]
                if record.fingerprint != current_fingerprint:
                    raise ApiError(
                        code="IDEMPOTENCY_CONFLICT",
                        message="same key with different payload",
                        error_class="validation",
                        retryable=False,
                        http_status=409,
                    )
                return record.data

            data = execute()
            self.idempotency_records[key] = IdempotencyRecord(
                fingerprint=current_fingerprint,
                data=data,
            )
            return data

    # Workers are owned by the account subsystem; these hooks exist for seeding and sync.

    def upsert_worker(
        self,
        *,
        worker_id: str,
        name: str,
        contact_info: str = "",
        is_active: bool = True,
    ) -> dict[str, Any]:
        worker_id = worker_id.strip()
        if not worker_id or not name.strip():
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message="worker_id and name are required",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        with self._lock:
            existing = self.workers_repository.get(worker_id=worker_id)
            worker = {
                "workerId": worker_id,
                "name": name.strip(),
                "contactInfo": contact_info.strip(),
                "isActive": bool(is_active),
                "createdAt": existing["createdAt"] if existing else self._utcnow_iso(),
            }
            return self.workers_repository.upsert(worker=worker)

    def set_worker_active(self, *, worker_id: str, is_active: bool) -> dict[str, Any]:
        with self._lock:
            worker = self.workers_repository.get(worker_id=worker_id)
            if worker is None:
                raise _worker_not_found(worker_id)
            worker["isActive"] = bool(is_active)
            return self.workers_repository.upsert(worker=worker)

    def get_worker(self, worker_id: str) -> dict[str, Any] | None:
        return self.workers_repository.get(worker_id=worker_id)

    def list_workers(self, *, active_only: bool = False) -> list[dict[str, Any]]:
        return self.workers_repository.list(active_only=active_only)

    def active_worker_snapshot(self) -> list[dict[str, Any]]:
        return self.workers_repository.list(active_only=True)

    def propose_draft(self, *, file_bytes: bytes, content_kind: str | None) -> dict[str, Any]:
        if len(file_bytes) > self.upload_max_bytes:
            raise ApiError(
                code="UPLOAD_TOO_LARGE",
                message=f"upload exceeds {self.upload_max_bytes} bytes",
                error_class="validation",
                retryable=False,
                http_status=413,
            )
        parsed = parse_records(file_bytes, content_kind)
        workers = self.active_worker_snapshot()
        draft = assemble_draft(parsed, workers)
        if parsed.rejected_rows:
            logger.warning(
                "draft_rows_rejected total=%s rejected=%s",
                parsed.total_rows,
                parsed.rejected_rows,
            )
        logger.info(
            "draft_proposed total=%s accepted=%s workers=%s",
            draft.total_candidates,
            draft.total_accepted,
            len(workers),
        )
        return draft.to_dict()

    @staticmethod
    def _validate_entries(entries: list[dict[str, Any]]) -> list[dict[str, str]]:
        cleaned: list[dict[str, str]] = []
        invalid: list[dict[str, Any]] = []
        for index, entry in enumerate(entries):
            contact_name = str(entry.get("contactName") or "").strip()
            phone = str(entry.get("phone") or "").strip()
            missing = [name for name, value in (("contactName", contact_name), ("phone", phone)) if not value]
            if missing:
                invalid.append({"index": index, "fields": missing})
                continue
            cleaned.append(
                {
                    "contactName": contact_name,
                    "phone": phone,
                    "notes": str(entry.get("notes") or "").strip(),
                }
            )
        if invalid:
            raise ApiError(
                code="DRAFT_ENTRY_INVALID",
                message="draft entries are missing required fields",
                error_class="validation",
                retryable=False,
                http_status=400,
                details={"invalidEntries": invalid},
            )
        return cleaned

    @staticmethod
    def _proposed_worker_id(entry: dict[str, Any]) -> str:
        proposed = entry.get("proposedWorkerId")
        if not proposed:
            summary = entry.get("proposedWorkerSummary")
            if isinstance(summary, dict):
                proposed = summary.get("id")
        return str(proposed or "").strip()

    def commit_draft(self, *, entries: list[dict[str, Any]]) -> dict[str, Any]:
        if not entries:
            raise ApiError(
                code="DRAFT_TASKS_EMPTY",
                message="no tasks provided",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        cleaned = self._validate_entries(entries)

        with self._lock:
            workers = self.active_worker_snapshot()
            if not workers:
                raise ApiError(
                    code="WORKERS_UNAVAILABLE",
                    message="no active workers available for assignment",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            active_ids = {str(w["workerId"]) for w in workers}
            now = self._utcnow_iso()
            tasks: list[dict[str, Any]] = []
            substitutions: list[dict[str, Any]] = []
            for index, (entry, fields) in enumerate(zip(entries, cleaned)):
                proposed = self._proposed_worker_id(entry)
                if proposed in active_ids:
                    assigned = proposed
                else:
                    if not proposed:
                        reason = "missing"
                    elif self.workers_repository.get(worker_id=proposed) is None:
                        reason = "unknown"
                    else:
                        reason = "inactive"
                    assigned = str(pick_worker(index, workers)["workerId"])
                    substitutions.append(
                        {
                            "index": index,
                            "proposedWorkerId": proposed or None,
                            "assignedWorkerId": assigned,
                            "reason": reason,
                        }
                    )
                tasks.append(
                    {
                        "taskId": self._new_task_id(),
                        **fields,
                        "assignedWorkerId": assigned,
                        "status": STATUS_PENDING,
                        "isFinalized": False,
                        "createdAt": now,
                        "updatedAt": now,
                    }
                )
            created = self.tasks_repository.insert_many(tasks=tasks)

        if substitutions:
            logger.warning("draft_commit_substituted count=%s", len(substitutions))
        logger.info("draft_committed created=%s", len(created))
        return {
            "created": len(created),
            "taskIds": [task["taskId"] for task in created],
            "substitutions": substitutions,
        }

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        return self.tasks_repository.get(task_id=task_id)

    def get_task_for_caller(self, *, task_id: str, caller: CallerIdentity) -> dict[str, Any]:
        task = self.get_task(task_id)
        if task is None:
            raise _task_not_found(task_id)
        ensure_can_touch(task, caller)
        return task

    def list_tasks(
        self,
        *,
        worker_id: str | None = None,
        status: str | None = None,
        finalized: bool | None = None,
    ) -> list[dict[str, Any]]:
        if status is not None:
            ensure_valid_status(status)
        return self.tasks_repository.list(worker_id=worker_id, status=status, finalized=finalized)

    def update_task_status(
        self,
        *,
        task_id: str,
        new_status: str,
        caller: CallerIdentity,
    ) -> dict[str, Any]:
        ensure_valid_status(new_status)
        with self._lock:
            task = self.get_task(task_id)
            if task is None:
                raise _task_not_found(task_id)
            ensure_can_touch(task, caller)
            current_status = task["status"]
            if new_status == current_status:
                return task
            ensure_transition(
                current_status=current_status,
                new_status=new_status,
                caller=caller,
                strict=self.strict_transitions,
            )
            task["status"] = new_status
            task["updatedAt"] = self._utcnow_iso()
            saved = self.tasks_repository.update(task=task)
        logger.info("task_status_updated task_id=%s %s->%s by=%s", task_id, current_status, new_status, caller.role)
        return saved

    def reassign_task(
        self,
        *,
        task_id: str,
        new_worker_id: str,
        caller: CallerIdentity,
    ) -> dict[str, Any]:
        require_admin(caller, action="reassign tasks")
        with self._lock:
            task = self.get_task(task_id)
            if task is None:
                raise _task_not_found(task_id)
            worker = self.workers_repository.get(worker_id=new_worker_id)
            if worker is None:
                raise _worker_not_found(new_worker_id)
            if not worker.get("isActive"):
                raise ApiError(
                    code="WORKER_INACTIVE",
                    message=f"worker is inactive: {new_worker_id}",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            task["assignedWorkerId"] = worker["workerId"]
            task["updatedAt"] = self._utcnow_iso()
            return self.tasks_repository.update(task=task)

    def finalize_all(self, *, caller: CallerIdentity, worker_id: str | None = None) -> dict[str, Any]:
        require_admin(caller, action="finalize tasks")
        with self._lock:
            count = self.tasks_repository.finalize_all(updated_at=self._utcnow_iso(), worker_id=worker_id)
        logger.info("tasks_finalized count=%s worker_id=%s", count, worker_id)
        return {"finalizedCount": count}


class SqliteBackedStore(InMemoryStore):
    """Persistent store backend that snapshots state to SQLite after each mutation."""

    def __init__(self, db_path: str) -> None:
        super().__init__()
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()
        self._load_state()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path))

    def _initialize_database(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  payload TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _state_snapshot(self) -> dict[str, Any]:
        idempotency_records = []
        for (scope, key), record in self.idempotency_records.items():
            idempotency_records.append(
                {
                    "scope": scope,
                    "key": key,
                    "fingerprint": record.fingerprint,
                    "data": record.data,
                }
            )
        return {
            "schema_version": 1,
            "idempotency_records": idempotency_records,
            "tasks": self.tasks,
            "workers": self.workers,
        }

    def _restore_state(self, payload: dict[str, Any]) -> None:
        self.idempotency_records = {}
        for row in payload.get("idempotency_records", []):
            if not isinstance(row, dict):
                continue
            scope = row.get("scope")
            key = row.get("key")
            fingerprint = row.get("fingerprint")
            data = row.get("data")
            if not isinstance(scope, str) or not isinstance(key, str) or not isinstance(fingerprint, str):
                continue
            if not isinstance(data, dict):
                continue
            self.idempotency_records[(scope, key)] = IdempotencyRecord(fingerprint=fingerprint, data=data)
        self.tasks = payload.get("tasks", {}) if isinstance(payload.get("tasks"), dict) else {}
        self.workers = payload.get("workers", {}) if isinstance(payload.get("workers"), dict) else {}
        self._bind_repositories()

    def _save_state(self) -> None:
        snapshot = self._state_snapshot()
        blob = json.dumps(snapshot, ensure_ascii=True, separators=(",", ":"))
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO store_state(id, payload)
                VALUES (1, ?)
                ON CONFLICT(id) DO UPDATE SET payload = excluded.payload
                """,
                (blob,),
            )
            conn.commit()

    def _load_state(self) -> None:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT payload FROM store_state WHERE id = 1").fetchone()
        if row is None:
            return
        payload_raw = row[0]
        if not isinstance(payload_raw, str):
            return
        try:
            payload = json.loads(payload_raw)
        except json.JSONDecodeError:
            logger.warning("sqlite_state_unreadable path=%s", self._db_path)
            return
        if not isinstance(payload, dict):
            return
        self._restore_state(payload)

    def reset(self) -> None:
        super().reset()
        self._save_state()

    def run_idempotent(
        self,
        *,
        endpoint: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        data = super().run_idempotent(
            endpoint=endpoint,
            idempotency_key=idempotency_key,
            payload=payload,
            execute=execute,
        )
        self._save_state()
        return data

    def upsert_worker(
        self,
        *,
        worker_id: str,
        name: str,
        contact_info: str = "",
        is_active: bool = True,
    ) -> dict[str, Any]:
        data = super().upsert_worker(worker_id=worker_id, name=name, contact_info=contact_info, is_active=is_active)
        self._save_state()
        return data

    def set_worker_active(self, *, worker_id: str, is_active: bool) -> dict[str, Any]:
        data = super().set_worker_active(worker_id=worker_id, is_active=is_active)
        self._save_state()
        return data

    def commit_draft(self, *, entries: list[dict[str, Any]]) -> dict[str, Any]:
        data = super().commit_draft(entries=entries)
        self._save_state()
        return data

    def update_task_status(
        self,
        *,
        task_id: str,
        new_status: str,
        caller: CallerIdentity,
    ) -> dict[str, Any]:
        data = super().update_task_status(task_id=task_id, new_status=new_status, caller=caller)
        self._save_state()
        return data

    def reassign_task(
        self,
        *,
        task_id: str,
        new_worker_id: str,
        caller: CallerIdentity,
    ) -> dict[str, Any]:
        data = super().reassign_task(task_id=task_id, new_worker_id=new_worker_id, caller=caller)
        self._save_state()
        return data

    def finalize_all(self, *, caller: CallerIdentity, worker_id: str | None = None) -> dict[str, Any]:
        data = super().finalize_all(caller=caller, worker_id=worker_id)
        self._save_state()
        return data


class PostgresBackedStore(InMemoryStore):
    """Store backend with tasks, workers and idempotency records in PostgreSQL."""

    def __init__(self, *, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._tx_runner = PostgresTxRunner(dsn)
        super().__init__()
        self._initialize_database()

    def _bind_repositories(self) -> None:
        self.tasks_repository = PostgresTasksRepository(tx_runner=self._tx_runner, table_name="tasks")
        self.workers_repository = PostgresWorkersRepository(tx_runner=self._tx_runner, table_name="workers")

    def _initialize_database(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS workers (
                      seq BIGSERIAL,
                      worker_id TEXT PRIMARY KEY,
                      name TEXT NOT NULL,
                      contact_info TEXT NOT NULL DEFAULT '',
                      is_active BOOLEAN NOT NULL DEFAULT TRUE,
                      created_at TEXT NOT NULL
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS tasks (
                      seq BIGSERIAL,
                      task_id TEXT PRIMARY KEY,
                      contact_name TEXT NOT NULL CHECK (contact_name <> ''),
                      phone TEXT NOT NULL CHECK (phone <> ''),
                      notes TEXT NOT NULL DEFAULT '',
                      assigned_worker_id TEXT,
                      status TEXT NOT NULL CHECK (status IN ('pending', 'in-progress', 'completed', 'failed')),
                      is_finalized BOOLEAN NOT NULL DEFAULT FALSE,
                      created_at TEXT NOT NULL,
                      updated_at TEXT NOT NULL
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS idempotency_records (
                      scope TEXT NOT NULL,
                      idempotency_key TEXT NOT NULL,
                      fingerprint TEXT NOT NULL,
                      data JSONB NOT NULL,
                      PRIMARY KEY (scope, idempotency_key)
                    )
                    """
                )

        self._tx_runner.run_in_tx(fn=_op)

    def reset(self) -> None:
        super().reset()

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute("TRUNCATE tasks, workers, idempotency_records")

        self._tx_runner.run_in_tx(fn=_op)

    def run_idempotent(
        self,
        *,
        endpoint: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        current_fingerprint = self._fingerprint(payload)

        def _op(conn: Any) -> dict[str, Any]:
            # held until commit; other requests with the same key wait here
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"{endpoint}:{idempotency_key}",))
                cur.execute(
                    "SELECT fingerprint, data FROM idempotency_records WHERE scope = %s AND idempotency_key = %s",
                    (endpoint, idempotency_key),
                )
                row = cur.fetchone()
            if row is not None:
                if row[0] != current_fingerprint:
                    raise ApiError(
                        code="IDEMPOTENCY_CONFLICT",
                        message="same key with different payload",
                        error_class="validation",
                        retryable=False,
                        http_status=409,
                    )
                return row[1] if isinstance(row[1], dict) else json.loads(row[1])

            # Repository calls made by execute() join this transaction.
            data = execute()
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO idempotency_records (scope, idempotency_key, fingerprint, data)
                    VALUES (%s, %s, %s, %s::jsonb)
                    """,
                    (endpoint, idempotency_key, current_fingerprint, json.dumps(data, ensure_ascii=True)),
                )
            return data

        with self._lock:
            return self._tx_runner.run_in_tx(fn=_op)


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("DISPATCH_STORE_BACKEND", "memory").strip().lower()
    if backend == "sqlite":
        db_path = env.get("DISPATCH_STORE_SQLITE_PATH", ".local/dispatch-store.sqlite3")
        return SqliteBackedStore(db_path)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when DISPATCH_STORE_BACKEND=postgres")
        return PostgresBackedStore(dsn=dsn)
    return InMemoryStore()


store = create_store_from_env()

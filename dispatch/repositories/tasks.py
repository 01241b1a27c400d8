from __future__ import annotations

import re
from typing import Any

from dispatch.db.postgres import PostgresTxRunner

_COLUMNS = (
    "task_id, contact_name, phone, notes, assigned_worker_id, status, is_finalized, created_at, updated_at"
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _matches(
    row: dict[str, Any],
    *,
    worker_id: str | None,
    status: str | None,
    finalized: bool | None,
) -> bool:
    if worker_id is not None and row.get("assignedWorkerId") != worker_id:
        return False
    if status is not None and row.get("status") != status:
        return False
    if finalized is not None and bool(row.get("isFinalized")) != finalized:
        return False
    return True


class InMemoryTasksRepository:
    def __init__(self, tasks: dict[str, dict[str, Any]]) -> None:
        self._tasks = tasks

    def insert_many(self, *, tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for task in tasks:
            if str(task["taskId"]) in self._tasks:
                raise ValueError(f"duplicate task id: {task['taskId']}")
        for task in tasks:
            self._tasks[str(task["taskId"])] = dict(task)
        return [dict(task) for task in tasks]

    def update(self, *, task: dict[str, Any]) -> dict[str, Any]:
        item = dict(task)
        self._tasks[str(item["taskId"])] = item
        return dict(item)

    def get(self, *, task_id: str) -> dict[str, Any] | None:
        row = self._tasks.get(task_id)
        if row is None:
            return None
        return dict(row)

    def list(
        self,
        *,
        worker_id: str | None = None,
        status: str | None = None,
        finalized: bool | None = None,
    ) -> list[dict[str, Any]]:
        return [
            dict(row)
            for row in self._tasks.values()
            if _matches(row, worker_id=worker_id, status=status, finalized=finalized)
        ]

    def finalize_all(self, *, updated_at: str, worker_id: str | None = None) -> int:
        count = 0
        for row in self._tasks.values():
            if row.get("isFinalized"):
                continue
            if worker_id is not None and row.get("assignedWorkerId") != worker_id:
                continue
            row["isFinalized"] = True
            row["updatedAt"] = updated_at
            count += 1
        return count


class PostgresTasksRepository:
    """Tasks repository for postgres backend; every call runs in its own transaction."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "tasks") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_task(row: Any) -> dict[str, Any]:
        return {
            "taskId": row[0],
            "contactName": row[1],
            "phone": row[2],
            "notes": row[3] or "",
            "assignedWorkerId": row[4],
            "status": row[5],
            "isFinalized": bool(row[6]),
            "createdAt": row[7],
            "updatedAt": row[8],
        }

    @staticmethod
    def _task_params(task: dict[str, Any]) -> tuple[Any, ...]:
        return (
            task["taskId"],
            task.get("contactName"),
            task.get("phone"),
            task.get("notes", ""),
            task.get("assignedWorkerId"),
            task.get("status", "pending"),
            bool(task.get("isFinalized", False)),
            task.get("createdAt"),
            task.get("updatedAt"),
        )

    def insert_many(self, *, tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
        sql = f"""
            INSERT INTO {self._table_name} ({_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.executemany(sql, [self._task_params(task) for task in tasks])
            return [dict(task) for task in tasks]

        return self._tx_runner.run_in_tx(fn=_op)

    def update(self, *, task: dict[str, Any]) -> dict[str, Any]:
        item = dict(task)
        sql = f"""
            UPDATE {self._table_name}
            SET assigned_worker_id = %s, status = %s, is_finalized = %s, updated_at = %s
            WHERE task_id = %s
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item.get("assignedWorkerId"),
                        item.get("status"),
                        bool(item.get("isFinalized", False)),
                        item.get("updatedAt"),
                        item["taskId"],
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, task_id: str) -> dict[str, Any] | None:
        sql = f"SELECT {_COLUMNS} FROM {self._table_name} WHERE task_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (task_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_task(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def list(
        self,
        *,
        worker_id: str | None = None,
        status: str | None = None,
        finalized: bool | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if worker_id is not None:
            clauses.append("assigned_worker_id = %s")
            params.append(worker_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        if finalized is not None:
            clauses.append("is_finalized = %s")
            params.append(finalized)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_COLUMNS} FROM {self._table_name} {where} ORDER BY created_at, seq"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [self._row_to_task(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def finalize_all(self, *, updated_at: str, worker_id: str | None = None) -> int:
        sql = f"UPDATE {self._table_name} SET is_finalized = TRUE, updated_at = %s WHERE is_finalized = FALSE"
        params: list[Any] = [updated_at]
        if worker_id is not None:
            sql += " AND assigned_worker_id = %s"
            params.append(worker_id)

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                return int(cur.rowcount)

        return self._tx_runner.run_in_tx(fn=_op)

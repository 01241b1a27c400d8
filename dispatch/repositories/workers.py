from __future__ import annotations

import re
from typing import Any

from dispatch.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryWorkersRepository:
    """Workers keep their registration order; the round-robin rule depends on it."""

    def __init__(self, workers: dict[str, dict[str, Any]]) -> None:
        self._workers = workers

    def upsert(self, *, worker: dict[str, Any]) -> dict[str, Any]:
        item = dict(worker)
        self._workers[str(item["workerId"])] = item
        return dict(item)

    def get(self, *, worker_id: str) -> dict[str, Any] | None:
        row = self._workers.get(worker_id)
        if row is None:
            return None
        return dict(row)

    def list(self, *, active_only: bool = False) -> list[dict[str, Any]]:
        return [dict(x) for x in self._workers.values() if not active_only or x.get("isActive")]


class PostgresWorkersRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "workers") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_worker(row: Any) -> dict[str, Any]:
        return {
            "workerId": row[0],
            "name": row[1],
            "contactInfo": row[2] or "",
            "isActive": bool(row[3]),
            "createdAt": row[4],
        }

    def upsert(self, *, worker: dict[str, Any]) -> dict[str, Any]:
        item = dict(worker)
        sql = f"""
            INSERT INTO {self._table_name} (worker_id, name, contact_info, is_active, created_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT(worker_id) DO UPDATE SET
                name = EXCLUDED.name,
                contact_info = EXCLUDED.contact_info,
                is_active = EXCLUDED.is_active
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["workerId"],
                        item.get("name", ""),
                        item.get("contactInfo", ""),
                        bool(item.get("isActive", True)),
                        item.get("createdAt"),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, worker_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT worker_id, name, contact_info, is_active, created_at
            FROM {self._table_name}
            WHERE worker_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (worker_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_worker(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self, *, active_only: bool = False) -> list[dict[str, Any]]:
        where = "WHERE is_active = TRUE" if active_only else ""
        sql = f"""
            SELECT worker_id, name, contact_info, is_active, created_at
            FROM {self._table_name}
            {where}
            ORDER BY seq
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            return [self._row_to_worker(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

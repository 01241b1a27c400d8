from __future__ import annotations

from collections.abc import Callable
from contextvars import ContextVar
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction.

    A call made while another ``run_in_tx`` of the same runner is active in the
    current context joins that transaction instead of opening a connection.
    """

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._active_conn: ContextVar[Any | None] = ContextVar(f"pg_tx_{id(self)}", default=None)

    def connect(self) -> Any:
        psycopg = _import_psycopg()
        return psycopg.connect(self._dsn)

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        active = self._active_conn.get()
        if active is not None:
            return fn(active)
        with self.connect() as conn:
            token = self._active_conn.set(conn)
            try:
                result = fn(conn)
            except Exception:
                conn.rollback()
                raise
            finally:
                self._active_conn.reset(token)
            conn.commit()
            return result

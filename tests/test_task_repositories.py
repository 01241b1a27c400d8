from __future__ import annotations

import pytest

from dispatch.repositories import (
    InMemoryTasksRepository,
    InMemoryWorkersRepository,
    PostgresTasksRepository,
    PostgresWorkersRepository,
)


def _task(task_id: str, worker_id: str = "w1", **overrides) -> dict:
    task = {
        "taskId": task_id,
        "contactName": "Ann",
        "phone": "555-1111",
        "notes": "",
        "assignedWorkerId": worker_id,
        "status": "pending",
        "isFinalized": False,
        "createdAt": "2026-01-01T00:00:00+00:00",
        "updatedAt": "2026-01-01T00:00:00+00:00",
    }
    task.update(overrides)
    return task


class FakeCursor:
    def __init__(self, log: list, rows: list[tuple]):
        self._log = log
        self._rows = rows
        self.rowcount = len(rows)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._log.append((query, params))

    def executemany(self, query: str, params_seq):
        self._log.append((query, list(params_seq)))

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, log: list, rows: list[tuple]):
        self._log = log
        self._rows = rows

    def cursor(self):
        return FakeCursor(self._log, self._rows)


class FakeRunner:
    def __init__(self, rows: list[tuple] | None = None):
        self.statements: list[tuple] = []
        self.rows = rows or []
        self.calls = 0

    def run_in_tx(self, *, fn):
        self.calls += 1
        return fn(FakeConnection(self.statements, self.rows))


def test_inmemory_insert_many_rejects_duplicates_without_partial_writes():
    tasks: dict[str, dict] = {}
    repo = InMemoryTasksRepository(tasks)
    repo.insert_many(tasks=[_task("t1")])

    with pytest.raises(ValueError, match="duplicate"):
        repo.insert_many(tasks=[_task("t2"), _task("t1")])

    assert list(tasks) == ["t1"]


def test_inmemory_list_filters_and_finalize_counts_only_new_rows():
    repo = InMemoryTasksRepository({})
    repo.insert_many(tasks=[_task("t1", "w1"), _task("t2", "w2"), _task("t3", "w1", status="completed")])

    assert [t["taskId"] for t in repo.list(worker_id="w1")] == ["t1", "t3"]
    assert [t["taskId"] for t in repo.list(status="completed")] == ["t3"]

    assert repo.finalize_all(updated_at="2026-01-02T00:00:00+00:00", worker_id="w2") == 1
    assert repo.finalize_all(updated_at="2026-01-02T00:00:00+00:00") == 2
    assert repo.finalize_all(updated_at="2026-01-02T00:00:00+00:00") == 0
    assert [t["taskId"] for t in repo.list(finalized=True)] == ["t1", "t2", "t3"]


def test_inmemory_get_returns_copies():
    repo = InMemoryTasksRepository({})
    repo.insert_many(tasks=[_task("t1")])
    fetched = repo.get(task_id="t1")
    fetched["status"] = "failed"
    assert repo.get(task_id="t1")["status"] == "pending"


def test_inmemory_workers_keep_registration_order():
    repo = InMemoryWorkersRepository({})
    repo.upsert(worker={"workerId": "w2", "name": "B", "isActive": True})
    repo.upsert(worker={"workerId": "w1", "name": "A", "isActive": False})
    repo.upsert(worker={"workerId": "w2", "name": "B2", "isActive": True})

    assert [w["workerId"] for w in repo.list()] == ["w2", "w1"]
    assert [w["workerId"] for w in repo.list(active_only=True)] == ["w2"]


@pytest.mark.parametrize("repo_cls", [PostgresTasksRepository, PostgresWorkersRepository])
def test_postgres_repositories_reject_invalid_table_name(repo_cls):
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        repo_cls(tx_runner=FakeRunner(), table_name="tasks;drop table tasks")


def test_postgres_insert_many_runs_one_transaction():
    runner = FakeRunner()
    repo = PostgresTasksRepository(tx_runner=runner, table_name="tasks")

    created = repo.insert_many(tasks=[_task("t1"), _task("t2", "w2")])

    assert [t["taskId"] for t in created] == ["t1", "t2"]
    assert runner.calls == 1
    sql, params = runner.statements[0]
    assert "INSERT INTO tasks" in sql
    assert [p[0] for p in params] == ["t1", "t2"]
    assert params[1][4] == "w2"


def test_postgres_get_maps_row_to_task():
    row = ("t1", "Ann", "555", None, "w1", "in-progress", True, "c", "u")
    repo = PostgresTasksRepository(tx_runner=FakeRunner(rows=[row]))

    task = repo.get(task_id="t1")

    assert task == {
        "taskId": "t1",
        "contactName": "Ann",
        "phone": "555",
        "notes": "",
        "assignedWorkerId": "w1",
        "status": "in-progress",
        "isFinalized": True,
        "createdAt": "c",
        "updatedAt": "u",
    }


def test_postgres_list_builds_filters():
    runner = FakeRunner()
    repo = PostgresTasksRepository(tx_runner=runner)

    assert repo.list(worker_id="w1", finalized=True) == []

    sql, params = runner.statements[0]
    assert "assigned_worker_id = %s AND is_finalized = %s" in sql
    assert "ORDER BY created_at, seq" in sql
    assert params == ("w1", True)


def test_postgres_finalize_all_returns_rowcount():
    runner = FakeRunner(rows=[("x",), ("y",)])
    repo = PostgresTasksRepository(tx_runner=runner)

    assert repo.finalize_all(updated_at="now", worker_id="w1") == 2
    sql, params = runner.statements[0]
    assert "is_finalized = FALSE AND assigned_worker_id = %s" in sql
    assert params == ("now", "w1")


def test_postgres_workers_list_active_only():
    rows = [("w1", "Wendy", "", True, "c")]
    runner = FakeRunner(rows=rows)
    repo = PostgresWorkersRepository(tx_runner=runner)

    workers = repo.list(active_only=True)

    assert workers == [{"workerId": "w1", "name": "Wendy", "contactInfo": "", "isActive": True, "createdAt": "c"}]
    assert "WHERE is_active = TRUE" in runner.statements[0][0]

from __future__ import annotations

from collections import Counter

import pytest

from dispatch.distributor import distribute, pick_worker
from dispatch.errors import ApiError
from dispatch.record_parser import CandidateRecord


def _records(n: int) -> list[CandidateRecord]:
    return [CandidateRecord(contact_name=f"c{i}", phone=f"555-{i:04d}") for i in range(n)]


def _workers(m: int) -> list[dict]:
    return [{"workerId": f"w{k}", "name": f"Worker {k}", "contactInfo": ""} for k in range(m)]


@pytest.mark.parametrize("n", [0, 1, 5, 7, 24])
@pytest.mark.parametrize("m", [1, 2, 3, 5])
def test_round_robin_position_and_balance(n, m):
    workers = _workers(m)
    pairs = distribute(_records(n), workers)

    assert [p.record.contact_name for p in pairs] == [f"c{i}" for i in range(n)]
    for i, pair in enumerate(pairs):
        assert pair.worker["workerId"] == f"w{i % m}"
    counts = Counter(p.worker["workerId"] for p in pairs)
    for worker in workers:
        assert counts.get(worker["workerId"], 0) in {n // m, -(-n // m)}


def test_five_records_over_two_workers():
    pairs = distribute(_records(5), _workers(2))
    assert [p.worker["workerId"] for p in pairs] == ["w0", "w1", "w0", "w1", "w0"]


def test_distribution_is_deterministic():
    records, workers = _records(9), _workers(4)
    assert distribute(records, workers) == distribute(records, workers)


@pytest.mark.parametrize("n", [0, 3])
def test_no_workers_fails_regardless_of_record_count(n):
    with pytest.raises(ApiError) as exc:
        distribute(_records(n), [])

    assert exc.value.code == "WORKERS_UNAVAILABLE"
    assert exc.value.http_status == 409


def test_pick_worker_wraps_around():
    workers = _workers(3)
    assert pick_worker(7, workers)["workerId"] == "w1"

from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def _as_active(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() not in {"0", "false", "no", "off"}
    return bool(value)


def load_worker_seed(path: str | Path) -> list[dict[str, Any]]:
    """Read a JSON list of workers: [{"workerId", "name", "contactInfo"?, "isActive"?}, ...]."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("workers", [])
    if not isinstance(raw, list):
        raise ValueError("worker seed must be a JSON list or an object with a 'workers' list")
    rows: list[dict[str, Any]] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"worker seed entry {index} is not an object")
        worker_id = str(item.get("workerId") or "").strip()
        name = str(item.get("name") or "").strip()
        if not worker_id or not name:
            raise ValueError(f"worker seed entry {index} needs workerId and name")
        rows.append(
            {
                "workerId": worker_id,
                "name": name,
                "contactInfo": str(item.get("contactInfo") or "").strip(),
                "isActive": _as_active(item.get("isActive")),
            }
        )
    return rows


def apply_worker_seed(store: Any, rows: list[dict[str, Any]]) -> dict[str, Any]:
    created = 0
    updated = 0
    for row in rows:
        if store.get_worker(row["workerId"]) is None:
            created += 1
        else:
            updated += 1
        store.upsert_worker(
            worker_id=row["workerId"],
            name=row["name"],
            contact_info=row["contactInfo"],
            is_active=row["isActive"],
        )
    return {
        "created": created,
        "updated": updated,
        "active": len(store.list_workers(active_only=True)),
    }

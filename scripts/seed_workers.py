#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dispatch.ops.worker_seed import apply_worker_seed, load_worker_seed
from dispatch.store import create_store_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Register or update workers in the configured store backend")
    parser.add_argument("seed_file", help="JSON file with a list of workers")
    parser.add_argument("--dry-run", action="store_true", help="validate the file without writing")
    args = parser.parse_args()

    rows = load_worker_seed(args.seed_file)
    if args.dry_run:
        summary = {"dry_run": True, "workers": len(rows)}
    else:
        summary = {"dry_run": False, **apply_worker_seed(create_store_from_env(), rows)}
    print(json.dumps(summary, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

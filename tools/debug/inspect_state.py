#!/usr/bin/env python3
"""Print the drivers stored in a scheduler SQLite file, grouped by status.

Read-only: the file is opened with a read-only URI, so it is neither migrated
nor modified, and recovery is not run.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def main(argv: list[str] | None = None) -> int:
    repo = _repo_root()
    sys.path.insert(0, str(repo / "runtime" / "core"))

    from clusterdispatch.config.settings import load_runtime_config
    from clusterdispatch.errors import ClusterDispatchError
    from clusterdispatch.executor.state_machine import ALL_STATES
    from clusterdispatch.storage.sqlite import SQLitePersistenceEngine

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", type=Path, default=repo / "runtime" / "core" / "config" / "runtime.yaml")
    parser.add_argument("--sqlite", type=Path, default=None, help="Store path (overrides the config file)")
    args = parser.parse_args(argv)

    try:
        path = args.sqlite or load_runtime_config(args.config).storage.sqlite_path
        if not path.exists():
            print(f"store_missing={path}")
            return 1
        drivers = SQLitePersistenceEngine.open(path, read_only=True).read_all()
    except ClusterDispatchError as e:
        print(f"error={e}")
        return 1

    print(f"store={path} drivers={len(drivers)}")
    for status in ALL_STATES:
        group = [d for d in drivers if d.status == status]
        if not group:
            continue
        print(f"[{status}] {len(group)}")
        for d in group:
            extra = f" retries={d.retries}" if d.retries else ""
            if d.last_failure:
                extra += f" last_failure={d.last_failure!r}"
            print(f"  {d.sequence:>6} {d.submission_id} name={d.description.name}{extra}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

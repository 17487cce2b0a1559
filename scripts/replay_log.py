#!/usr/bin/env python3
"""Rebuild aggregates from a JSON-lines report history and print them.

Replays the log in submission order through a fresh engine (no
notifications, nothing written back) and prints the projected status of
every entity.  Useful to check that a restart reproduces live state.

Usage
-----
::

    python scripts/replay_log.py reports.jsonl
    python scripts/replay_log.py reports.jsonl --as-of 2026-01-02T00:00:00Z --json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from crowdstock import AggregationEngine, EngineConfig, JsonlReportLog  # noqa: E402
from crowdstock.models import parse_timestamp  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay a crowdstock report history.")
    parser.add_argument("log", help="JSON-lines history file")
    parser.add_argument("--as-of", help="ISO-8601 instant to project to (default: now)")
    parser.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    path = Path(args.log)
    if not path.exists():
        raise SystemExit(f"History file not found: {path}")

    as_of = parse_timestamp(args.as_of) if args.as_of else None

    engine = AggregationEngine(EngineConfig.from_env(history_path=None))
    count = engine.rebuild(JsonlReportLog(path))
    views = engine.query.status_of_many(sorted(engine.ledger.keys(), key=str), as_of)

    if args.json:
        print(json.dumps([view.model_dump(mode="json") for view in views.values()], indent=2))
        return

    print(f"Replayed {count} report(s) into {len(views)} entities")
    print()
    key_w = max([len(str(key)) for key in views] + [6])
    print(f"{'Entity':<{key_w}}  {'Status':<11}  {'Conf':>5}  Samples")
    for key, view in views.items():
        print(f"{str(key):<{key_w}}  {view.status.value:<11}  {view.confidence:>5.2f}  {view.sample_count}")


if __name__ == "__main__":
    main()

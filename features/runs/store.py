"""
JSON file store for pipeline run records.

One file per invocation under ``runs_dir``: ``<run_id>.json``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

log = logging.getLogger(__name__)


def save_run(runs_dir: Path, run_record: dict) -> str:
    """Write the run record and return its path."""
    runs_dir.mkdir(parents=True, exist_ok=True)
    file_path = runs_dir / f"{run_record['run_id']}.json"
    with open(file_path, "w", encoding="utf-8") as f:
        json.dump(run_record, f, indent=2, default=str)
    log.info("Run log saved: %s", file_path)
    return str(file_path)


def load_run(runs_dir: Path, run_id: str) -> dict | None:
    file_path = runs_dir / f"{run_id}.json"
    if not file_path.exists():
        return None
    with open(file_path, encoding="utf-8") as f:
        return json.load(f)


def list_runs(runs_dir: Path, limit: int = 50, status: str | None = None) -> list[dict]:
    """Newest first, summarized."""
    if not runs_dir.exists():
        return []
    runs = []
    for log_file in sorted(runs_dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True):
        try:
            with open(log_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Skipping unreadable run log %s: %s", log_file, e)
            continue
        if status and data.get("status") != status:
            continue
        runs.append({
            "run_id": data.get("run_id"),
            "status": data.get("status"),
            "event": data.get("event"),
            "started_at": data.get("started_at"),
            "duration_sec": data.get("duration_sec"),
        })
        if len(runs) >= limit:
            break
    return runs

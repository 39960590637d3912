"""
Run Tracker — records Job Run status transitions for one pipeline invocation.

Every transition is logged with a ``[JOB]`` prefix and timestamped, so a run
record can be reconstructed from the tracker alone. Terminal statuses are
final: a Job Run that reached one never transitions again.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from models.schemas import Job, JobRun, JobStatus

log = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunTracker:
    """Holds the Job Runs of a single pipeline invocation."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.runs: dict[str, JobRun] = {}
        self._active: dict[str, float] = {}  # job name → start time

    def create(self, job: Job) -> JobRun:
        run = JobRun(job=job)
        self.runs[job.name] = run
        log.info("[JOB] Pending: %s (%s)", job.name, self.run_id)
        return run

    def get(self, name: str) -> JobRun:
        return self.runs[name]

    def start(self, run: JobRun) -> None:
        self._require_pending(run)
        run.status = JobStatus.RUNNING
        run.started_at = utc_now_iso()
        self._active[run.name] = time.monotonic()
        log.info("[JOB] Running: %s", run.name)

    def succeed(self, run: JobRun) -> None:
        self._finish(run, JobStatus.SUCCEEDED)
        log.info("[JOB] Succeeded: %s (%.2fs)", run.name, run.duration_sec or 0)

    def fail(self, run: JobRun, error: str, failed_step: str | None = None) -> None:
        run.error = error
        run.failed_step = failed_step
        self._finish(run, JobStatus.FAILED)
        log.error("[JOB] Failed: %s at step %s: %s", run.name, failed_step or "-", error)

    def skip(self, run: JobRun, reason: str) -> None:
        self._require_pending(run)
        run.skip_reason = reason
        self._finish(run, JobStatus.SKIPPED)
        log.info("[JOB] Skipped: %s — %s", run.name, reason)

    def cancel(self, run: JobRun, reason: str = "cancelled") -> None:
        if run.status.terminal:
            return
        run.error = reason
        self._finish(run, JobStatus.CANCELLED)
        log.warning("[JOB] Cancelled: %s — %s", run.name, reason)

    def _require_pending(self, run: JobRun) -> None:
        if run.status is not JobStatus.PENDING:
            raise RuntimeError(f"Job {run.name} is {run.status.value}, expected pending")

    def _finish(self, run: JobRun, status: JobStatus) -> None:
        if run.status.terminal:
            raise RuntimeError(f"Job {run.name} already {run.status.value}")
        run.status = status
        run.ended_at = utc_now_iso()
        start = self._active.pop(run.name, None)
        if start is not None:
            run.duration_sec = round(time.monotonic() - start, 2)

    @property
    def finished(self) -> bool:
        return all(r.status.terminal for r in self.runs.values())

    def to_list(self) -> list[dict]:
        return [r.to_dict() for r in self.runs.values()]

    def summary(self) -> dict:
        statuses: dict[str, int] = {}
        for r in self.runs.values():
            statuses[r.status.value] = statuses.get(r.status.value, 0) + 1
        return {
            "run_id": self.run_id,
            "total_jobs": len(self.runs),
            "statuses": statuses,
            "total_duration_sec": round(sum(r.duration_sec or 0 for r in self.runs.values()), 2),
        }

"""
Pipeline runner — turns one event into a finished, saved run record.

Shared by the Temporal activity and the in-process fallback in the API.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict
from datetime import datetime, timezone

from activities.readiness import Sleep
from config import Settings
from features.runs import store as run_store
from features.runs.tracker import RunTracker
from models.schemas import Event, Job, JobStatus, PipelineRun
from workflows.definition import default_jobs, pipeline_env
from workflows.graph import JobGraph
from workflows.scheduler import PipelineScheduler

log = logging.getLogger(__name__)


def prepare_pipeline(
    event: Event,
    settings: Settings,
    jobs: list[Job] | None = None,
    run_id: str | None = None,
    sleep: Sleep = asyncio.sleep,
) -> PipelineScheduler:
    """Validate the graph and secrets for ``event``.

    Raises ConfigurationError before any Job Run exists.
    """
    graph = JobGraph(jobs if jobs is not None else default_jobs(settings))
    scheduler = PipelineScheduler(
        graph, settings, pipeline_env(settings, event), run_id=run_id, sleep=sleep,
    )
    scheduler.check_secrets(event)
    return scheduler


def pipeline_status(tracker: RunTracker) -> str:
    statuses = {r.status for r in tracker.runs.values()}
    if JobStatus.CANCELLED in statuses:
        return "cancelled"
    if JobStatus.FAILED in statuses:
        return "failed"
    return "succeeded"


async def run_pipeline(scheduler: PipelineScheduler, event: Event, save: bool = True) -> dict:
    """Run the scheduler and build the run record; cancellation still saves it."""
    record = PipelineRun(
        run_id=scheduler.run_id,
        event=event.to_dict(),
        started_at=datetime.now(timezone.utc).isoformat(),
        status="running",
    )
    pipeline_start = time.monotonic()
    log.info("Pipeline %s starting for %s@%s", record.run_id, event.branch, event.revision_id)

    try:
        await scheduler.run(event)
        record.status = pipeline_status(scheduler.tracker)
    except asyncio.CancelledError:
        record.status = "cancelled"
        record.error = "superseded or cancelled"
        _finalize(record, scheduler, pipeline_start, save)
        raise

    _finalize(record, scheduler, pipeline_start, save)
    return asdict(record)


def _finalize(record: PipelineRun, scheduler: PipelineScheduler, started: float, save: bool) -> None:
    record.completed_at = datetime.now(timezone.utc).isoformat()
    record.duration_sec = round(time.monotonic() - started, 2)
    record.jobs = scheduler.tracker.to_list()
    record.job_summary = scheduler.tracker.summary()
    failed = [r for r in scheduler.tracker.runs.values() if r.status is JobStatus.FAILED]
    if failed and not record.error:
        record.error = "; ".join(f"{r.name}: {r.failed_step or '-'}: {r.error}" for r in failed)
    if save:
        record.log_file = run_store.save_run(scheduler.settings.runs_dir, asdict(record))
    log.info("Pipeline %s complete in %.1fs — %s", record.run_id, record.duration_sec, record.status)

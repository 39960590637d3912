"""
Temporal Workflow: Deployment Pipeline

Runs one pipeline invocation per workflow execution:
  1. Validate the job graph and required secrets (non-retryable on failure)
  2. Schedule build-test-lint, gated on backing-service readiness
  3. On a trunk push, schedule deploy: publish the image, roll it out remotely
  4. Save the run record

Nothing is retried automatically. Cancelling the workflow (a superseding push)
cancels the activity, which cancels every pending and running job.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from temporalio import activity, workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ApplicationError

with workflow.unsafe.imports_passed_through():
    from config import Settings
    from models.errors import ConfigurationError
    from models.schemas import Event
    from workflows.runner import prepare_pipeline, run_pipeline

log = logging.getLogger(__name__)

HEARTBEAT_EVERY = 10  # seconds


@workflow.defn
class DeploymentPipeline:
    """Temporal workflow wrapping a single pipeline invocation."""

    @workflow.run
    async def run(self, event: dict) -> dict:
        return await workflow.execute_activity(
            execute_pipeline,
            event,
            start_to_close_timeout=timedelta(hours=2),
            heartbeat_timeout=timedelta(minutes=1),
            retry_policy=RetryPolicy(maximum_attempts=1),
            cancellation_type=workflow.ActivityCancellationType.WAIT_CANCELLATION_COMPLETED,
        )


@activity.defn
async def execute_pipeline(event_data: dict) -> dict:
    """Run the pipeline for one event; the workflow id doubles as the run id."""
    event = Event.from_dict(event_data)
    settings = Settings.from_env()
    try:
        scheduler = prepare_pipeline(event, settings, run_id=activity.info().workflow_id)
    except ConfigurationError as e:
        raise ApplicationError(str(e), type="ConfigurationError", non_retryable=True) from e

    heartbeat = asyncio.create_task(_heartbeat())
    try:
        return await run_pipeline(scheduler, event)
    finally:
        heartbeat.cancel()


async def _heartbeat() -> None:
    while True:
        activity.heartbeat()
        await asyncio.sleep(HEARTBEAT_EVERY)

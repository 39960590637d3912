"""
Default pipeline: ``build-test-lint`` → ``deploy``.

build-test-lint runs for pushes and proposed merges targeting the trunk, with
Postgres and MinIO gated before the server tests. deploy needs build-test-lint
and runs only for pushes to the trunk.
"""

from __future__ import annotations

from activities.git_ops import checkout_step
from activities.publish import ContainerEngine, FLOATING_TAG, publish_step
from activities.readiness import object_store_probe, postgres_probe
from activities.remote_deploy import SessionFactory, deploy_step
from config import Settings
from models.schemas import BackingService, Event, Job, Step
from workflows.triggers import deploy_trigger, integration_trigger

BUILD_JOB = "build-test-lint"
DEPLOY_JOB = "deploy"

POSTGRES = "postgres"
MINIO = "minio"


def pipeline_env(settings: Settings, event: Event) -> dict[str, str]:
    """Pipeline-scope env; the event's revision and ref win over static config."""
    env = settings.build_env()
    env["COMMITHASH"] = event.revision_id
    env["VERSION"] = event.version or settings.version or event.branch
    return env


def backing_services(settings: Settings) -> tuple[BackingService, ...]:
    return (
        BackingService(
            POSTGRES,
            postgres_probe(settings.database_url),
            retry_interval=settings.health_retry_interval,
            max_retries=settings.health_max_retries,
        ),
        BackingService(
            MINIO,
            object_store_probe(settings.blob_storage_endpoint),
            retry_interval=settings.health_retry_interval,
            max_retries=settings.health_max_retries,
        ),
    )


def build_job(settings: Settings) -> Job:
    return Job(
        name=BUILD_JOB,
        trigger=integration_trigger(settings.trunk_branch),
        services=backing_services(settings),
        steps=(
            Step("Checkout code", action=checkout_step(settings)),
            Step("Tidy Go modules", command="go mod tidy"),
            Step("Install Node.js dependencies", command="npm ci"),
            Step("Install godotenv-cli", command="go install github.com/joho/godotenv/cmd/godotenv@latest"),
            Step("Lint server code", command="make lint-server"),
            Step("Lint UI code", command="make lint-ui"),
            Step("Build the application", command="make build"),
            Step("Run server unit tests", command="make test-server", needs_services=(POSTGRES, MINIO)),
            Step("Run UI unit tests", command="make test-ui"),
        ),
    )


def deploy_job(
    settings: Settings,
    engine: ContainerEngine | None = None,
    session_factory: SessionFactory | None = None,
) -> Job:
    return Job(
        name=DEPLOY_JOB,
        needs={BUILD_JOB},
        trigger=deploy_trigger(settings.trunk_branch),
        steps=(
            Step("Checkout code", action=checkout_step(settings)),
            Step(
                "Build and push image",
                action=publish_step(settings, engine),
                needs_secrets=("registry",),
            ),
            Step(
                "Deploy over tunnel",
                action=deploy_step(settings, FLOATING_TAG, session_factory),
                needs_secrets=("deploy_key",),
            ),
        ),
    )


def default_jobs(
    settings: Settings,
    engine: ContainerEngine | None = None,
    session_factory: SessionFactory | None = None,
) -> list[Job]:
    return [build_job(settings), deploy_job(settings, engine, session_factory)]

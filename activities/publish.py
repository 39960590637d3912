"""
Activity: Artifact Publisher — builds the image and pushes it under every tag.

Every pipeline run pushes a floating alias (``latest``) and the immutable
revision id, so a given run's image stays addressable after ``latest`` moves.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from config import Secrets, Settings
from models.errors import PublishError
from models.schemas import Artifact, StepContext, StepResult, StepStatus
from utils.shell import CommandResult, run_command

log = logging.getLogger(__name__)

FLOATING_TAG = "latest"


class ContainerEngine(Protocol):
    async def login(self, username: str, token: str) -> CommandResult: ...

    async def build(self, context: str, references: list[str]) -> CommandResult: ...

    async def push(self, reference: str) -> CommandResult: ...


class DockerCLI:
    """``docker`` command line. The token goes over stdin, never argv."""

    def __init__(self, registry: str = "", timeout: float = 3600.0, secrets: list[str] | None = None):
        self.registry = registry
        self.timeout = timeout
        self.secrets = list(secrets or [])

    async def login(self, username: str, token: str) -> CommandResult:
        args = ["docker", "login", "--username", username, "--password-stdin"]
        if self.registry:
            args.append(self.registry)
        return await run_command(args, stdin=token, timeout=120, secrets=[token, *self.secrets])

    async def build(self, context: str, references: list[str]) -> CommandResult:
        args = ["docker", "build"]
        for ref in references:
            args += ["--tag", ref]
        args.append(context)
        return await run_command(args, timeout=self.timeout, secrets=self.secrets)

    async def push(self, reference: str) -> CommandResult:
        return await run_command(["docker", "push", reference], timeout=self.timeout, secrets=self.secrets)


class ArtifactPublisher:
    def __init__(self, engine: ContainerEngine, image_repository: str):
        self.engine = engine
        self.image_repository = image_repository

    async def publish(self, context: str, tags: list[str], credentials: Secrets) -> Artifact:
        """Login, build, then push each tag. Any failure raises PublishError."""
        tags = list(dict.fromkeys(t for t in tags if t))
        if not tags:
            raise PublishError("tagging", "no tags requested")
        if not (credentials.registry_username and credentials.registry_token):
            raise PublishError("login", "registry credentials are missing")

        artifact = Artifact(image_reference=self.image_repository, tags=tuple(tags))

        result = await self.engine.login(credentials.registry_username, credentials.registry_token)
        if not result.ok:
            raise PublishError("login", _tail(result.output))
        log.info("Logged in to registry as %s", credentials.registry_username)

        result = await self.engine.build(context, artifact.references)
        if not result.ok:
            raise PublishError("build", _tail(result.output))
        log.info("Built %s", ", ".join(artifact.references))

        for ref in artifact.references:
            result = await self.engine.push(ref)
            if not result.ok:
                raise PublishError("push", f"{ref}: {_tail(result.output)}")
            log.info("Pushed %s", ref)

        return artifact


def artifact_tags(revision_id: str) -> list[str]:
    return [FLOATING_TAG, revision_id]


def publish_step(settings: Settings, engine: ContainerEngine | None = None):
    """Step action: build and push ``<image_repository>:{latest,<revision>}``."""
    engine = engine or DockerCLI(timeout=settings.step_timeout, secrets=settings.secrets.values())
    publisher = ArtifactPublisher(engine, settings.image_repository)

    async def action(ctx: StepContext) -> StepResult:
        # Only present when the step declares needs_secrets=("registry",)
        credentials = Secrets(
            registry_username=ctx.env.get("REGISTRY_USERNAME", ""),
            registry_token=ctx.env.get("REGISTRY_TOKEN", ""),
        )
        context = str(Path(ctx.workdir) / settings.build_context)
        artifact = await publisher.publish(
            context, artifact_tags(ctx.event.revision_id), credentials
        )
        return StepResult(
            name=ctx.step_name,
            status=StepStatus.SUCCEEDED,
            exit_status=0,
            logs="\n".join(artifact.references),
            output={"image": artifact.image_reference, "tags": list(artifact.tags)},
        )

    return action


def _tail(output: str, lines: int = 20) -> str:
    return "\n".join(output.strip().splitlines()[-lines:])

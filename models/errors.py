"""
Pipeline error taxonomy.

Only ConfigurationError escapes a pipeline invocation; the scheduler turns the
others into Job Run statuses.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for orchestration failures."""


class ConfigurationError(PipelineError):
    """Malformed job graph or missing required secret. Aborts before any Job Run."""


class ReadinessTimeoutError(PipelineError):
    """A backing service never became healthy within its retry budget."""

    def __init__(self, service: str, attempts: int, interval: float) -> None:
        super().__init__(
            f"Service {service} not ready after {attempts} attempts ({interval:g}s interval)"
        )
        self.service = service
        self.attempts = attempts
        self.interval = interval


class StepFailure(PipelineError):
    """A step command exited with a non-zero status."""

    def __init__(self, step: str, exit_status: int | None, output: str = "") -> None:
        super().__init__(f"Step {step} failed (exit={exit_status})")
        self.step = step
        self.exit_status = exit_status
        self.output = output


class PublishError(PipelineError):
    """Registry authentication, image build or push failed."""

    def __init__(self, phase: str, message: str) -> None:
        super().__init__(f"Publish failed during {phase}: {message}")
        self.phase = phase


class DeployError(PipelineError):
    """Tunnel, session or remote command failure during rollout."""

    def __init__(self, operation: str, command: str, message: str) -> None:
        super().__init__(f"Remote operation {operation} failed: {message}")
        self.operation = operation
        self.command = command

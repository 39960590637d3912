"""
Subprocess helpers shared by the stage runner, publisher and remote executor.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Iterable

import config

log = logging.getLogger(__name__)

REDACTED = "***"


@dataclass
class CommandResult:
    args: list[str]
    exit_status: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every secret value in ``text``."""
    for value in secrets:
        if value:
            text = text.replace(value, REDACTED)
    return text


def build_env(overrides: dict[str, str] | None = None) -> dict[str, str]:
    """Process environment without secrets, plus overrides; never prompt for git credentials."""
    env = {k: v for k, v in os.environ.items() if k not in config.SECRET_ENV_VARS}
    if overrides:
        env.update(overrides)
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


async def run_command(
    args: list[str],
    *,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    stdin: str | None = None,
    timeout: float | None = None,
    secrets: Iterable[str] = (),
) -> CommandResult:
    """Run a command without a shell, capturing stdout+stderr.

    A timeout kills the process and reports exit status -1. Cancellation kills
    the process before propagating.
    """
    secrets = list(secrets)
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=build_env(env),
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    data = stdin.encode() if stdin is not None else None
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(data), timeout=timeout)
    except asyncio.TimeoutError:
        _kill(proc)
        await proc.wait()
        log.error("Command timed out after %ss: %s", timeout, redact(" ".join(args), secrets))
        return CommandResult(args=args, exit_status=-1, output=f"TIMEOUT after {timeout}s")
    except asyncio.CancelledError:
        _kill(proc)
        await proc.wait()
        raise

    output = redact(stdout.decode(errors="replace"), secrets)
    if len(output) > config.MAX_LOG_CHARS:
        output = output[-config.MAX_LOG_CHARS:]
    return CommandResult(args=args, exit_status=proc.returncode, output=output)


async def run_shell(command: str, **kwargs) -> CommandResult:
    """Run a step command line through ``sh -c`` with errexit."""
    return await run_command(["sh", "-ec", command], **kwargs)


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass

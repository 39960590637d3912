"""
Activity: Git Operations — prepares the local checkout a job builds from.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path

from config import Settings
from models.errors import StepFailure
from models.schemas import StepContext, StepResult, StepStatus
from utils.shell import build_env

log = logging.getLogger(__name__)

GIT_TIMEOUT = 300


def checkout_revision(workdir: str, repository_url: str, revision: str) -> dict:
    """Clone (or fetch into) ``workdir`` and check out ``revision`` detached.

    With no repository URL the workdir is used as-is: it must already be a
    checkout, and only the revision is checked out.
    """
    repo = Path(workdir)
    if not (repo / ".git").exists():
        if not repository_url:
            raise StepFailure("checkout", None, f"{workdir} is not a git checkout and no REPOSITORY_URL is set")
        log.info("Cloning %s into %s", repository_url, workdir)
        repo.parent.mkdir(parents=True, exist_ok=True)
        _git(str(repo.parent), "clone", repository_url, repo.name)
    elif repository_url:
        log.info("Fetching %s in %s", revision, workdir)
        _git(workdir, "fetch", "origin", revision)

    _git(workdir, "checkout", "--force", "--detach", revision)
    sha = _git(workdir, "rev-parse", "HEAD").strip()
    log.info("Checked out %s", sha)
    return {"revision": revision, "sha": sha}


def checkout_step(settings: Settings):
    """Step action: check out the event's revision into the job workdir."""
    async def action(ctx: StepContext) -> StepResult:
        loop = asyncio.get_running_loop()
        info = await loop.run_in_executor(
            None, checkout_revision, ctx.workdir, settings.repository_url, ctx.event.revision_id,
        )
        return StepResult(
            name=ctx.step_name,
            status=StepStatus.SUCCEEDED,
            exit_status=0,
            logs=f"HEAD is now at {info['sha']}",
            output=info,
        )
    return action


def _git(repo_path: str, *args: str) -> str:
    """Run a git command; a non-zero exit raises StepFailure."""
    result = subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        cwd=repo_path,
        env=build_env(),
        timeout=GIT_TIMEOUT,
    )
    if result.returncode != 0:
        log.warning("git %s failed: %s", " ".join(args), result.stderr)
        raise StepFailure(f"git {args[0]}", result.returncode, result.stdout + result.stderr)
    return result.stdout

"""
GitHub webhook payloads → pipeline Events.
"""

from __future__ import annotations

import hashlib
import hmac

from models.schemas import Event, EventType

BRANCH_PREFIX = "refs/heads/"


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check ``X-Hub-Signature-256``. No secret configured means no check."""
    if not secret:
        return True
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


def event_from_github(event_name: str, payload: dict) -> Event | None:
    """Map a ``push`` or ``pull_request`` delivery to an Event.

    Returns None for deliveries that never start a pipeline: other event
    types, tag pushes, branch deletions and closed pull requests.
    """
    if event_name == "push":
        ref = payload.get("ref", "")
        if not ref.startswith(BRANCH_PREFIX) or payload.get("deleted"):
            return None
        branch = ref[len(BRANCH_PREFIX):]
        return Event(
            type=EventType.PUSH,
            branch=branch,
            revision_id=payload["after"],
            version=branch,
        )

    if event_name == "pull_request":
        if payload.get("action") not in ("opened", "synchronize", "reopened"):
            return None
        pr = payload["pull_request"]
        return Event(
            type=EventType.PROPOSED_MERGE,
            branch=pr["base"]["ref"],
            revision_id=pr["head"]["sha"],
            source_branch=pr["head"]["ref"],
            version=f"{pr.get('number', '')}/merge",
        )

    return None

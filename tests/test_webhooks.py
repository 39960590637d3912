import hashlib
import hmac

import pytest

from models.schemas import EventType
from utils.webhooks import event_from_github, verify_signature


def test_push_to_branch():
    event = event_from_github("push", {"ref": "refs/heads/main", "after": "3f2a9c1"})
    assert event.type is EventType.PUSH
    assert event.branch == "main"
    assert event.revision_id == "3f2a9c1"
    assert event.version == "main"


@pytest.mark.parametrize(
    "payload",
    [
        {"ref": "refs/tags/v1.0", "after": "abc"},
        {"ref": "refs/heads/main", "after": "0000000", "deleted": True},
    ],
)
def test_tag_pushes_and_deletions_start_nothing(payload):
    assert event_from_github("push", payload) is None


def test_pull_request_targets_base_branch():
    payload = {
        "action": "synchronize",
        "number": 42,
        "pull_request": {
            "base": {"ref": "main"},
            "head": {"ref": "feature-x", "sha": "9d8e7f6"},
        },
    }
    event = event_from_github("pull_request", payload)
    assert event.type is EventType.PROPOSED_MERGE
    assert event.branch == "main"
    assert event.source_branch == "feature-x"
    assert event.revision_id == "9d8e7f6"
    assert event.version == "42/merge"


def test_closed_pull_request_and_other_events_are_ignored():
    assert event_from_github("pull_request", {"action": "closed"}) is None
    assert event_from_github("issues", {"action": "opened"}) is None


def test_malformed_push_raises():
    with pytest.raises(KeyError):
        event_from_github("push", {"ref": "refs/heads/main"})


def test_signature_check():
    body = b'{"ref": "refs/heads/main"}'
    good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert verify_signature("s3cret", body, good)
    assert not verify_signature("s3cret", body, "sha256=deadbeef")
    assert not verify_signature("s3cret", body, "")
    assert verify_signature("", body, "")

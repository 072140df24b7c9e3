from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from job_scheduler.domain.job import (
    ALLOWED_TRANSITIONS,
    RECURRING_INSTANCE_TAG,
    Job,
    JobPatch,
    JobSpec,
    JobStatus,
    JobType,
    can_transition,
    sources_of,
)

S = JobStatus


def test_transition_edges():
    edges = {(source, target) for source, targets in ALLOWED_TRANSITIONS.items() for target in targets}
    assert edges == {
        (S.PENDING, S.ACTIVE),
        (S.PENDING, S.CANCELLED),
        (S.DELAYED, S.ACTIVE),
        (S.DELAYED, S.CANCELLED),
        (S.ACTIVE, S.COMPLETED),
        (S.ACTIVE, S.FAILED),
        (S.ACTIVE, S.CANCELLED),
        (S.FAILED, S.PENDING),
        (S.FAILED, S.ACTIVE),
        (S.FAILED, S.CANCELLED),
    }


@pytest.mark.parametrize("terminal", [S.COMPLETED, S.CANCELLED])
def test_terminal_statuses_have_no_way_out(terminal):
    assert all(not can_transition(terminal, target) for target in JobStatus)


def test_sources_of():
    assert sources_of(S.CANCELLED) == {S.PENDING, S.DELAYED, S.ACTIVE, S.FAILED}
    assert sources_of(S.PENDING) == {S.FAILED}
    assert sources_of(S.COMPLETED) == {S.ACTIVE}


def test_spec_validation():
    with pytest.raises(ValidationError):
        JobSpec(name="x" * 101, type=JobType.IMMEDIATE, payload={}, owner="u")
    with pytest.raises(ValidationError):
        JobSpec(name="x", type=JobType.IMMEDIATE, payload={}, owner="u", priority=11)
    with pytest.raises(ValidationError):
        JobSpec(name="x", type=JobType.IMMEDIATE, payload={}, owner="u", max_retries=-1)

    spec = JobSpec(name="x", type=JobType.IMMEDIATE, payload={}, owner="u")
    assert spec.priority == 0
    assert spec.max_retries == 5


def test_naive_datetimes_are_utc():
    spec = JobSpec(
        name="x",
        type=JobType.SCHEDULED,
        payload={},
        owner="u",
        scheduled_at=datetime(2030, 1, 1, 12, 0),
    )
    assert spec.scheduled_at == datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_patch_changes_only_include_set_fields():
    patch = JobPatch(priority=3, description=None)
    assert patch.changes() == {"priority": 3, "description": None}


def test_max_attempts():
    job = Job(name="x", type=JobType.IMMEDIATE, owner="u", max_retries=0)
    assert job.max_attempts == 1
    job.max_retries = 4
    assert job.max_attempts == 4


def test_spawn_instance():
    parent = Job(
        name="Digest",
        type=JobType.RECURRING,
        status=S.PENDING,
        cron_expression="0 9 * * *",
        payload={"kind": "email", "recipient": "a@b.com"},
        owner="u",
        priority=-3,
        max_retries=7,
        tags=["digest"],
        queue_id="q_parent",
        next_run_at=datetime(2030, 1, 2, 9, tzinfo=timezone.utc),
    )
    now = datetime(2030, 1, 1, 9, tzinfo=timezone.utc)

    instance = parent.spawn_instance(now)

    assert instance.id != parent.id
    assert instance.name == f"Digest - {now.isoformat()}"
    assert instance.type == JobType.IMMEDIATE
    assert instance.status == S.PENDING
    assert instance.parent_id == parent.id
    assert instance.payload == parent.payload
    assert instance.payload is not parent.payload
    assert (instance.owner, instance.priority, instance.max_retries) == ("u", -3, 7)
    assert instance.tags == ["digest", RECURRING_INSTANCE_TAG]
    assert instance.cron_expression is None
    assert instance.queue_id is None

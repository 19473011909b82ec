from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace
from uuid import uuid4

import pytest

from jobflow.domain_errors import DomainError
from jobflow.services.task_spawner import build_subtasks, resolve_assignee, spawn_tasks_for_stage
from tests.fakes import T0


def test_build_subtasks_accepts_strings_and_titled_dicts() -> None:
    subtasks = build_subtasks(["Measure", {"id": "photos", "title": "Take photos"}])

    assert subtasks[0]["id"] == "subtask-1"
    assert subtasks[0]["title"] == "Measure"
    assert subtasks[1]["id"] == "photos"
    assert all(item["completed"] is False and item["upload_urls"] == [] for item in subtasks)


def test_build_subtasks_rejects_malformed_entries() -> None:
    template_id = uuid4()

    with pytest.raises(DomainError, match="#2") as exc:
        build_subtasks(["Measure", {"notes": "no title"}], template_id=template_id)

    assert exc.value.code == "SPAWN_ERROR"
    assert exc.value.details == {"template_id": str(template_id)}


def test_resolve_assignee_rules(repo, tenant_id) -> None:
    actor_id = uuid4()
    foreman_id = uuid4()
    owner = repo.seed_member(tenant_id=tenant_id, role="owner")
    job = SimpleNamespace(tenant_id=tenant_id, foreman_id=foreman_id)
    no_foreman = SimpleNamespace(tenant_id=uuid4(), foreman_id=None)

    assert resolve_assignee(repo, rule="creator", job=job, actor_id=actor_id) == actor_id
    assert resolve_assignee(repo, rule="foreman", job=job, actor_id=actor_id) == foreman_id
    assert resolve_assignee(repo, rule="foreman", job=no_foreman, actor_id=actor_id) == actor_id
    assert resolve_assignee(repo, rule="admin", job=job, actor_id=actor_id) == owner.user_id
    assert resolve_assignee(repo, rule="admin", job=no_foreman, actor_id=actor_id) == actor_id
    assert resolve_assignee(repo, rule="client", job=job, actor_id=actor_id) is None
    assert resolve_assignee(repo, rule="unassigned", job=job, actor_id=actor_id) is None


def test_spawn_creates_one_task_per_active_template(repo, tenant_id) -> None:
    stage = repo.seed_stage(tenant_id=tenant_id, name="Quote", sequence_order=1)
    repo.seed_template(stage=stage, title="Draft quote", due_date_offset_hours=0, sla_hours=8)
    repo.seed_template(stage=stage, title="Client portal", auto_assign_to="client", client_visible=True)
    repo.seed_template(stage=stage, title="Retired", is_active=False)
    job = repo.seed_job(tenant_id=tenant_id)
    actor_id = uuid4()

    tasks = spawn_tasks_for_stage(repo, job=job, stage_id=stage.id, entered_at=T0, actor_id=actor_id)

    assert [task.title for task in tasks] == ["Draft quote", "Client portal"]
    assert tasks[0].due_date is None
    assert tasks[0].sla_hours == 8
    assert tasks[0].assigned_to == actor_id
    assert tasks[0].created_at == T0
    assert tasks[1].assigned_to is None
    assert tasks[1].client_visible is True
    assert len(repo.notifications) == 1
    assert repo.flush_calls == 1


def test_spawn_is_idempotent_per_stage_entry(repo, tenant_id) -> None:
    stage = repo.seed_stage(tenant_id=tenant_id, name="Quote", sequence_order=1)
    repo.seed_template(stage=stage, title="Draft quote", due_date_offset_hours=24)
    job = repo.seed_job(tenant_id=tenant_id)

    first = spawn_tasks_for_stage(repo, job=job, stage_id=stage.id, entered_at=T0, actor_id=None)
    again = spawn_tasks_for_stage(repo, job=job, stage_id=stage.id, entered_at=T0, actor_id=None)
    reentry = spawn_tasks_for_stage(
        repo, job=job, stage_id=stage.id, entered_at=T0 + timedelta(days=3), actor_id=None
    )

    assert len(first) == 1
    assert first[0].due_date == T0 + timedelta(hours=24)
    assert again == []
    assert len(reentry) == 1
    assert len(repo.tasks) == 2


def test_spawn_wraps_storage_failures(repo, tenant_id) -> None:
    stage = repo.seed_stage(tenant_id=tenant_id, name="Quote", sequence_order=1)
    repo.seed_template(stage=stage)
    job = repo.seed_job(tenant_id=tenant_id)
    repo.fail_on_flush_call = 1

    with pytest.raises(DomainError, match="Failed to create stage tasks") as exc:
        spawn_tasks_for_stage(repo, job=job, stage_id=stage.id, entered_at=T0, actor_id=None)

    assert exc.value.code == "SPAWN_ERROR"
    assert exc.value.retryable is True

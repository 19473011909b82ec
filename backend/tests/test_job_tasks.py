from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from jobflow.domain_errors import DomainError
from jobflow.schemas import SubtaskUpdate, TaskCreate, TaskUpdate
from jobflow.use_cases.job_tasks import (
    cancel_job_task_use_case,
    create_manual_task_use_case,
    derive_status_from_subtasks,
    get_job_task_use_case,
    list_job_tasks_use_case,
    list_sla_violations_use_case,
    update_job_task_use_case,
)
from tests.fakes import T0, principal


def _subtasks(*titles):
    return [
        {
            "id": f"subtask-{index + 1}",
            "title": title,
            "completed": False,
            "completed_at": None,
            "completed_by": None,
            "notes": None,
            "upload_urls": [],
        }
        for index, title in enumerate(titles)
    ]


def _job_in_stage(repo, tenant_id):
    stage = repo.seed_stage(tenant_id=tenant_id, name="Site Visit", sequence_order=1)
    return repo.seed_job(tenant_id=tenant_id, stage=stage, entered_at=T0)


def test_derive_status_from_subtasks() -> None:
    assert derive_status_from_subtasks([]) is None
    assert derive_status_from_subtasks([{"completed": False}]) == "pending"
    assert derive_status_from_subtasks([{"completed": True}, {"completed": False}]) == "in_progress"
    assert derive_status_from_subtasks([{"completed": True}]) == "completed"


def test_list_tasks_enriches_sla_and_stats(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    repo.seed_task(job=job, title="Late", sla_hours=4)
    repo.seed_task(job=job, title="Fresh", sla_hours=48)
    repo.seed_task(job=job, title="Done", status="completed", sla_hours=4)

    result = list_job_tasks_use_case(
        repo=repo,
        job_id=job.id,
        actor=principal(tenant_id=tenant_id),
        now=T0 + timedelta(hours=5),
    )

    by_title = {item.title: item for item in result.tasks}
    assert by_title["Late"].sla_status == "violated"
    assert by_title["Late"].sla_deadline == T0 + timedelta(hours=4)
    assert by_title["Fresh"].sla_status == "ok"
    assert by_title["Done"].sla_status == "ok"
    assert result.stats.total == 3
    assert result.stats.pending == 2
    assert result.stats.completed == 1
    assert result.stats.completion_rate == 33
    assert result.stats.sla_violations == 1


def test_list_tasks_filters_by_status(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    repo.seed_task(job=job, title="Open")
    repo.seed_task(job=job, title="Done", status="completed")

    result = list_job_tasks_use_case(
        repo=repo,
        job_id=job.id,
        actor=principal(tenant_id=tenant_id),
        now=T0,
        status="completed",
    )

    assert [item.title for item in result.tasks] == ["Done"]


def test_clients_only_see_client_visible_tasks(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    repo.seed_task(job=job, title="Internal")
    shared = repo.seed_task(job=job, title="Pick tiles", client_visible=True)
    hidden = repo.tasks[0]
    client = principal(tenant_id=tenant_id, role="client")

    result = list_job_tasks_use_case(repo=repo, job_id=job.id, actor=client, now=T0)

    assert [item.id for item in result.tasks] == [shared.id]
    with pytest.raises(DomainError) as exc:
        get_job_task_use_case(repo=repo, job_id=job.id, task_id=hidden.id, actor=client)
    assert exc.value.code == "TASK_NOT_FOUND"
    assert exc.value.http_status == 404


def test_completing_all_subtasks_completes_task_and_counts_window(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    task = repo.seed_task(job=job, subtasks=_subtasks("Measure", "Photos"))
    actor = principal(tenant_id=tenant_id, role="worker")
    now = T0 + timedelta(hours=2)

    data = TaskUpdate(subtasks=[SubtaskUpdate(id="subtask-1", completed=True)])
    update_job_task_use_case(repo=repo, job_id=job.id, task_id=task.id, data=data, actor=actor, now=now)

    assert task.status == "in_progress"
    assert task.subtasks[0]["completed_by"] == str(actor.user_id)
    assert task.completed_at is None

    data = TaskUpdate(subtasks=[SubtaskUpdate(id="subtask-2", completed=True, notes="All angles")])
    update_job_task_use_case(repo=repo, job_id=job.id, task_id=task.id, data=data, actor=actor, now=now)

    assert task.status == "completed"
    assert task.completed_at == now
    assert task.completed_by == actor.user_id
    assert task.subtasks[1]["notes"] == "All angles"
    assert repo.windows[0].tasks_completed == 1
    assert repo.commit_calls >= 2


def test_unticking_subtask_keeps_overdue_status(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    subtasks = _subtasks("Measure", "Photos")
    subtasks[0]["completed"] = True
    task = repo.seed_task(job=job, status="overdue", subtasks=subtasks)
    actor = principal(tenant_id=tenant_id, role="worker")
    now = T0 + timedelta(hours=30)

    data = TaskUpdate(subtasks=[SubtaskUpdate(id="subtask-1", completed=False)])
    update_job_task_use_case(repo=repo, job_id=job.id, task_id=task.id, data=data, actor=actor, now=now)

    assert task.status == "overdue"
    assert task.subtasks[0]["completed"] is False

    data = TaskUpdate(status="in_progress")
    update_job_task_use_case(repo=repo, job_id=job.id, task_id=task.id, data=data, actor=actor, now=now)

    assert task.status == "in_progress"


def test_upload_required_task_cannot_complete_without_upload(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    task = repo.seed_task(job=job, upload_required=True)

    with pytest.raises(DomainError, match="requires an upload") as exc:
        update_job_task_use_case(
            repo=repo,
            job_id=job.id,
            task_id=task.id,
            data=TaskUpdate(status="completed"),
            actor=principal(tenant_id=tenant_id),
            now=T0,
        )

    assert exc.value.code == "UPLOAD_REQUIRED"
    assert exc.value.http_status == 400

    update_job_task_use_case(
        repo=repo,
        job_id=job.id,
        task_id=task.id,
        data=TaskUpdate(status="completed", upload_urls=["s3://bucket/permit.pdf"]),
        actor=principal(tenant_id=tenant_id),
        now=T0,
    )
    assert task.status == "completed"


def test_unknown_subtask_is_rejected(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    task = repo.seed_task(job=job, subtasks=_subtasks("Measure"))

    with pytest.raises(DomainError) as exc:
        update_job_task_use_case(
            repo=repo,
            job_id=job.id,
            task_id=task.id,
            data=TaskUpdate(subtasks=[SubtaskUpdate(id="subtask-9", completed=True)]),
            actor=principal(tenant_id=tenant_id),
            now=T0,
        )

    assert exc.value.code == "SUBTASK_NOT_FOUND"
    assert task.subtasks[0]["completed"] is False


def test_terminal_task_cannot_be_updated(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    task = repo.seed_task(job=job, status="cancelled")

    with pytest.raises(DomainError, match="already cancelled") as exc:
        update_job_task_use_case(
            repo=repo,
            job_id=job.id,
            task_id=task.id,
            data=TaskUpdate(status="in_progress"),
            actor=principal(tenant_id=tenant_id),
            now=T0,
        )

    assert exc.value.code == "TASK_TERMINAL"


def test_client_cannot_update_tasks(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    task = repo.seed_task(job=job, client_visible=True)

    with pytest.raises(DomainError) as exc:
        update_job_task_use_case(
            repo=repo,
            job_id=job.id,
            task_id=task.id,
            data=TaskUpdate(status="in_progress"),
            actor=principal(tenant_id=tenant_id, role="client"),
            now=T0,
        )

    assert exc.value.code == "ACCESS_DENIED"


def test_manual_task_notifies_other_assignee(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    assignee = uuid4()
    data = TaskCreate(title="Order skip", subtasks=["Book", "Confirm"], sla_hours=12, assigned_to=assignee)

    task = create_manual_task_use_case(
        repo=repo,
        job_id=job.id,
        data=data,
        actor=principal(tenant_id=tenant_id),
        now=T0,
    )

    assert task.task_type == "manual"
    assert task.stage_id == job.current_stage_id
    assert task.assigned_to == assignee
    assert [item["title"] for item in task.subtasks] == ["Book", "Confirm"]
    assert repo.templates[0].is_active is False
    assert task.template_id == repo.templates[0].id
    assert len(repo.notifications) == 1


def test_manual_task_for_self_skips_notification(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    actor = principal(tenant_id=tenant_id)

    task = create_manual_task_use_case(
        repo=repo, job_id=job.id, data=TaskCreate(title="Call back"), actor=actor, now=T0
    )

    assert task.assigned_to == actor.user_id
    assert repo.notifications == []


def test_manual_task_requires_job_in_pipeline(repo, tenant_id) -> None:
    job = repo.seed_job(tenant_id=tenant_id)

    with pytest.raises(DomainError) as exc:
        create_manual_task_use_case(
            repo=repo, job_id=job.id, data=TaskCreate(title="x"), actor=principal(tenant_id=tenant_id), now=T0
        )

    assert exc.value.code == "JOB_NOT_IN_PIPELINE"
    assert exc.value.http_status == 409


def test_cancel_task(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    task = repo.seed_task(job=job)
    done = repo.seed_task(job=job, status="completed")
    actor = principal(tenant_id=tenant_id)

    cancel_job_task_use_case(repo=repo, job_id=job.id, task_id=task.id, actor=actor, now=T0)
    assert task.status == "cancelled"

    with pytest.raises(DomainError) as exc:
        cancel_job_task_use_case(repo=repo, job_id=job.id, task_id=done.id, actor=actor, now=T0)
    assert exc.value.code == "TASK_ALREADY_COMPLETED"


def test_sla_violations_sorted_worst_first(repo, tenant_id) -> None:
    job = _job_in_stage(repo, tenant_id)
    repo.seed_task(job=job, title="Slightly late", sla_hours=40)
    repo.seed_task(job=job, title="Very late", sla_hours=1)
    repo.seed_task(job=job, title="Fine", sla_hours=100)
    repo.seed_task(job=job, title="Done", sla_hours=1, status="completed")
    other = repo.seed_job(tenant_id=uuid4())
    repo.seed_task(job=other, title="Other tenant", sla_hours=1, stage_id=uuid4())

    violations = list_sla_violations_use_case(
        repo=repo,
        actor=principal(tenant_id=tenant_id),
        now=T0 + timedelta(hours=50),
    )

    assert [v.title for v in violations] == ["Very late", "Slightly late"]
    assert violations[0].hours_overdue == 49.0
    assert violations[0].severity == "critical"
    assert violations[1].severity == "medium"

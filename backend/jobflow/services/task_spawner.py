"""Materialize stage task templates into job tasks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError

from ..domain_errors import SpawnError
from ..models import ASSIGN_RULES, Job, JobTask, NotificationOutbox, TaskTemplate

logger = logging.getLogger(__name__)

ADMIN_MEMBER_ROLES: tuple[str, ...] = ("owner", "site_admin")


def build_subtasks(raw_subtasks: list[Any] | None, *, template_id: UUID | None = None) -> list[dict]:
    """Copy template subtasks into fresh, uncompleted subtask states."""
    subtasks: list[dict] = []
    for index, raw in enumerate(raw_subtasks or []):
        if isinstance(raw, str):
            title = raw
            subtask_id = None
        elif isinstance(raw, dict) and raw.get("title"):
            title = str(raw["title"])
            subtask_id = raw.get("id")
        else:
            raise SpawnError(
                f"Template subtask #{index + 1} is malformed",
                template_id=str(template_id) if template_id else None,
            )
        subtasks.append(
            {
                "id": str(subtask_id or f"subtask-{index + 1}"),
                "title": title,
                "completed": False,
                "completed_at": None,
                "completed_by": None,
                "notes": None,
                "upload_urls": [],
            }
        )
    return subtasks


def resolve_assignee(repo, *, rule: str, job: Job, actor_id: UUID | None) -> UUID | None:
    """Apply a template auto-assign rule."""
    if rule == "creator":
        return actor_id
    if rule == "foreman":
        return job.foreman_id or actor_id
    if rule == "admin":
        member = repo.find_member_by_roles(job.tenant_id, ADMIN_MEMBER_ROLES)
        return member.user_id if member else actor_id
    # "client" tasks are surfaced through client visibility, not an assignee.
    return None


def build_assignment_notification(task: JobTask, *, recipient_id: UUID) -> NotificationOutbox:
    return NotificationOutbox(
        id=uuid4(),
        tenant_id=task.tenant_id,
        type="task_assigned",
        job_id=task.job_id,
        task_id=task.id,
        task_title=task.title,
        recipient_user_id=recipient_id,
        message=f"New task assigned: {task.title}",
        meta_data={"priority": task.priority},
        status="pending",
        attempts=0,
        idempotency_key=f"task_assigned:{task.id}:{recipient_id}",
    )


def _task_from_template(
    template: TaskTemplate,
    *,
    job: Job,
    stage_id: UUID,
    entered_at: datetime,
    assignee: UUID | None,
    actor_id: UUID | None,
) -> JobTask:
    offset = template.due_date_offset_hours or 0
    if offset < 0:
        raise SpawnError("Template due offset must not be negative", template_id=str(template.id))
    return JobTask(
        id=uuid4(),
        job_id=job.id,
        tenant_id=job.tenant_id,
        template_id=template.id,
        stage_id=stage_id,
        stage_entered_at=entered_at,
        title=template.title,
        description=template.description,
        task_type=template.task_type,
        status="pending",
        priority=template.priority or "normal",
        subtasks=build_subtasks(template.subtasks, template_id=template.id),
        assigned_to=assignee,
        due_date=entered_at + timedelta(hours=offset) if offset > 0 else None,
        sla_hours=template.sla_hours,
        upload_required=bool(template.upload_required),
        upload_urls=[],
        client_visible=bool(template.client_visible),
        created_by=actor_id,
        created_at=entered_at,
        updated_at=entered_at,
    )


def spawn_tasks_for_stage(
    repo,
    *,
    job: Job,
    stage_id: UUID,
    entered_at: datetime,
    actor_id: UUID | None,
) -> list[JobTask]:
    """Create one pending task per active template of the stage.

    Idempotent per (job, template, stage entry): templates already spawned for
    this entry timestamp are skipped.
    """
    templates = repo.list_active_templates(stage_id)
    already_spawned = repo.spawned_template_ids(job_id=job.id, stage_entered_at=entered_at)

    created: list[JobTask] = []
    try:
        for template in templates:
            if template.id in already_spawned:
                continue
            rule = template.auto_assign_to or "creator"
            if rule not in ASSIGN_RULES:
                raise SpawnError(f"Unknown assign rule: {rule}", template_id=str(template.id))
            assignee = resolve_assignee(repo, rule=rule, job=job, actor_id=actor_id)
            task = _task_from_template(
                template,
                job=job,
                stage_id=stage_id,
                entered_at=entered_at,
                assignee=assignee,
                actor_id=actor_id,
            )
            repo.add_task(task)
            if assignee is not None:
                repo.add_notification(build_assignment_notification(task, recipient_id=assignee))
            created.append(task)
        repo.flush()
    except SQLAlchemyError as exc:
        logger.exception("Task spawn failed for job %s stage %s", job.id, stage_id)
        raise SpawnError("Failed to create stage tasks") from exc

    if created:
        logger.info(
            "Spawned %d task(s) for job %s in stage %s",
            len(created),
            job.id,
            stage_id,
            extra={"job_id": job.id, "stage_id": stage_id},
        )
    return created

"""Job task use-cases used by task router endpoints."""
from __future__ import annotations

import copy
import logging
from datetime import datetime
from uuid import UUID, uuid4

from ..auth import Principal
from ..domain_errors import DomainError, NotFound
from ..models import TERMINAL_TASK_STATUSES, Job, JobTask, TaskTemplate
from ..repositories import ProgressionRepository
from ..schemas import SlaViolationOut, TaskCreate, TaskListOut, TaskUpdate
from ..security import can_view_task, require_permission, require_tenant_access
from ..services.sla import sla_deadline, violation_severity
from ..services.task_response_builder import build_task_stats, tasks_to_response
from ..services.task_spawner import build_assignment_notification, build_subtasks

logger = logging.getLogger(__name__)


def _get_job_in_scope(repo: ProgressionRepository, *, job_id: UUID, actor: Principal) -> Job:
    job = repo.get_job(job_id)
    if job is None:
        raise NotFound("Job not found", code="JOB_NOT_FOUND")
    require_tenant_access(actor, job.tenant_id)
    return job


def _get_task_or_404(
    repo: ProgressionRepository,
    *,
    job_id: UUID,
    task_id: UUID,
    actor: Principal,
    for_update: bool = False,
) -> JobTask:
    task = repo.get_task(task_id, job_id=job_id, for_update=for_update)
    if task is None or not can_view_task(actor, task):
        raise NotFound("Task not found", code="TASK_NOT_FOUND")
    return task


def derive_status_from_subtasks(subtasks: list[dict]) -> str | None:
    """All done -> completed, some -> in_progress, none -> pending."""
    if not subtasks:
        return None
    done = sum(1 for item in subtasks if item.get("completed"))
    if done == len(subtasks):
        return "completed"
    if done:
        return "in_progress"
    return "pending"


def _has_uploads(task: JobTask) -> bool:
    if task.upload_urls:
        return True
    return any(item.get("upload_urls") for item in task.subtasks or [])


def list_job_tasks_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    actor: Principal,
    now: datetime,
    status: str | None = None,
    client_visible: bool | None = None,
) -> TaskListOut:
    """Tasks of a job with SLA status and aggregate stats."""
    require_permission(actor, "canViewTasks")
    _get_job_in_scope(repo, job_id=job_id, actor=actor)

    tasks = [task for task in repo.list_tasks(job_id) if can_view_task(actor, task)]
    if status is not None:
        tasks = [task for task in tasks if task.status == status]
    if client_visible is not None:
        tasks = [task for task in tasks if bool(task.client_visible) == client_visible]

    items = tasks_to_response(tasks, now=now)
    return TaskListOut(tasks=items, stats=build_task_stats(items))


def get_job_task_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    task_id: UUID,
    actor: Principal,
) -> JobTask:
    require_permission(actor, "canViewTasks")
    _get_job_in_scope(repo, job_id=job_id, actor=actor)
    return _get_task_or_404(repo, job_id=job_id, task_id=task_id, actor=actor)


def _merge_subtasks(task: JobTask, data: TaskUpdate, *, actor: Principal, now: datetime) -> list[dict]:
    subtasks = copy.deepcopy(list(task.subtasks or []))
    by_id = {item.get("id"): item for item in subtasks}
    for update in data.subtasks or []:
        item = by_id.get(update.id)
        if item is None:
            raise DomainError(
                code="SUBTASK_NOT_FOUND",
                http_status=400,
                message=f"Subtask {update.id} not found on task",
            )
        if update.completed is not None:
            if update.completed and not item.get("completed"):
                item["completed_at"] = now.isoformat()
                item["completed_by"] = str(actor.user_id)
            elif not update.completed:
                item["completed_at"] = None
                item["completed_by"] = None
            item["completed"] = update.completed
        if update.notes is not None:
            item["notes"] = update.notes
        if update.upload_urls is not None:
            item["upload_urls"] = list(update.upload_urls)
    return subtasks


def update_job_task_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    task_id: UUID,
    data: TaskUpdate,
    actor: Principal,
    now: datetime,
) -> JobTask:
    """Apply subtask/status changes to a task."""
    require_permission(actor, "canManageTasks")
    _get_job_in_scope(repo, job_id=job_id, actor=actor)
    task = _get_task_or_404(repo, job_id=job_id, task_id=task_id, actor=actor, for_update=True)

    if task.status in TERMINAL_TASK_STATUSES:
        raise DomainError(
            code="TASK_TERMINAL",
            http_status=400,
            message=f"Task is already {task.status}",
        )

    old_status = task.status
    if data.subtasks:
        task.subtasks = _merge_subtasks(task, data, actor=actor, now=now)
    if data.upload_urls is not None:
        task.upload_urls = list(data.upload_urls)
    if data.assigned_to is not None:
        task.assigned_to = data.assigned_to

    new_status = data.status
    if new_status is None and data.subtasks:
        new_status = derive_status_from_subtasks(task.subtasks)
        # Only completion clears the overdue flag implicitly.
        if old_status == "overdue" and new_status != "completed":
            new_status = old_status
    new_status = new_status or old_status

    if new_status == "completed" and task.upload_required and not _has_uploads(task):
        raise DomainError(
            code="UPLOAD_REQUIRED",
            http_status=400,
            message="This task requires an upload before it can be completed",
        )

    task.status = new_status
    task.updated_at = now
    if new_status == "completed" and old_status != "completed":
        task.completed_at = now
        task.completed_by = actor.user_id
        window = repo.get_open_window(job_id, for_update=True)
        if window is not None and window.stage_id == task.stage_id:
            window.tasks_completed = (window.tasks_completed or 0) + 1

    repo.commit()
    if old_status != new_status:
        logger.info("Task %s status %s -> %s", task.id, old_status, new_status, extra={"job_id": job_id})
    return task


def create_manual_task_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    data: TaskCreate,
    actor: Principal,
    now: datetime,
) -> JobTask:
    """Create a one-off task on the job's current stage."""
    require_permission(actor, "canManageTasks")
    job = _get_job_in_scope(repo, job_id=job_id, actor=actor)
    if job.current_stage_id is None:
        raise DomainError(
            code="JOB_NOT_IN_PIPELINE",
            http_status=409,
            message="Job has no current stage",
        )

    template = TaskTemplate(
        id=uuid4(),
        stage_id=job.current_stage_id,
        task_type="manual",
        title=data.title,
        description=data.description,
        subtasks=list(data.subtasks),
        upload_required=data.upload_required,
        sla_hours=data.sla_hours,
        due_date_offset_hours=0,
        priority=data.priority,
        auto_assign_to="creator",
        client_visible=data.client_visible,
        is_active=False,
        created_at=now,
    )
    repo.add_template(template)

    assignee = data.assigned_to or actor.user_id
    task = JobTask(
        id=uuid4(),
        job_id=job.id,
        tenant_id=job.tenant_id,
        template_id=template.id,
        stage_id=job.current_stage_id,
        stage_entered_at=job.stage_entered_at or now,
        title=data.title,
        description=data.description,
        task_type="manual",
        status="pending",
        priority=data.priority,
        subtasks=build_subtasks(data.subtasks),
        assigned_to=assignee,
        due_date=data.due_date,
        sla_hours=data.sla_hours,
        upload_required=data.upload_required,
        upload_urls=[],
        client_visible=data.client_visible,
        created_by=actor.user_id,
        created_at=now,
        updated_at=now,
    )
    repo.add_task(task)
    if assignee != actor.user_id:
        repo.add_notification(build_assignment_notification(task, recipient_id=assignee))
    repo.commit()
    return task


def cancel_job_task_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    task_id: UUID,
    actor: Principal,
    now: datetime,
) -> JobTask:
    """Soft-cancel a task. Completed tasks stay completed."""
    require_permission(actor, "canManageTasks")
    _get_job_in_scope(repo, job_id=job_id, actor=actor)
    task = _get_task_or_404(repo, job_id=job_id, task_id=task_id, actor=actor, for_update=True)

    if task.status == "completed":
        raise DomainError(
            code="TASK_ALREADY_COMPLETED",
            http_status=400,
            message="Completed tasks cannot be cancelled",
        )
    if task.status == "cancelled":
        return task

    task.status = "cancelled"
    task.updated_at = now
    repo.commit()
    return task


def list_sla_violations_use_case(
    *,
    repo: ProgressionRepository,
    actor: Principal,
    now: datetime,
) -> list[SlaViolationOut]:
    """Open tasks past their SLA deadline, worst first."""
    require_permission(actor, "canViewTasks")
    tenant_scope = None if actor.is_site_admin else actor.tenant_id

    violations: list[SlaViolationOut] = []
    for task in repo.list_open_tasks_for_tenant(tenant_scope):
        if not can_view_task(actor, task):
            continue
        deadline = sla_deadline(task.created_at, task.sla_hours)
        if deadline is None or now <= deadline:
            continue
        hours_overdue = round((now - deadline).total_seconds() / 3600, 2)
        violations.append(
            SlaViolationOut(
                task_id=task.id,
                job_id=task.job_id,
                title=task.title,
                status=task.status,
                assigned_to=task.assigned_to,
                sla_deadline=deadline,
                hours_overdue=hours_overdue,
                severity=violation_severity(hours_overdue),
            )
        )
    violations.sort(key=lambda item: item.hours_overdue, reverse=True)
    return violations

"""Job task endpoints."""
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from ..auth import Principal, PermissionChecker
from ..celery_app import enqueue_outbox_dispatch
from ..envelopes import success_response
from ..repositories import SqlProgressionRepository, get_progression_repository
from ..schemas import TaskCreate, TaskStatus, TaskUpdate
from ..services.sla import now_utc
from ..services.task_response_builder import task_to_response
from ..use_cases.job_tasks import (
    cancel_job_task_use_case,
    create_manual_task_use_case,
    get_job_task_use_case,
    list_job_tasks_use_case,
    list_sla_violations_use_case,
    update_job_task_use_case,
)

router = APIRouter(prefix="/jobs", tags=["tasks"])
sla_router = APIRouter(prefix="/sla", tags=["tasks"])


@router.get("/{job_id}/tasks")
def list_tasks(
    job_id: UUID,
    request: Request,
    status: Optional[TaskStatus] = Query(None),
    client_visible: Optional[bool] = Query(None),
    principal: Principal = Depends(PermissionChecker("canViewTasks")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    """Tasks with SLA status and stats."""
    result = list_job_tasks_use_case(
        repo=repo,
        job_id=job_id,
        actor=principal,
        now=now_utc(),
        status=status,
        client_visible=client_visible,
    )
    return success_response(request, result)


@router.get("/{job_id}/tasks/{task_id}")
def get_task(
    job_id: UUID,
    task_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canViewTasks")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    task = get_job_task_use_case(repo=repo, job_id=job_id, task_id=task_id, actor=principal)
    return success_response(request, task_to_response(task, now=now_utc()))


@router.post("/{job_id}/tasks", status_code=201)
def create_task(
    job_id: UUID,
    data: TaskCreate,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageTasks")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    """Create a manual task on the job's current stage."""
    task = create_manual_task_use_case(repo=repo, job_id=job_id, data=data, actor=principal, now=now_utc())
    enqueue_outbox_dispatch()
    return success_response(request, task_to_response(task, now=now_utc()), status_code=201)


@router.put("/{job_id}/tasks/{task_id}")
def update_task(
    job_id: UUID,
    task_id: UUID,
    data: TaskUpdate,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageTasks")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    """Subtask completion and status changes."""
    now = now_utc()
    task = update_job_task_use_case(repo=repo, job_id=job_id, task_id=task_id, data=data, actor=principal, now=now)
    return success_response(request, task_to_response(task, now=now))


@router.delete("/{job_id}/tasks/{task_id}")
def cancel_task(
    job_id: UUID,
    task_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageTasks")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    """Soft-cancel a task."""
    now = now_utc()
    task = cancel_job_task_use_case(repo=repo, job_id=job_id, task_id=task_id, actor=principal, now=now)
    return success_response(request, task_to_response(task, now=now))


@sla_router.get("/violations")
def list_sla_violations(
    request: Request,
    principal: Principal = Depends(PermissionChecker("canViewTasks")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    """Open tasks past their SLA deadline across the tenant."""
    return success_response(request, list_sla_violations_use_case(repo=repo, actor=principal, now=now_utc()))

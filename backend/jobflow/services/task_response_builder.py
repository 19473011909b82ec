"""Job task serialization helpers with read-time SLA enrichment."""
from __future__ import annotations

from datetime import datetime

from ..config import settings
from ..models import JobTask
from ..schemas import JobTaskOut, SubtaskState, TaskStats
from .sla import SLA_VIOLATED, evaluate_sla, sla_deadline, subtask_progress


def task_to_response(task: JobTask, *, now: datetime) -> JobTaskOut:
    subtasks = list(task.subtasks or [])
    return JobTaskOut(
        id=task.id,
        job_id=task.job_id,
        template_id=task.template_id,
        stage_id=task.stage_id,
        title=task.title,
        description=task.description,
        task_type=task.task_type,
        status=task.status,
        priority=task.priority,
        subtasks=[SubtaskState(**item) for item in subtasks],
        assigned_to=task.assigned_to,
        due_date=task.due_date,
        sla_hours=task.sla_hours,
        upload_required=bool(task.upload_required),
        upload_urls=list(task.upload_urls or []),
        client_visible=bool(task.client_visible),
        completed_at=task.completed_at,
        completed_by=task.completed_by,
        created_at=task.created_at,
        progress=subtask_progress(subtasks),
        sla_status=evaluate_sla(
            created_at=task.created_at,
            sla_hours=task.sla_hours,
            status=task.status,
            now=now,
            warning_window_hours=settings.SLA_WARNING_WINDOW_HOURS,
        ),
        sla_deadline=sla_deadline(task.created_at, task.sla_hours),
    )


def tasks_to_response(tasks: list[JobTask], *, now: datetime) -> list[JobTaskOut]:
    return [task_to_response(task, now=now) for task in tasks]


def build_task_stats(items: list[JobTaskOut]) -> TaskStats:
    """Aggregate counters over already-enriched tasks."""
    counts = {status: 0 for status in ("pending", "in_progress", "completed", "overdue", "cancelled")}
    for item in items:
        if item.status in counts:
            counts[item.status] += 1
    total = len(items)
    return TaskStats(
        total=total,
        completion_rate=round(counts["completed"] * 100 / total) if total else 0,
        sla_violations=sum(1 for item in items if item.sla_status == SLA_VIOLATED),
        **counts,
    )

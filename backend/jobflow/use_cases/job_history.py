"""Read-side use-cases for audit trail and stage performance."""
from __future__ import annotations

from collections import defaultdict
from statistics import mean, median
from uuid import UUID

from ..auth import Principal
from ..domain_errors import NotFound
from ..models import Job, StageAuditLog, StagePerformanceWindow
from ..repositories import ProgressionRepository
from ..schemas import StagePerformanceRow
from ..security import require_permission, require_tenant_access


def _get_job_or_404(repo: ProgressionRepository, *, job_id: UUID, actor: Principal) -> Job:
    job = repo.get_job(job_id)
    if job is None:
        raise NotFound("Job not found", code="JOB_NOT_FOUND")
    require_tenant_access(actor, job.tenant_id)
    return job


def audit_history_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    actor: Principal,
) -> list[StageAuditLog]:
    """Audit entries oldest first."""
    require_permission(actor, "canViewAudit")
    _get_job_or_404(repo, job_id=job_id, actor=actor)
    entries = repo.list_audit_entries(job_id)
    return sorted(entries, key=lambda entry: entry.created_at)


def performance_windows_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    actor: Principal,
) -> list[StagePerformanceWindow]:
    require_permission(actor, "canViewAudit")
    _get_job_or_404(repo, job_id=job_id, actor=actor)
    return sorted(repo.list_windows(job_id), key=lambda window: window.entered_at)


def stage_performance_report_use_case(
    *,
    repo: ProgressionRepository,
    actor: Principal,
    tenant_id: UUID | None = None,
) -> list[StagePerformanceRow]:
    """Per-stage aggregates over every window recorded for the tenant pipeline."""
    require_permission(actor, "canViewAudit")
    scope = tenant_id or actor.tenant_id
    require_tenant_access(actor, scope)
    if scope is None:
        return []

    stages = repo.list_pipeline_stages(scope)
    windows_by_stage: dict[UUID, list[StagePerformanceWindow]] = defaultdict(list)
    for window in repo.list_windows_for_stages(stage.id for stage in stages):
        if window.tenant_id == scope:
            windows_by_stage[window.stage_id].append(window)

    rows: list[StagePerformanceRow] = []
    for stage in stages:
        windows = windows_by_stage.get(stage.id, [])
        closed = [w for w in windows if w.exited_at is not None and w.duration_hours is not None]
        durations = [w.duration_hours for w in closed]
        conversions = [w.conversion_successful for w in closed if w.conversion_successful is not None]
        rows.append(
            StagePerformanceRow(
                stage_id=stage.id,
                stage_name=stage.name,
                sequence_order=stage.sequence_order,
                windows=len(windows),
                open_windows=len(windows) - len(closed),
                avg_duration_hours=round(mean(durations), 2) if durations else None,
                median_duration_hours=round(median(durations), 2) if durations else None,
                avg_tasks_completed=round(mean(w.tasks_completed or 0 for w in closed), 2) if closed else None,
                avg_tasks_overdue=round(mean(w.tasks_overdue or 0 for w in closed), 2) if closed else None,
                conversion_rate=round(sum(conversions) * 100 / len(conversions), 1) if conversions else None,
            )
        )
    return rows

"""Job progression endpoints."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Request

from ..auth import Principal, PermissionChecker, get_current_principal
from ..celery_app import enqueue_outbox_dispatch
from ..envelopes import success_response
from ..repositories import SqlProgressionRepository, get_progression_repository
from ..schemas import (
    AuditEntryOut,
    OverrideRequest,
    PerformanceWindowOut,
    ProgressionResultOut,
    ResponseSubmit,
)
from ..services.sla import now_utc
from ..services.task_response_builder import tasks_to_response
from ..use_cases.job_history import audit_history_use_case, performance_windows_use_case
from ..use_cases.question_flow import current_question_use_case
from ..use_cases.stage_progression import (
    ProgressionHooks,
    ProgressionResult,
    enter_pipeline_use_case,
    override_transition_use_case,
    process_response_use_case,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])

_HOOKS = ProgressionHooks(after_commit=enqueue_outbox_dispatch)


def _result_to_response(result: ProgressionResult) -> ProgressionResultOut:
    return ProgressionResultOut(
        action=result.action,
        job_id=result.job_id,
        response_id=result.response_id,
        old_stage_id=result.old_stage_id,
        new_stage_id=result.new_stage_id,
        audit_entry_id=result.audit_entry_id,
        ambiguous=result.ambiguous,
        message=result.message,
        tasks_created=tasks_to_response(result.tasks_created, now=now_utc()),
        tasks_created_count=len(result.tasks_created),
    )


@router.post("/{job_id}/responses")
def submit_response(
    job_id: UUID,
    data: ResponseSubmit,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canAnswerQuestions")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    """Submit an answer to one of the current stage's questions."""
    result = process_response_use_case(
        repo=repo,
        job_id=job_id,
        question_id=data.question_id,
        value=data.response_value,
        actor=principal,
        source=data.source,
        metadata=data.metadata,
        hooks=_HOOKS,
    )
    return success_response(request, _result_to_response(result))


@router.post("/{job_id}/overrides")
def override_stage(
    job_id: UUID,
    data: OverrideRequest,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canOverrideStage")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    """Administrative move to any stage of the pipeline."""
    result = override_transition_use_case(
        repo=repo,
        job_id=job_id,
        target_stage_id=data.target_stage_id,
        reason=data.reason,
        actor=principal,
        hooks=_HOOKS,
    )
    return success_response(request, _result_to_response(result))


@router.post("/{job_id}/pipeline")
def enter_pipeline(
    job_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canAnswerQuestions")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    """Place a job on the first stage of its tenant pipeline."""
    result = enter_pipeline_use_case(repo=repo, job_id=job_id, actor=principal, hooks=_HOOKS)
    return success_response(request, _result_to_response(result))


@router.get("/{job_id}/current-question")
def get_current_question(
    job_id: UUID,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    return success_response(request, current_question_use_case(repo=repo, job_id=job_id, actor=principal))


@router.get("/{job_id}/audit-history")
def get_audit_history(
    job_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canViewAudit")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    """Audit trail ordered by creation time."""
    entries = audit_history_use_case(repo=repo, job_id=job_id, actor=principal)
    return success_response(request, [AuditEntryOut.model_validate(entry) for entry in entries])


@router.get("/{job_id}/performance-metrics")
def get_performance_metrics(
    job_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canViewAudit")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    windows = performance_windows_use_case(repo=repo, job_id=job_id, actor=principal)
    return success_response(request, [PerformanceWindowOut.model_validate(window) for window in windows])

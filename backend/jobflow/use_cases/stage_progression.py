"""Stage progression use-cases: answer submission, override and pipeline entry.

These are the only code paths that move ``Job.current_stage_id``. Each runs as
one transaction holding row locks on the job and its open performance window.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError

from ..auth import Principal
from ..config import settings
from ..domain_errors import (
    AmbiguousTransition,
    DomainError,
    InvalidQuestionForStage,
    NotFound,
    StorageError,
    ValidationFailed,
)
from ..models import Job, JobResponse, JobTask, Stage, StageAuditLog, StagePerformanceWindow
from ..repositories import ProgressionRepository
from ..security import require_permission, require_tenant_access
from ..services.response_validation import validate_response
from ..services.sla import hours_between, is_task_overdue, now_utc
from ..services.task_spawner import spawn_tasks_for_stage
from ..services.transition_rules import resolve_transition

logger = logging.getLogger(__name__)

ACTION_STAGE_TRANSITION = "stage_transition"
ACTION_NO_TRANSITION = "no_transition"
ACTION_REQUIRES_OVERRIDE = "requires_override"


@dataclass(frozen=True)
class ProgressionHooks:
    """Injectable clock and post-commit callback."""

    now_utc: Callable[[], datetime] = now_utc
    after_commit: Callable[["ProgressionResult"], None] | None = None


DEFAULT_HOOKS = ProgressionHooks()


@dataclass
class ProgressionResult:
    action: str
    job_id: UUID
    message: str
    response_id: UUID | None = None
    old_stage_id: UUID | None = None
    new_stage_id: UUID | None = None
    audit_entry_id: UUID | None = None
    ambiguous: bool = False
    tasks_created: list[JobTask] = field(default_factory=list)


def _get_job_or_404(repo: ProgressionRepository, job_id: UUID, *, for_update: bool) -> Job:
    job = repo.get_job(job_id, for_update=for_update)
    if job is None:
        raise NotFound("Job not found", code="JOB_NOT_FOUND")
    return job


def _audit_entry(
    *,
    job: Job,
    from_stage_id: UUID | None,
    to_stage_id: UUID,
    trigger_source: str,
    actor_id: UUID | None,
    now: datetime,
    question_id: UUID | None = None,
    response_value: str | None = None,
    duration_hours: float | None = None,
    details: dict[str, Any] | None = None,
) -> StageAuditLog:
    return StageAuditLog(
        id=uuid4(),
        job_id=job.id,
        tenant_id=job.tenant_id,
        from_stage_id=from_stage_id,
        to_stage_id=to_stage_id,
        trigger_source=trigger_source,
        triggered_by=actor_id,
        question_id=question_id,
        response_value=response_value,
        duration_in_previous_stage_hours=duration_hours,
        trigger_details=details or {},
        created_at=now,
    )


def _apply_stage_change(
    repo: ProgressionRepository,
    *,
    job: Job,
    target: Stage,
    now: datetime,
    actor_id: UUID | None,
    trigger_source: str,
    question_id: UUID | None = None,
    response_value: str | None = None,
    details: dict[str, Any] | None = None,
) -> tuple[StageAuditLog, list[JobTask]]:
    """Close the open window, move the job, open a window, audit, spawn tasks."""
    from_stage_id = job.current_stage_id
    duration = hours_between(job.stage_entered_at, now) if job.stage_entered_at else None

    window = repo.get_open_window(job.id, for_update=True)
    if window is not None:
        source_stage = repo.get_stage(window.stage_id)
        window.exited_at = now
        window.duration_hours = hours_between(window.entered_at, now)
        window.tasks_overdue = sum(
            1
            for task in repo.list_tasks(job.id)
            if task.stage_id == window.stage_id
            and task.stage_entered_at == window.entered_at
            and is_task_overdue(task, now=now)
        )
        if source_stage is not None:
            window.conversion_successful = target.sequence_order > source_stage.sequence_order
        # The open-window index must see this close before the next insert.
        repo.flush()

    job.current_stage_id = target.id
    job.stage_entered_at = now
    job.status_bucket = target.status_bucket
    job.updated_at = now

    repo.add_window(
        StagePerformanceWindow(
            id=uuid4(),
            job_id=job.id,
            tenant_id=job.tenant_id,
            stage_id=target.id,
            entered_at=now,
            tasks_completed=0,
            tasks_overdue=0,
        )
    )
    entry = _audit_entry(
        job=job,
        from_stage_id=from_stage_id,
        to_stage_id=target.id,
        trigger_source=trigger_source,
        actor_id=actor_id,
        now=now,
        question_id=question_id,
        response_value=response_value,
        duration_hours=duration,
        details=details,
    )
    repo.add_audit_entry(entry)

    tasks = spawn_tasks_for_stage(
        repo,
        job=job,
        stage_id=target.id,
        entered_at=now,
        actor_id=actor_id,
    )
    return entry, tasks


def _record_failure(
    repo: ProgressionRepository,
    *,
    job_id: UUID,
    actor_id: UUID | None,
    fallback_stage_id: UUID | None,
    exc: Exception,
    now: datetime,
    question_id: UUID | None = None,
    response_value: str | None = None,
) -> None:
    """Write an ``error`` audit entry in a fresh transaction after a rollback."""
    try:
        job = repo.get_job(job_id)
        if job is None:
            return
        stage_id = job.current_stage_id or fallback_stage_id
        if stage_id is None:
            return
        repo.add_audit_entry(
            _audit_entry(
                job=job,
                from_stage_id=job.current_stage_id,
                to_stage_id=stage_id,
                trigger_source="error",
                actor_id=actor_id,
                now=now,
                question_id=question_id,
                response_value=response_value,
                details={
                    "error": str(exc),
                    "code": getattr(exc, "code", type(exc).__name__),
                },
            )
        )
        repo.commit()
    except SQLAlchemyError:
        repo.rollback()
        logger.exception("Could not record failed progression for job %s", job_id)


def _run_guarded(
    repo: ProgressionRepository,
    body: Callable[[], ProgressionResult],
    *,
    job_id: UUID,
    actor_id: UUID | None,
    fallback_stage_id: UUID | None,
    now: datetime,
    question_id: UUID | None = None,
    response_value: str | None = None,
) -> ProgressionResult:
    """Run a mutating body; on failure roll back, audit the error and re-raise."""
    try:
        return body()
    except (DomainError, SQLAlchemyError) as exc:
        repo.rollback()
        logger.exception(
            "Progression failed for job %s",
            job_id,
            extra={"job_id": job_id},
        )
        _record_failure(
            repo,
            job_id=job_id,
            actor_id=actor_id,
            fallback_stage_id=fallback_stage_id,
            exc=exc,
            now=now,
            question_id=question_id,
            response_value=response_value,
        )
        if isinstance(exc, SQLAlchemyError):
            raise StorageError("Failed to apply stage progression") from exc
        raise


def _notify(hooks: ProgressionHooks, result: ProgressionResult) -> None:
    if hooks.after_commit is None:
        return
    try:
        hooks.after_commit(result)
    except Exception:
        # Fire-and-forget: the transition is already committed.
        logger.exception("Post-commit hook failed for job %s", result.job_id)


def process_response_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    question_id: UUID,
    value: Any,
    actor: Principal,
    source: str = "web",
    metadata: dict[str, Any] | None = None,
    hooks: ProgressionHooks = DEFAULT_HOOKS,
) -> ProgressionResult:
    """Record an answer and apply the transition it triggers, if any."""
    require_permission(actor, "canAnswerQuestions")
    job = _get_job_or_404(repo, job_id, for_update=True)
    require_tenant_access(actor, job.tenant_id)

    question = repo.get_question(question_id)
    if question is None or job.current_stage_id is None or question.stage_id != job.current_stage_id:
        repo.rollback()
        raise InvalidQuestionForStage(
            question_id=str(question_id),
            current_stage_id=str(job.current_stage_id) if job.current_stage_id else None,
        )

    try:
        normalized = validate_response(
            response_type=question.response_type,
            raw_value=value,
            is_required=bool(question.is_required),
            response_options=question.response_options,
            enforce_options=settings.MULTIPLE_CHOICE_ENFORCE_OPTIONS,
        )
    except ValidationFailed:
        repo.rollback()
        raise

    now = hooks.now_utc()
    current_stage_id = job.current_stage_id

    def _body() -> ProgressionResult:
        response = JobResponse(
            id=uuid4(),
            job_id=job.id,
            question_id=question.id,
            response_value=normalized,
            meta_data=metadata or {},
            responded_by=actor.user_id,
            source=source,
            created_at=now,
        )
        repo.add_response(response)

        transitions = repo.list_transitions(from_stage_id=current_stage_id, question_id=question.id)
        try:
            decision = resolve_transition(transitions, normalized)
        except AmbiguousTransition as exc:
            entry = _audit_entry(
                job=job,
                from_stage_id=current_stage_id,
                to_stage_id=current_stage_id,
                trigger_source="error",
                actor_id=actor.user_id,
                now=now,
                question_id=question.id,
                response_value=normalized,
                details={"error": exc.message, "code": exc.code, **(exc.details or {})},
            )
            repo.add_audit_entry(entry)
            repo.commit()
            logger.warning(
                "Ambiguous transition configuration for stage %s question %s",
                current_stage_id,
                question.id,
                extra={"job_id": job.id, "stage_id": current_stage_id},
            )
            return ProgressionResult(
                action=ACTION_NO_TRANSITION,
                job_id=job.id,
                response_id=response.id,
                old_stage_id=current_stage_id,
                new_stage_id=current_stage_id,
                audit_entry_id=entry.id,
                ambiguous=True,
                message="Response recorded; transition rules are ambiguous",
            )

        if not decision.fires:
            repo.commit()
            if decision.requires_override:
                return ProgressionResult(
                    action=ACTION_REQUIRES_OVERRIDE,
                    job_id=job.id,
                    response_id=response.id,
                    old_stage_id=current_stage_id,
                    new_stage_id=current_stage_id,
                    message="Response recorded; transition requires an administrative override",
                )
            return ProgressionResult(
                action=ACTION_NO_TRANSITION,
                job_id=job.id,
                response_id=response.id,
                old_stage_id=current_stage_id,
                new_stage_id=current_stage_id,
                message="Response recorded",
            )

        target = repo.get_stage(decision.target_stage_id)
        if target is None or not target.is_active:
            raise NotFound("Transition target stage not found", code="TRANSITION_TARGET_NOT_FOUND")

        entry, tasks = _apply_stage_change(
            repo,
            job=job,
            target=target,
            now=now,
            actor_id=actor.user_id,
            trigger_source="question_response",
            question_id=question.id,
            response_value=normalized,
            details={"source": source, "metadata": metadata or {}, "transition_id": str(decision.transition_id)},
        )
        repo.commit()
        logger.info(
            "Job %s moved %s -> %s on answer to %s",
            job.id,
            current_stage_id,
            target.id,
            question.id,
            extra={"job_id": job.id, "stage_id": target.id},
        )
        return ProgressionResult(
            action=ACTION_STAGE_TRANSITION,
            job_id=job.id,
            response_id=response.id,
            old_stage_id=current_stage_id,
            new_stage_id=target.id,
            audit_entry_id=entry.id,
            tasks_created=tasks,
            message=f"Moved to stage {target.name}",
        )

    result = _run_guarded(
        repo,
        _body,
        job_id=job.id,
        actor_id=actor.user_id,
        fallback_stage_id=current_stage_id,
        now=now,
        question_id=question.id,
        response_value=normalized,
    )
    if result.action == ACTION_STAGE_TRANSITION:
        _notify(hooks, result)
    return result


def override_transition_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    target_stage_id: UUID,
    reason: str,
    actor: Principal,
    hooks: ProgressionHooks = DEFAULT_HOOKS,
) -> ProgressionResult:
    """Move a job to any stage of its pipeline, bypassing transition rules."""
    require_permission(actor, "canOverrideStage")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("Override reason is required", rule="override_reason")

    job = _get_job_or_404(repo, job_id, for_update=True)
    require_tenant_access(actor, job.tenant_id)

    target = repo.get_stage(target_stage_id)
    # Global stages are only targets when the tenant runs the global pipeline.
    pipeline_ids = {stage.id for stage in repo.list_pipeline_stages(job.tenant_id)}
    if target is None or target.id not in pipeline_ids:
        repo.rollback()
        raise NotFound("Target stage not found", code="STAGE_NOT_FOUND")
    if target.id == job.current_stage_id:
        repo.rollback()
        raise DomainError(
            code="OVERRIDE_SAME_STAGE",
            http_status=400,
            message="Job is already in the target stage",
        )

    now = hooks.now_utc()
    current_stage_id = job.current_stage_id

    def _body() -> ProgressionResult:
        entry, tasks = _apply_stage_change(
            repo,
            job=job,
            target=target,
            now=now,
            actor_id=actor.user_id,
            trigger_source="admin_override",
            details={"reason": reason},
        )
        repo.commit()
        logger.info(
            "Job %s overridden %s -> %s by %s",
            job.id,
            current_stage_id,
            target.id,
            actor.user_id,
            extra={"job_id": job.id, "stage_id": target.id},
        )
        return ProgressionResult(
            action=ACTION_STAGE_TRANSITION,
            job_id=job.id,
            old_stage_id=current_stage_id,
            new_stage_id=target.id,
            audit_entry_id=entry.id,
            tasks_created=tasks,
            message=f"Moved to stage {target.name} by override",
        )

    result = _run_guarded(
        repo,
        _body,
        job_id=job.id,
        actor_id=actor.user_id,
        fallback_stage_id=target.id,
        now=now,
    )
    _notify(hooks, result)
    return result


def enter_pipeline_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    actor: Principal,
    hooks: ProgressionHooks = DEFAULT_HOOKS,
) -> ProgressionResult:
    """Place a job that is not yet in the pipeline onto its first stage."""
    require_permission(actor, "canAnswerQuestions")
    job = _get_job_or_404(repo, job_id, for_update=True)
    require_tenant_access(actor, job.tenant_id)

    if job.current_stage_id is not None:
        repo.rollback()
        raise DomainError(
            code="JOB_ALREADY_IN_PIPELINE",
            http_status=409,
            message="Job already has a current stage",
        )

    stages = repo.list_pipeline_stages(job.tenant_id)
    if not stages:
        repo.rollback()
        raise DomainError(
            code="PIPELINE_NOT_CONFIGURED",
            http_status=409,
            message="No active stages are configured for this tenant",
        )
    first = stages[0]
    now = hooks.now_utc()

    def _body() -> ProgressionResult:
        entry, tasks = _apply_stage_change(
            repo,
            job=job,
            target=first,
            now=now,
            actor_id=actor.user_id,
            trigger_source="system_auto",
            details={"reason": "pipeline_entry"},
        )
        repo.commit()
        return ProgressionResult(
            action=ACTION_STAGE_TRANSITION,
            job_id=job.id,
            new_stage_id=first.id,
            audit_entry_id=entry.id,
            tasks_created=tasks,
            message=f"Entered pipeline at stage {first.name}",
        )

    result = _run_guarded(
        repo,
        _body,
        job_id=job.id,
        actor_id=actor.user_id,
        fallback_stage_id=first.id,
        now=now,
    )
    _notify(hooks, result)
    return result

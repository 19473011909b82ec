"""Current-question lookup for a job sitting in a stage."""
from __future__ import annotations

from uuid import UUID

from ..auth import Principal
from ..repositories import ProgressionRepository
from ..schemas import QuestionFlowOut, QuestionOut, StageOut
from ..domain_errors import NotFound
from ..models import Job
from ..security import require_tenant_access
from ..services.skip_conditions import should_skip_question


def _get_job_or_404(repo: ProgressionRepository, job_id: UUID) -> Job:
    job = repo.get_job(job_id)
    if job is None:
        raise NotFound("Job not found", code="JOB_NOT_FOUND")
    return job


def current_question_use_case(
    *,
    repo: ProgressionRepository,
    job_id: UUID,
    actor: Principal,
) -> QuestionFlowOut:
    """Questions still to answer in the current stage, after skip rules."""
    job = _get_job_or_404(repo, job_id)
    require_tenant_access(actor, job.tenant_id)

    if job.current_stage_id is None:
        return QuestionFlowOut(job_id=job.id, in_pipeline=False)

    stage = repo.get_stage(job.current_stage_id)
    questions = repo.list_questions(job.current_stage_id)

    # Only answers given since entering the stage count; revisits re-ask.
    latest: dict[UUID, str] = {}
    answered_in_stage: set[UUID] = set()
    for response in repo.list_responses(job.id):
        latest[response.question_id] = response.response_value
        if job.stage_entered_at is None or response.created_at >= job.stage_entered_at:
            answered_in_stage.add(response.question_id)

    remaining = []
    skipped: list[UUID] = []
    for question in questions:
        if question.id in answered_in_stage:
            continue
        if should_skip_question(question, job_type=job.job_type, latest_responses=latest):
            skipped.append(question.id)
            continue
        remaining.append(question)

    can_proceed = not remaining
    preview = None
    if can_proceed:
        transitions = repo.list_transitions(from_stage_id=job.current_stage_id)
        if transitions:
            target = repo.get_stage(transitions[0].to_stage_id)
            preview = StageOut.model_validate(target) if target is not None else None

    return QuestionFlowOut(
        job_id=job.id,
        in_pipeline=True,
        current_stage=StageOut.model_validate(stage) if stage is not None else None,
        questions=[QuestionOut.model_validate(q) for q in questions],
        remaining_questions=[QuestionOut.model_validate(q) for q in remaining],
        current_question=QuestionOut.model_validate(remaining[0]) if remaining else None,
        answered_count=len([q for q in questions if q.id in answered_in_stage]),
        skipped_question_ids=skipped,
        can_proceed=can_proceed,
        next_stage_preview=preview,
    )

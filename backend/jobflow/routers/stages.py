"""Stage configuration endpoints."""
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..auth import Principal, PermissionChecker, get_current_principal
from ..database import get_db
from ..envelopes import success_response
from ..repositories import SqlProgressionRepository, get_progression_repository
from ..schemas import (
    CopyGlobalStagesOut,
    QuestionCreate,
    QuestionOut,
    QuestionReorderRequest,
    QuestionUpdate,
    ReorderResultOut,
    StageCreate,
    StageOut,
    StageReorderRequest,
    StageUpdate,
    TaskTemplateCreate,
    TaskTemplateOut,
    TransitionCreate,
    TransitionOut,
)
from ..use_cases.job_history import stage_performance_report_use_case
from ..use_cases.sequence_reorder import ReorderOutcome, reorder_questions_use_case, reorder_stages_use_case
from ..use_cases.stage_configuration import (
    copy_global_stages_use_case,
    create_question_use_case,
    create_stage_use_case,
    create_template_use_case,
    create_transition_use_case,
    deactivate_template_use_case,
    delete_question_use_case,
    delete_transition_use_case,
    disable_stage_use_case,
    list_questions_use_case,
    list_stages_use_case,
    list_templates_use_case,
    list_transitions_use_case,
    update_question_use_case,
    update_stage_use_case,
)

router = APIRouter(prefix="/stages", tags=["stages"])


def _reorder_response(request: Request, outcome: ReorderOutcome):
    payload = ReorderResultOut(
        strategy=outcome.strategy,
        phase=outcome.phase,
        updated_count=outcome.updated_count,
        failed_count=outcome.failed_count,
        errors=outcome.errors,
    )
    return success_response(request, payload, status_code=207 if outcome.partial else 200)


@router.get("")
def list_stages(
    request: Request,
    include_inactive: bool = Query(False),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Tenant pipeline, falling back to the global template stages."""
    stages = list_stages_use_case(db=db, actor=principal, include_inactive=include_inactive)
    return success_response(request, [StageOut.model_validate(stage) for stage in stages])


@router.post("", status_code=201)
def create_stage(
    data: StageCreate,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    stage = create_stage_use_case(db=db, data=data, actor=principal)
    return success_response(request, StageOut.model_validate(stage), status_code=201)


@router.post("/reorder")
def reorder_stages(
    data: StageReorderRequest,
    request: Request,
    global_scope: bool = Query(False),
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    """Rewrite the stage order of the caller's pipeline."""
    outcome = reorder_stages_use_case(db=db, items=data.stages, actor=principal, global_scope=global_scope)
    return _reorder_response(request, outcome)


@router.post("/copy-global", status_code=201)
def copy_global_stages(
    request: Request,
    tenant_id: Optional[UUID] = Query(None),
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    """Clone the global template pipeline into the tenant."""
    result = copy_global_stages_use_case(db=db, actor=principal, tenant_id=tenant_id)
    payload = CopyGlobalStagesOut(
        stages_copied=result["stages_copied"],
        questions_copied=result["questions_copied"],
        transitions_copied=result["transitions_copied"],
        templates_copied=result["templates_copied"],
        stages=[StageOut.model_validate(stage) for stage in result["stages"]],
    )
    return success_response(request, payload, status_code=201)


@router.get("/performance-report")
def stage_performance_report(
    request: Request,
    tenant_id: Optional[UUID] = Query(None),
    principal: Principal = Depends(PermissionChecker("canViewAudit")),
    repo: SqlProgressionRepository = Depends(get_progression_repository),
):
    rows = stage_performance_report_use_case(repo=repo, actor=principal, tenant_id=tenant_id)
    return success_response(request, rows)


@router.post("/transitions", status_code=201)
def create_transition(
    data: TransitionCreate,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    transition = create_transition_use_case(db=db, data=data, actor=principal)
    return success_response(request, TransitionOut.model_validate(transition), status_code=201)


@router.delete("/transitions/{transition_id}")
def delete_transition(
    transition_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    delete_transition_use_case(db=db, transition_id=transition_id, actor=principal)
    return success_response(request, {"deleted": True})


@router.delete("/templates/{template_id}")
def deactivate_template(
    template_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    template = deactivate_template_use_case(db=db, template_id=template_id, actor=principal)
    return success_response(request, TaskTemplateOut.model_validate(template))


@router.put("/{stage_id}")
def update_stage(
    stage_id: UUID,
    data: StageUpdate,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    stage = update_stage_use_case(db=db, stage_id=stage_id, data=data, actor=principal)
    return success_response(request, StageOut.model_validate(stage))


@router.delete("/{stage_id}")
def disable_stage(
    stage_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    """Soft-disable a stage."""
    stage = disable_stage_use_case(db=db, stage_id=stage_id, actor=principal)
    return success_response(request, StageOut.model_validate(stage))


@router.get("/{stage_id}/questions")
def list_questions(
    stage_id: UUID,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    questions = list_questions_use_case(db=db, stage_id=stage_id, actor=principal)
    return success_response(request, [QuestionOut.model_validate(q) for q in questions])


@router.post("/{stage_id}/questions", status_code=201)
def create_question(
    stage_id: UUID,
    data: QuestionCreate,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    question = create_question_use_case(db=db, stage_id=stage_id, data=data, actor=principal)
    return success_response(request, QuestionOut.model_validate(question), status_code=201)


@router.post("/{stage_id}/questions/reorder")
def reorder_questions(
    stage_id: UUID,
    data: QuestionReorderRequest,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    """Rewrite question order; 207 when some rows could not be finalized."""
    outcome = reorder_questions_use_case(db=db, stage_id=stage_id, items=data.questions, actor=principal)
    return _reorder_response(request, outcome)


@router.put("/{stage_id}/questions/{question_id}")
def update_question(
    stage_id: UUID,
    question_id: UUID,
    data: QuestionUpdate,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    question = update_question_use_case(
        db=db,
        stage_id=stage_id,
        question_id=question_id,
        data=data,
        actor=principal,
    )
    return success_response(request, QuestionOut.model_validate(question))


@router.delete("/{stage_id}/questions/{question_id}")
def delete_question(
    stage_id: UUID,
    question_id: UUID,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    delete_question_use_case(db=db, stage_id=stage_id, question_id=question_id, actor=principal)
    return success_response(request, {"deleted": True})


@router.get("/{stage_id}/transitions")
def list_transitions(
    stage_id: UUID,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    transitions = list_transitions_use_case(db=db, stage_id=stage_id, actor=principal)
    return success_response(request, [TransitionOut.model_validate(t) for t in transitions])


@router.get("/{stage_id}/templates")
def list_templates(
    stage_id: UUID,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    templates = list_templates_use_case(db=db, stage_id=stage_id, actor=principal)
    return success_response(request, [TaskTemplateOut.model_validate(t) for t in templates])


@router.post("/{stage_id}/templates", status_code=201)
def create_template(
    stage_id: UUID,
    data: TaskTemplateCreate,
    request: Request,
    principal: Principal = Depends(PermissionChecker("canManageStages")),
    db: Session = Depends(get_db),
):
    template = create_template_use_case(db=db, stage_id=stage_id, data=data, actor=principal)
    return success_response(request, TaskTemplateOut.model_validate(template), status_code=201)

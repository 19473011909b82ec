"""Stage pipeline configuration use-cases (stages, questions, transitions, templates)."""
from __future__ import annotations

import copy
import logging
from uuid import UUID, uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..auth import Principal, check_permission
from ..domain_errors import AccessDenied, DomainError, NotFound
from ..models import JobResponse, Job, Question, Stage, TaskTemplate, Transition
from ..schemas import (
    QuestionCreate,
    QuestionUpdate,
    StageCreate,
    StageUpdate,
    TaskTemplateCreate,
    TransitionCreate,
)
from ..security import require_permission, require_tenant_access

logger = logging.getLogger(__name__)


def _scope_filter(model, tenant_id: UUID | None):
    if tenant_id is None:
        return model.tenant_id.is_(None)
    return model.tenant_id == tenant_id


def _get_stage_or_404(*, db: Session, stage_id: UUID) -> Stage:
    stage = db.query(Stage).filter(Stage.id == stage_id).first()
    if not stage:
        raise NotFound("Stage not found", code="STAGE_NOT_FOUND")
    return stage


def _get_readable_stage(*, db: Session, stage_id: UUID, actor: Principal) -> Stage:
    stage = _get_stage_or_404(db=db, stage_id=stage_id)
    if stage.tenant_id is not None:
        require_tenant_access(actor, stage.tenant_id)
    return stage


def _get_writable_stage(*, db: Session, stage_id: UUID, actor: Principal) -> Stage:
    """Tenant stages are writable by their tenant; global ones only by site admins."""
    require_permission(actor, "canManageStages")
    stage = _get_stage_or_404(db=db, stage_id=stage_id)
    if stage.tenant_id is None:
        if not check_permission(actor, "canManageGlobalStages"):
            raise AccessDenied("Global template stages are read-only", code="GLOBAL_STAGE_READ_ONLY")
    else:
        require_tenant_access(actor, stage.tenant_id)
    return stage


def _next_sequence(db: Session, column, *criteria) -> int:
    current = db.query(func.max(column)).filter(*criteria).scalar()
    return 0 if current is None else int(current) + 1


def _ensure_duration_bounds(min_hours: int | None, max_hours: int | None) -> None:
    if max_hours is not None and min_hours is not None and max_hours < min_hours:
        raise DomainError(
            code="STAGE_INVALID_DURATION",
            http_status=400,
            message="max_duration_hours must be greater than or equal to min_duration_hours",
        )


def list_stages_use_case(*, db: Session, actor: Principal, include_inactive: bool = False) -> list[Stage]:
    """Tenant stages ordered by sequence; the global templates when the tenant has none."""
    def _load(tenant_id: UUID | None) -> list[Stage]:
        query = db.query(Stage).filter(_scope_filter(Stage, tenant_id))
        if not include_inactive:
            query = query.filter(Stage.is_active.is_(True))
        return query.order_by(Stage.sequence_order.asc()).all()

    if actor.tenant_id is not None:
        stages = _load(actor.tenant_id)
        if stages:
            return stages
    return _load(None)


def create_stage_use_case(*, db: Session, data: StageCreate, actor: Principal) -> Stage:
    require_permission(actor, "canManageStages")
    if data.is_global:
        if not check_permission(actor, "canManageGlobalStages"):
            raise AccessDenied("Only site admins can author global stages", code="GLOBAL_STAGE_READ_ONLY")
        tenant_id = None
    else:
        if actor.tenant_id is None:
            raise DomainError(
                code="TENANT_REQUIRED",
                http_status=400,
                message="A tenant is required for tenant stages",
            )
        tenant_id = actor.tenant_id
    _ensure_duration_bounds(data.min_duration_hours, data.max_duration_hours)

    scope = _scope_filter(Stage, tenant_id)
    if data.sequence_order is None:
        sequence_order = _next_sequence(db, Stage.sequence_order, scope)
    else:
        sequence_order = data.sequence_order
        taken = db.query(Stage.id).filter(scope, Stage.sequence_order == sequence_order).first()
        if taken:
            raise DomainError(
                code="STAGE_SEQUENCE_TAKEN",
                http_status=409,
                message=f"Sequence position {sequence_order} is already used",
            )

    stage = Stage(
        id=uuid4(),
        tenant_id=tenant_id,
        name=data.name,
        description=data.description,
        color=data.color,
        sequence_order=sequence_order,
        status_bucket=data.status_bucket,
        stage_type=data.stage_type,
        min_duration_hours=data.min_duration_hours,
        max_duration_hours=data.max_duration_hours,
        requires_approval=data.requires_approval,
        is_active=True,
    )
    db.add(stage)
    db.commit()
    return stage


def update_stage_use_case(*, db: Session, stage_id: UUID, data: StageUpdate, actor: Principal) -> Stage:
    stage = _get_writable_stage(db=db, stage_id=stage_id, actor=actor)
    changes = data.model_dump(exclude_unset=True)
    _ensure_duration_bounds(
        changes.get("min_duration_hours", stage.min_duration_hours),
        changes.get("max_duration_hours", stage.max_duration_hours),
    )
    for key, value in changes.items():
        setattr(stage, key, value)
    db.commit()
    return stage


def disable_stage_use_case(*, db: Session, stage_id: UUID, actor: Principal) -> Stage:
    """Soft-disable; stages referenced by jobs are never removed."""
    stage = _get_writable_stage(db=db, stage_id=stage_id, actor=actor)
    if stage.is_active:
        stage.is_active = False
        jobs_in_stage = db.query(func.count(Job.id)).filter(Job.current_stage_id == stage.id).scalar() or 0
        if jobs_in_stage:
            logger.warning("Stage %s disabled with %d job(s) still in it", stage.id, jobs_in_stage)
        db.commit()
    return stage


# Questions
def list_questions_use_case(*, db: Session, stage_id: UUID, actor: Principal) -> list[Question]:
    _get_readable_stage(db=db, stage_id=stage_id, actor=actor)
    return (
        db.query(Question)
        .filter(Question.stage_id == stage_id)
        .order_by(Question.sequence_order.asc())
        .all()
    )


def _ensure_options(response_type: str | None, options: list[str] | None) -> None:
    if response_type == "multiple_choice" and not options:
        raise DomainError(
            code="QUESTION_OPTIONS_REQUIRED",
            http_status=400,
            message="multiple_choice questions need response_options",
        )


def create_question_use_case(*, db: Session, stage_id: UUID, data: QuestionCreate, actor: Principal) -> Question:
    stage = _get_writable_stage(db=db, stage_id=stage_id, actor=actor)
    _ensure_options(data.response_type, data.response_options)

    if data.sequence_order is None:
        sequence_order = _next_sequence(db, Question.sequence_order, Question.stage_id == stage.id)
    else:
        sequence_order = data.sequence_order
        taken = db.query(Question.id).filter(
            Question.stage_id == stage.id,
            Question.sequence_order == sequence_order,
        ).first()
        if taken:
            raise DomainError(
                code="QUESTION_SEQUENCE_TAKEN",
                http_status=409,
                message=f"Sequence position {sequence_order} is already used in this stage",
            )

    question = Question(
        id=uuid4(),
        stage_id=stage.id,
        question_text=data.question_text,
        response_type=data.response_type,
        response_options=data.response_options,
        sequence_order=sequence_order,
        is_required=data.is_required,
        skip_conditions=data.skip_conditions or {},
        help_text=data.help_text,
    )
    db.add(question)
    db.commit()
    return question


def _get_question_or_404(*, db: Session, stage_id: UUID, question_id: UUID) -> Question:
    question = db.query(Question).filter(
        Question.id == question_id,
        Question.stage_id == stage_id,
    ).first()
    if not question:
        raise NotFound("Question not found", code="QUESTION_NOT_FOUND")
    return question


def update_question_use_case(
    *,
    db: Session,
    stage_id: UUID,
    question_id: UUID,
    data: QuestionUpdate,
    actor: Principal,
) -> Question:
    _get_writable_stage(db=db, stage_id=stage_id, actor=actor)
    question = _get_question_or_404(db=db, stage_id=stage_id, question_id=question_id)
    changes = data.model_dump(exclude_unset=True)
    _ensure_options(
        changes.get("response_type", question.response_type),
        changes.get("response_options", question.response_options),
    )
    for key, value in changes.items():
        setattr(question, key, value)
    db.commit()
    return question


def delete_question_use_case(*, db: Session, stage_id: UUID, question_id: UUID, actor: Principal) -> None:
    _get_writable_stage(db=db, stage_id=stage_id, actor=actor)
    question = _get_question_or_404(db=db, stage_id=stage_id, question_id=question_id)
    answered = db.query(JobResponse.id).filter(JobResponse.question_id == question.id).first()
    if answered:
        raise DomainError(
            code="QUESTION_HAS_RESPONSES",
            http_status=409,
            message="Question has recorded answers and cannot be deleted",
        )
    db.delete(question)
    db.commit()


# Transitions
def list_transitions_use_case(*, db: Session, stage_id: UUID, actor: Principal) -> list[Transition]:
    _get_readable_stage(db=db, stage_id=stage_id, actor=actor)
    return (
        db.query(Transition)
        .filter(Transition.from_stage_id == stage_id)
        .order_by(Transition.is_automatic.desc(), Transition.created_at.asc())
        .all()
    )


def create_transition_use_case(*, db: Session, data: TransitionCreate, actor: Principal) -> Transition:
    if data.from_stage_id == data.to_stage_id:
        raise DomainError(
            code="TRANSITION_SELF_LOOP",
            http_status=400,
            message="A transition cannot target its own stage",
        )
    from_stage = _get_writable_stage(db=db, stage_id=data.from_stage_id, actor=actor)
    to_stage = _get_stage_or_404(db=db, stage_id=data.to_stage_id)
    if to_stage.tenant_id != from_stage.tenant_id:
        raise DomainError(
            code="TRANSITION_SCOPE_MISMATCH",
            http_status=400,
            message="Both stages must belong to the same pipeline",
        )

    # Rules are only evaluated when one of their stage's questions is answered.
    if data.trigger_question_id is None:
        raise DomainError(
            code="TRANSITION_QUESTION_REQUIRED",
            http_status=400,
            message="A transition needs a trigger question",
        )
    question = db.query(Question).filter(Question.id == data.trigger_question_id).first()
    if not question or question.stage_id != from_stage.id:
        raise DomainError(
            code="TRANSITION_QUESTION_MISMATCH",
            http_status=400,
            message="Trigger question must belong to the source stage",
        )

    condition = data.trigger_condition.strip() if data.trigger_condition else None
    duplicate = db.query(Transition.id).filter(
        Transition.from_stage_id == from_stage.id,
        Transition.to_stage_id == to_stage.id,
        Transition.trigger_question_id == data.trigger_question_id,
        Transition.trigger_condition == condition if condition is not None else Transition.trigger_condition.is_(None),
    ).first()
    if duplicate:
        raise DomainError(
            code="TRANSITION_DUPLICATE",
            http_status=409,
            message="An identical transition already exists",
        )

    transition = Transition(
        id=uuid4(),
        from_stage_id=from_stage.id,
        to_stage_id=to_stage.id,
        trigger_question_id=data.trigger_question_id,
        trigger_condition=condition,
        is_automatic=data.is_automatic,
        requires_override=data.requires_override,
    )
    db.add(transition)
    db.commit()
    return transition


def delete_transition_use_case(*, db: Session, transition_id: UUID, actor: Principal) -> None:
    transition = db.query(Transition).filter(Transition.id == transition_id).first()
    if not transition:
        raise NotFound("Transition not found", code="TRANSITION_NOT_FOUND")
    _get_writable_stage(db=db, stage_id=transition.from_stage_id, actor=actor)
    db.delete(transition)
    db.commit()


# Task templates
def list_templates_use_case(*, db: Session, stage_id: UUID, actor: Principal) -> list[TaskTemplate]:
    _get_readable_stage(db=db, stage_id=stage_id, actor=actor)
    return (
        db.query(TaskTemplate)
        .filter(TaskTemplate.stage_id == stage_id, TaskTemplate.is_active.is_(True))
        .order_by(TaskTemplate.created_at.asc())
        .all()
    )


def create_template_use_case(
    *,
    db: Session,
    stage_id: UUID,
    data: TaskTemplateCreate,
    actor: Principal,
) -> TaskTemplate:
    stage = _get_writable_stage(db=db, stage_id=stage_id, actor=actor)
    for index, item in enumerate(data.subtasks):
        if not (isinstance(item, str) and item.strip()) and not (isinstance(item, dict) and item.get("title")):
            raise DomainError(
                code="TEMPLATE_INVALID_SUBTASK",
                http_status=400,
                message=f"Subtask #{index + 1} needs a title",
            )
    template = TaskTemplate(id=uuid4(), stage_id=stage.id, is_active=True, **data.model_dump())
    db.add(template)
    db.commit()
    return template


def deactivate_template_use_case(*, db: Session, template_id: UUID, actor: Principal) -> TaskTemplate:
    template = db.query(TaskTemplate).filter(TaskTemplate.id == template_id).first()
    if not template:
        raise NotFound("Task template not found", code="TEMPLATE_NOT_FOUND")
    _get_writable_stage(db=db, stage_id=template.stage_id, actor=actor)
    template.is_active = False
    db.commit()
    return template


# Global templates
def _remap_skip_conditions(conditions: dict | None, question_ids: dict[UUID, UUID]) -> dict:
    remapped = copy.deepcopy(conditions or {})
    for condition in remapped.get("previous_responses") or []:
        try:
            old_id = UUID(str(condition.get("question_id")))
        except (TypeError, ValueError, AttributeError):
            continue
        if old_id in question_ids:
            condition["question_id"] = str(question_ids[old_id])
    return remapped


def copy_global_stages_use_case(*, db: Session, actor: Principal, tenant_id: UUID | None = None) -> dict:
    """Clone the global template pipeline into a tenant that has none yet."""
    require_permission(actor, "canManageStages")
    target_tenant = tenant_id or actor.tenant_id
    if target_tenant is None:
        raise DomainError(code="TENANT_REQUIRED", http_status=400, message="A tenant is required")
    require_tenant_access(actor, target_tenant)

    existing = db.query(Stage.id).filter(Stage.tenant_id == target_tenant).first()
    if existing:
        raise DomainError(
            code="TENANT_STAGES_EXIST",
            http_status=409,
            message="Tenant already has its own stages",
        )

    global_stages = (
        db.query(Stage)
        .filter(Stage.tenant_id.is_(None), Stage.is_active.is_(True))
        .order_by(Stage.sequence_order.asc())
        .all()
    )
    if not global_stages:
        raise NotFound("No global template stages to copy", code="GLOBAL_STAGES_NOT_FOUND")

    stage_ids: dict[UUID, UUID] = {}
    copied_stages: list[Stage] = []
    for source in global_stages:
        clone = Stage(
            id=uuid4(),
            tenant_id=target_tenant,
            name=source.name,
            description=source.description,
            color=source.color,
            sequence_order=source.sequence_order,
            status_bucket=source.status_bucket,
            stage_type=source.stage_type,
            min_duration_hours=source.min_duration_hours,
            max_duration_hours=source.max_duration_hours,
            requires_approval=source.requires_approval,
            is_active=True,
        )
        stage_ids[source.id] = clone.id
        copied_stages.append(clone)
        db.add(clone)
    db.flush()

    source_ids = list(stage_ids)
    questions = db.query(Question).filter(Question.stage_id.in_(source_ids)).all()
    question_ids = {question.id: uuid4() for question in questions}
    for source in questions:
        db.add(
            Question(
                id=question_ids[source.id],
                stage_id=stage_ids[source.stage_id],
                question_text=source.question_text,
                response_type=source.response_type,
                response_options=copy.deepcopy(source.response_options),
                sequence_order=source.sequence_order,
                is_required=source.is_required,
                skip_conditions=_remap_skip_conditions(source.skip_conditions, question_ids),
                help_text=source.help_text,
            )
        )
    db.flush()

    templates = db.query(TaskTemplate).filter(
        TaskTemplate.stage_id.in_(source_ids),
        TaskTemplate.is_active.is_(True),
    ).all()
    for source in templates:
        db.add(
            TaskTemplate(
                id=uuid4(),
                stage_id=stage_ids[source.stage_id],
                task_type=source.task_type,
                title=source.title,
                description=source.description,
                subtasks=copy.deepcopy(source.subtasks or []),
                upload_required=source.upload_required,
                sla_hours=source.sla_hours,
                due_date_offset_hours=source.due_date_offset_hours,
                priority=source.priority,
                auto_assign_to=source.auto_assign_to,
                client_visible=source.client_visible,
                is_active=True,
            )
        )

    transitions = db.query(Transition).filter(Transition.from_stage_id.in_(source_ids)).all()
    transitions_copied = 0
    for source in transitions:
        if source.to_stage_id not in stage_ids:
            continue
        if source.trigger_question_id is not None and source.trigger_question_id not in question_ids:
            continue
        db.add(
            Transition(
                id=uuid4(),
                from_stage_id=stage_ids[source.from_stage_id],
                to_stage_id=stage_ids[source.to_stage_id],
                trigger_question_id=question_ids.get(source.trigger_question_id),
                trigger_condition=source.trigger_condition,
                is_automatic=source.is_automatic,
                requires_override=source.requires_override,
            )
        )
        transitions_copied += 1

    db.commit()
    logger.info("Copied %d global stage(s) into tenant %s", len(copied_stages), target_tenant)
    return {
        "stages_copied": len(copied_stages),
        "questions_copied": len(questions),
        "transitions_copied": transitions_copied,
        "templates_copied": len(templates),
        "stages": copied_stages,
    }

"""Sequence reordering for stage questions and tenant stages.

Primary path writes every new position in one transaction with the unique
constraint deferred to commit. The fallback moves target rows out of the way
(offset) in one transaction, then writes final values row by row. Phase two is
idempotent: re-running the same ordering converges.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth import Principal, check_permission
from ..config import settings
from ..domain_errors import AccessDenied, DomainError, NotFound, ReorderFailed
from ..models import Question, Stage
from ..schemas import ReorderItem
from ..security import require_permission, require_tenant_access

logger = logging.getLogger(__name__)

STRATEGY_ATOMIC = "atomic"
STRATEGY_TWO_PHASE = "two_phase"
PHASE_ATOMIC = "atomic"
PHASE_TEMPORARY_OFFSET = "temporary_offset"
PHASE_FINAL_ASSIGNMENT = "final_assignment"
PHASE_TWO_MAX_ATTEMPTS = 2


@dataclass
class ReorderOutcome:
    strategy: str
    phase: str
    updated_count: int
    failed_count: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return self.failed_count > 0


def _invalid(message: str, **details: Any) -> DomainError:
    return DomainError(
        code="INVALID_REORDER",
        http_status=400,
        message=message,
        details=details or None,
    )


def validate_reorder_items(items: list[ReorderItem], scope_rows: list, *, temp_offset: int) -> None:
    """Reject malformed orderings before touching any row."""
    if not items:
        raise _invalid("At least one entry is required")

    ids = [item.id for item in items]
    if len(set(ids)) != len(ids):
        raise _invalid("Duplicate ids in reorder payload")

    orders = [item.sequence_order for item in items]
    if any(order < 0 for order in orders):
        raise _invalid("sequence_order must be non-negative")
    if any(order >= temp_offset for order in orders):
        raise _invalid(f"sequence_order must be below {temp_offset}")
    if len(set(orders)) != len(orders):
        raise _invalid("Duplicate sequence_order values in reorder payload")

    rows_by_id = {row.id: row for row in scope_rows}
    unknown = [str(item_id) for item_id in ids if item_id not in rows_by_id]
    if unknown:
        raise _invalid("Some entries do not belong to this scope", unknown_ids=unknown)

    untouched = {row.sequence_order: row.id for row in scope_rows if row.id not in set(ids)}
    clashes = [str(item.id) for item in items if item.sequence_order in untouched]
    if clashes:
        raise _invalid(
            "New positions collide with entries not included in the reorder",
            conflicting_ids=clashes,
        )


def _supports_deferred_constraints(db: Session) -> bool:
    bind = db.get_bind()
    return getattr(getattr(bind, "dialect", None), "name", None) == "postgresql"


def _apply_atomic(db: Session, *, rows_by_id: dict, items: list[ReorderItem], constraint: str) -> ReorderOutcome:
    db.execute(text(f"SET CONSTRAINTS {constraint} DEFERRED"))
    for item in items:
        rows_by_id[item.id].sequence_order = item.sequence_order
    db.commit()
    return ReorderOutcome(strategy=STRATEGY_ATOMIC, phase=PHASE_ATOMIC, updated_count=len(items))


def _apply_two_phase(db: Session, *, rows_by_id: dict, items: list[ReorderItem], temp_offset: int) -> ReorderOutcome:
    # Phase 1: move every target row out of the final value range.
    try:
        for item in items:
            rows_by_id[item.id].sequence_order = temp_offset + item.sequence_order
        db.flush()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Reorder phase one failed")
        raise ReorderFailed(
            "Reorder failed while moving entries to temporary positions",
            phase=PHASE_TEMPORARY_OFFSET,
            errors=[{"error": str(exc.__cause__ or exc)}],
        ) from exc

    # Phase 2: final values, one savepoint per row so one bad row does not sink the rest.
    pending = list(items)
    errors: dict[UUID, str] = {}
    for _attempt in range(PHASE_TWO_MAX_ATTEMPTS):
        failed: list[ReorderItem] = []
        for item in pending:
            row = rows_by_id[item.id]
            try:
                with db.begin_nested():
                    row.sequence_order = item.sequence_order
                    db.flush()
                errors.pop(item.id, None)
            except SQLAlchemyError as exc:
                errors[item.id] = str(exc.__cause__ or exc)
                failed.append(item)
        pending = failed
        if not pending:
            break
    db.commit()

    if errors:
        logger.warning("Reorder phase two left %d entr(ies) unassigned", len(errors))
    return ReorderOutcome(
        strategy=STRATEGY_TWO_PHASE,
        phase=PHASE_FINAL_ASSIGNMENT,
        updated_count=len(items) - len(errors),
        failed_count=len(errors),
        errors=[{"id": str(item_id), "error": message} for item_id, message in errors.items()],
    )


def _reorder(
    db: Session,
    *,
    load_rows,
    items: list[ReorderItem],
    constraint: str | None,
    strategy: str | None,
) -> ReorderOutcome:
    temp_offset = settings.REORDER_TEMP_OFFSET
    # Locking every row of the scope serializes concurrent reorders of it.
    scope_rows = load_rows()
    validate_reorder_items(items, scope_rows, temp_offset=temp_offset)

    chosen = strategy or settings.REORDER_STRATEGY
    if chosen == STRATEGY_ATOMIC and constraint and _supports_deferred_constraints(db):
        rows_by_id = {row.id: row for row in scope_rows}
        try:
            return _apply_atomic(db, rows_by_id=rows_by_id, items=items, constraint=constraint)
        except SQLAlchemyError:
            db.rollback()
            logger.warning("Atomic reorder failed, falling back to two-phase", exc_info=True)
            scope_rows = load_rows()

    rows_by_id = {row.id: row for row in scope_rows}
    return _apply_two_phase(db, rows_by_id=rows_by_id, items=items, temp_offset=temp_offset)


def reorder_questions_use_case(
    *,
    db: Session,
    stage_id: UUID,
    items: list[ReorderItem],
    actor: Principal,
    strategy: str | None = None,
) -> ReorderOutcome:
    """Rewrite question positions inside one stage."""
    require_permission(actor, "canManageStages")
    stage = db.query(Stage).filter(Stage.id == stage_id).first()
    if not stage:
        raise NotFound("Stage not found", code="STAGE_NOT_FOUND")
    if stage.tenant_id is None:
        if not check_permission(actor, "canManageGlobalStages"):
            raise AccessDenied("Global template stages are read-only", code="GLOBAL_STAGE_READ_ONLY")
    else:
        require_tenant_access(actor, stage.tenant_id)

    def _load_rows() -> list[Question]:
        return (
            db.query(Question)
            .filter(Question.stage_id == stage_id)
            .order_by(Question.sequence_order.asc())
            .with_for_update()
            .all()
        )

    outcome = _reorder(
        db,
        load_rows=_load_rows,
        items=items,
        constraint="uq_questions_stage_sequence",
        strategy=strategy,
    )
    logger.info(
        "Reordered %d question(s) in stage %s (%s)",
        outcome.updated_count,
        stage_id,
        outcome.strategy,
        extra={"stage_id": stage_id},
    )
    return outcome


def reorder_stages_use_case(
    *,
    db: Session,
    items: list[ReorderItem],
    actor: Principal,
    tenant_id: UUID | None = None,
    global_scope: bool = False,
    strategy: str | None = None,
) -> ReorderOutcome:
    """Rewrite stage positions inside one tenant pipeline (or the global one)."""
    require_permission(actor, "canManageStages")
    if global_scope:
        if not check_permission(actor, "canManageGlobalStages"):
            raise AccessDenied("Global template stages are read-only", code="GLOBAL_STAGE_READ_ONLY")
        scope = None
    else:
        scope = tenant_id or actor.tenant_id
        if scope is None:
            raise DomainError(code="TENANT_REQUIRED", http_status=400, message="A tenant is required")
        require_tenant_access(actor, scope)

    def _load_rows() -> list[Stage]:
        query = db.query(Stage)
        query = query.filter(Stage.tenant_id.is_(None)) if scope is None else query.filter(Stage.tenant_id == scope)
        return query.order_by(Stage.sequence_order.asc()).with_for_update().all()

    # The global order index is partial and cannot be deferred.
    constraint = None if scope is None else "uq_stages_tenant_sequence"
    return _reorder(db, load_rows=_load_rows, items=items, constraint=constraint, strategy=strategy)

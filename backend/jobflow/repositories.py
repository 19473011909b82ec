"""Persistence seam for the progression engine.

Use-cases talk to ``ProgressionRepository``; the SQLAlchemy implementation
below is the production one, tests provide an in-memory one.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol
from uuid import UUID

from fastapi import Depends
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .database import get_db
from .models import (
    Job,
    JobResponse,
    JobTask,
    NotificationOutbox,
    Question,
    Stage,
    StageAuditLog,
    StagePerformanceWindow,
    TaskTemplate,
    TenantMember,
    Transition,
)


class ProgressionRepository(Protocol):
    def get_job(self, job_id: UUID, *, for_update: bool = False) -> Job | None: ...
    def get_stage(self, stage_id: UUID) -> Stage | None: ...
    def list_pipeline_stages(self, tenant_id: UUID) -> list[Stage]: ...
    def get_question(self, question_id: UUID) -> Question | None: ...
    def list_questions(self, stage_id: UUID) -> list[Question]: ...
    def list_transitions(self, *, from_stage_id: UUID, question_id: UUID | None = None) -> list[Transition]: ...
    def get_open_window(self, job_id: UUID, *, for_update: bool = False) -> StagePerformanceWindow | None: ...
    def list_windows(self, job_id: UUID) -> list[StagePerformanceWindow]: ...
    def list_windows_for_stages(self, stage_ids: Iterable[UUID]) -> list[StagePerformanceWindow]: ...
    def list_active_templates(self, stage_id: UUID) -> list[TaskTemplate]: ...
    def spawned_template_ids(self, *, job_id: UUID, stage_entered_at: datetime) -> set[UUID]: ...
    def list_tasks(self, job_id: UUID) -> list[JobTask]: ...
    def list_open_tasks_for_tenant(self, tenant_id: UUID | None) -> list[JobTask]: ...
    def get_task(self, task_id: UUID, *, job_id: UUID, for_update: bool = False) -> JobTask | None: ...
    def find_member_by_roles(self, tenant_id: UUID, roles: tuple[str, ...]) -> TenantMember | None: ...
    def list_responses(self, job_id: UUID) -> list[JobResponse]: ...
    def list_audit_entries(self, job_id: UUID) -> list[StageAuditLog]: ...
    def add_response(self, response: JobResponse) -> None: ...
    def add_audit_entry(self, entry: StageAuditLog) -> None: ...
    def add_window(self, window: StagePerformanceWindow) -> None: ...
    def add_task(self, task: JobTask) -> None: ...
    def add_template(self, template: TaskTemplate) -> None: ...
    def add_notification(self, notification: NotificationOutbox) -> None: ...
    def flush(self) -> None: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...


class SqlProgressionRepository:
    """ProgressionRepository over a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def get_job(self, job_id: UUID, *, for_update: bool = False) -> Job | None:
        query = self.db.query(Job).filter(Job.id == job_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_stage(self, stage_id: UUID) -> Stage | None:
        return self.db.query(Stage).filter(Stage.id == stage_id).first()

    def list_pipeline_stages(self, tenant_id: UUID) -> list[Stage]:
        """Tenant's active stages, or the global template set when it has none."""
        stages = (
            self.db.query(Stage)
            .filter(Stage.tenant_id == tenant_id, Stage.is_active.is_(True))
            .order_by(Stage.sequence_order.asc())
            .all()
        )
        if stages:
            return stages
        return (
            self.db.query(Stage)
            .filter(Stage.tenant_id.is_(None), Stage.is_active.is_(True))
            .order_by(Stage.sequence_order.asc())
            .all()
        )

    def get_question(self, question_id: UUID) -> Question | None:
        return self.db.query(Question).filter(Question.id == question_id).first()

    def list_questions(self, stage_id: UUID) -> list[Question]:
        return (
            self.db.query(Question)
            .filter(Question.stage_id == stage_id)
            .order_by(Question.sequence_order.asc())
            .all()
        )

    def list_transitions(self, *, from_stage_id: UUID, question_id: UUID | None = None) -> list[Transition]:
        query = self.db.query(Transition).filter(Transition.from_stage_id == from_stage_id)
        if question_id is not None:
            query = query.filter(Transition.trigger_question_id == question_id)
        return query.order_by(Transition.is_automatic.desc(), Transition.created_at.asc()).all()

    def get_open_window(self, job_id: UUID, *, for_update: bool = False) -> StagePerformanceWindow | None:
        query = self.db.query(StagePerformanceWindow).filter(
            StagePerformanceWindow.job_id == job_id,
            StagePerformanceWindow.exited_at.is_(None),
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def list_windows(self, job_id: UUID) -> list[StagePerformanceWindow]:
        return (
            self.db.query(StagePerformanceWindow)
            .filter(StagePerformanceWindow.job_id == job_id)
            .order_by(StagePerformanceWindow.entered_at.asc())
            .all()
        )

    def list_windows_for_stages(self, stage_ids: Iterable[UUID]) -> list[StagePerformanceWindow]:
        ids = list(stage_ids)
        if not ids:
            return []
        return (
            self.db.query(StagePerformanceWindow)
            .filter(StagePerformanceWindow.stage_id.in_(ids))
            .all()
        )

    def list_active_templates(self, stage_id: UUID) -> list[TaskTemplate]:
        return (
            self.db.query(TaskTemplate)
            .filter(TaskTemplate.stage_id == stage_id, TaskTemplate.is_active.is_(True))
            .order_by(TaskTemplate.created_at.asc())
            .all()
        )

    def spawned_template_ids(self, *, job_id: UUID, stage_entered_at: datetime) -> set[UUID]:
        rows = (
            self.db.query(JobTask.template_id)
            .filter(JobTask.job_id == job_id, JobTask.stage_entered_at == stage_entered_at)
            .all()
        )
        return {row[0] for row in rows}

    def list_tasks(self, job_id: UUID) -> list[JobTask]:
        return (
            self.db.query(JobTask)
            .filter(JobTask.job_id == job_id)
            .order_by(JobTask.created_at.asc())
            .all()
        )

    def list_open_tasks_for_tenant(self, tenant_id: UUID | None) -> list[JobTask]:
        query = self.db.query(JobTask).filter(
            JobTask.status.in_(["pending", "in_progress", "overdue"]),
            or_(JobTask.sla_hours.isnot(None), JobTask.due_date.isnot(None)),
        )
        if tenant_id is not None:
            query = query.filter(JobTask.tenant_id == tenant_id)
        return query.all()

    def get_task(self, task_id: UUID, *, job_id: UUID, for_update: bool = False) -> JobTask | None:
        query = self.db.query(JobTask).filter(JobTask.id == task_id, JobTask.job_id == job_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def find_member_by_roles(self, tenant_id: UUID, roles: tuple[str, ...]) -> TenantMember | None:
        return (
            self.db.query(TenantMember)
            .filter(
                TenantMember.tenant_id == tenant_id,
                TenantMember.role.in_(roles),
                TenantMember.is_active.is_(True),
            )
            .order_by(TenantMember.created_at.asc())
            .first()
        )

    def list_responses(self, job_id: UUID) -> list[JobResponse]:
        return (
            self.db.query(JobResponse)
            .filter(JobResponse.job_id == job_id)
            .order_by(JobResponse.created_at.asc())
            .all()
        )

    def list_audit_entries(self, job_id: UUID) -> list[StageAuditLog]:
        return (
            self.db.query(StageAuditLog)
            .filter(StageAuditLog.job_id == job_id)
            .order_by(StageAuditLog.created_at.asc())
            .all()
        )

    def add_response(self, response: JobResponse) -> None:
        self.db.add(response)

    def add_audit_entry(self, entry: StageAuditLog) -> None:
        self.db.add(entry)

    def add_window(self, window: StagePerformanceWindow) -> None:
        self.db.add(window)

    def add_task(self, task: JobTask) -> None:
        self.db.add(task)

    def add_template(self, template: TaskTemplate) -> None:
        self.db.add(template)

    def add_notification(self, notification: NotificationOutbox) -> None:
        self.db.add(notification)

    def flush(self) -> None:
        self.db.flush()

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()


def get_progression_repository(db: Session = Depends(get_db)) -> SqlProgressionRepository:
    """FastAPI dependency: repository bound to the request session."""
    return SqlProgressionRepository(db)

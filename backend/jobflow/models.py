"""SQLAlchemy models for the stage progression engine."""
from sqlalchemy import (
    Boolean, Column, String, Integer, Float, DateTime, Text,
    ForeignKey, CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from .database import Base

STAGE_TYPES = ("standard", "milestone", "approval")
RESPONSE_TYPES = ("yes_no", "text", "number", "date", "file_upload", "multiple_choice")
TASK_TYPES = ("reminder", "checklist", "documentation", "communication", "approval", "scheduling", "manual")
TASK_PRIORITIES = ("low", "normal", "high", "urgent")
TASK_STATUSES = ("pending", "in_progress", "completed", "overdue", "cancelled")
TERMINAL_TASK_STATUSES = ("completed", "cancelled")
ASSIGN_RULES = ("creator", "foreman", "admin", "client", "unassigned")
TRIGGER_SOURCES = ("question_response", "admin_override", "system_auto", "client_action", "error")
MEMBER_ROLES = ("site_admin", "owner", "admin", "foreman", "worker", "client")


class Stage(Base):
    """Pipeline stage. NULL tenant_id marks a global template stage."""
    __tablename__ = "stages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String(20), nullable=True)
    sequence_order = Column(Integer, nullable=False)
    status_bucket = Column(String(50), nullable=False)
    stage_type = Column(String(20), nullable=False, default="standard")
    min_duration_hours = Column(Integer, nullable=False, default=0)
    max_duration_hours = Column(Integer, nullable=True)
    requires_approval = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    questions = relationship(
        "Question",
        back_populates="stage",
        order_by="Question.sequence_order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(stage_type.in_(STAGE_TYPES), name="chk_stage_type"),
        CheckConstraint("sequence_order >= 0", name="chk_stage_sequence_non_negative"),
        CheckConstraint(
            "max_duration_hours IS NULL OR max_duration_hours >= min_duration_hours",
            name="chk_stage_duration_bounds",
        ),
        # Deferrable so a whole reorder can be written inside one transaction.
        UniqueConstraint(
            "tenant_id", "sequence_order",
            name="uq_stages_tenant_sequence",
            deferrable=True,
            initially="IMMEDIATE",
        ),
        Index(
            "uq_stages_global_sequence",
            "sequence_order",
            unique=True,
            postgresql_where=(tenant_id == None),  # noqa: E711
        ),
    )


class Question(Base):
    """Question asked while a job sits in a stage."""
    __tablename__ = "stage_questions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True)
    question_text = Column(Text, nullable=False)
    response_type = Column(String(20), nullable=False)
    response_options = Column(JSONB, nullable=True)
    sequence_order = Column(Integer, nullable=False)
    is_required = Column(Boolean, nullable=False, default=True)
    skip_conditions = Column(JSONB, nullable=True)
    help_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    stage = relationship("Stage", back_populates="questions")

    __table_args__ = (
        CheckConstraint(response_type.in_(RESPONSE_TYPES), name="chk_question_response_type"),
        CheckConstraint("sequence_order >= 0", name="chk_question_sequence_non_negative"),
        UniqueConstraint(
            "stage_id", "sequence_order",
            name="uq_questions_stage_sequence",
            deferrable=True,
            initially="IMMEDIATE",
        ),
    )


class Transition(Base):
    """Rule moving a job from one stage to another on a matching answer."""
    __tablename__ = "stage_transitions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    from_stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True)
    to_stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.id", ondelete="CASCADE"), nullable=False)
    trigger_question_id = Column(UUID(as_uuid=True), ForeignKey("stage_questions.id", ondelete="CASCADE"), nullable=True)
    trigger_condition = Column(String(255), nullable=True)  # "Yes", ">=90", NULL = any answer
    is_automatic = Column(Boolean, nullable=False, default=True)
    requires_override = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("from_stage_id <> to_stage_id", name="chk_transition_not_self"),
        UniqueConstraint(
            "from_stage_id", "trigger_question_id", "trigger_condition", "to_stage_id",
            name="uq_transition_rule",
        ),
        Index("idx_transitions_lookup", "from_stage_id", "trigger_question_id"),
    )


class Job(Base):
    """Job projection owned by the progression engine."""
    __tablename__ = "jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    job_type = Column(String(100), nullable=True)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    foreman_id = Column(UUID(as_uuid=True), nullable=True)
    current_stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.id"), nullable=True, index=True)
    stage_entered_at = Column(DateTime(timezone=True), nullable=True)
    status_bucket = Column(String(50), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class JobResponse(Base):
    """Append-only answer to a stage question."""
    __tablename__ = "job_responses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id = Column(UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    question_id = Column(UUID(as_uuid=True), ForeignKey("stage_questions.id"), nullable=False)
    response_value = Column(Text, nullable=False)
    meta_data = Column(JSONB, default={})  # 'metadata' is reserved by SQLAlchemy
    responded_by = Column(UUID(as_uuid=True), nullable=True)
    source = Column(String(50), nullable=False, default="web")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_job_responses_job_question", "job_id", "question_id", "created_at"),
    )


class TaskTemplate(Base):
    """Definition of the work spawned when a job enters a stage."""
    __tablename__ = "task_templates"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True)
    task_type = Column(String(30), nullable=False, default="checklist")
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    subtasks = Column(JSONB, nullable=False, default=list)
    upload_required = Column(Boolean, nullable=False, default=False)
    sla_hours = Column(Integer, nullable=True)
    due_date_offset_hours = Column(Integer, nullable=False, default=0)
    priority = Column(String(20), nullable=False, default="normal")
    auto_assign_to = Column(String(20), nullable=False, default="creator")
    client_visible = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(task_type.in_(TASK_TYPES), name="chk_template_task_type"),
        CheckConstraint(priority.in_(TASK_PRIORITIES), name="chk_template_priority"),
        CheckConstraint(auto_assign_to.in_(ASSIGN_RULES), name="chk_template_assign_rule"),
        CheckConstraint("sla_hours IS NULL OR sla_hours > 0", name="chk_template_sla_positive"),
    )


class JobTask(Base):
    """Per-job materialization of a task template."""
    __tablename__ = "job_tasks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id = Column(UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    template_id = Column(UUID(as_uuid=True), ForeignKey("task_templates.id"), nullable=False)
    stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.id"), nullable=False)
    stage_entered_at = Column(DateTime(timezone=True), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    task_type = Column(String(30), nullable=False, default="checklist")
    status = Column(String(20), nullable=False, default="pending", index=True)
    priority = Column(String(20), nullable=False, default="normal")
    subtasks = Column(JSONB, nullable=False, default=list)
    assigned_to = Column(UUID(as_uuid=True), nullable=True, index=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    sla_hours = Column(Integer, nullable=True)
    upload_required = Column(Boolean, nullable=False, default=False)
    upload_urls = Column(JSONB, nullable=False, default=list)
    client_visible = Column(Boolean, nullable=False, default=False)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    completed_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(TASK_STATUSES), name="chk_job_task_status"),
        CheckConstraint(priority.in_(TASK_PRIORITIES), name="chk_job_task_priority"),
        # One spawn per template per stage entry
        UniqueConstraint("job_id", "template_id", "stage_entered_at", name="uq_job_task_spawn"),
    )


class StageAuditLog(Base):
    """Append-only record of every transition attempt."""
    __tablename__ = "stage_audit_log"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id = Column(UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    from_stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.id"), nullable=True)
    to_stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.id"), nullable=False)
    trigger_source = Column(String(30), nullable=False)
    triggered_by = Column(UUID(as_uuid=True), nullable=True)
    question_id = Column(UUID(as_uuid=True), ForeignKey("stage_questions.id"), nullable=True)
    response_value = Column(Text, nullable=True)
    duration_in_previous_stage_hours = Column(Float, nullable=True)
    trigger_details = Column(JSONB, default={})
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        CheckConstraint(trigger_source.in_(TRIGGER_SOURCES), name="chk_audit_trigger_source"),
    )


class StagePerformanceWindow(Base):
    """Interval a job spends in one stage."""
    __tablename__ = "stage_performance_windows"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id = Column(UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.id"), nullable=False, index=True)
    entered_at = Column(DateTime(timezone=True), nullable=False)
    exited_at = Column(DateTime(timezone=True), nullable=True)
    duration_hours = Column(Float, nullable=True)
    tasks_completed = Column(Integer, nullable=False, default=0)
    tasks_overdue = Column(Integer, nullable=False, default=0)
    conversion_successful = Column(Boolean, nullable=True)

    __table_args__ = (
        # Exactly one open window per job
        Index(
            "uq_performance_window_open",
            "job_id",
            unique=True,
            postgresql_where=(exited_at == None),  # noqa: E711
        ),
    )


class TenantMember(Base):
    """Directory projection used for role-based task assignment."""
    __tablename__ = "tenant_members"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    display_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(role.in_(MEMBER_ROLES), name="chk_member_role"),
        UniqueConstraint("tenant_id", "user_id", name="uq_tenant_member"),
    )


class NotificationOutbox(Base):
    """
    Notification outbox - ONE ROW PER RECIPIENT.
    Drained by the Celery worker with SELECT FOR UPDATE SKIP LOCKED.
    """
    __tablename__ = "notification_outbox"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    job_id = Column(UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=True)
    task_id = Column(UUID(as_uuid=True), ForeignKey("job_tasks.id", ondelete="CASCADE"), nullable=True)
    task_title = Column(String(255), nullable=True)
    recipient_user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    message = Column(Text, nullable=False)
    meta_data = Column(JSONB, default={})

    status = Column(String(20), nullable=False, default="pending", index=True)  # pending/sent/failed
    attempts = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_error = Column(Text, nullable=True)

    # Format: type:task_id:user_id
    idempotency_key = Column(String(255), unique=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(type.in_(["task_assigned", "stage_changed"]), name="chk_notification_type"),
        CheckConstraint(status.in_(["pending", "sent", "failed"]), name="chk_notification_status"),
    )

"""Pydantic schemas for API."""
from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Literal, Optional
from datetime import datetime
from uuid import UUID


ResponseType = Literal["yes_no", "text", "number", "date", "file_upload", "multiple_choice"]
StageType = Literal["standard", "milestone", "approval"]
TaskPriority = Literal["low", "normal", "high", "urgent"]
TaskStatus = Literal["pending", "in_progress", "completed", "overdue", "cancelled"]
AssignRule = Literal["creator", "foreman", "admin", "client", "unassigned"]


# Stage configuration
class StageBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    color: Optional[str] = None
    status_bucket: str = Field(min_length=1, max_length=50)
    stage_type: StageType = "standard"
    min_duration_hours: int = Field(default=0, ge=0)
    max_duration_hours: Optional[int] = Field(default=None, ge=0)
    requires_approval: bool = False


class StageCreate(StageBase):
    sequence_order: Optional[int] = Field(default=None, ge=0)
    is_global: bool = False


class StageUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    color: Optional[str] = None
    status_bucket: Optional[str] = Field(default=None, min_length=1, max_length=50)
    stage_type: Optional[StageType] = None
    min_duration_hours: Optional[int] = Field(default=None, ge=0)
    max_duration_hours: Optional[int] = Field(default=None, ge=0)
    requires_approval: Optional[bool] = None
    is_active: Optional[bool] = None


class StageOut(StageBase):
    id: UUID
    tenant_id: Optional[UUID] = None
    sequence_order: int
    is_active: bool
    model_config = ConfigDict(from_attributes=True)


class QuestionBase(BaseModel):
    question_text: str = Field(min_length=1)
    response_type: ResponseType
    response_options: Optional[list[str]] = None
    is_required: bool = True
    skip_conditions: Optional[dict[str, Any]] = None
    help_text: Optional[str] = None


class QuestionCreate(QuestionBase):
    sequence_order: Optional[int] = Field(default=None, ge=0)


class QuestionUpdate(BaseModel):
    question_text: Optional[str] = Field(default=None, min_length=1)
    response_type: Optional[ResponseType] = None
    response_options: Optional[list[str]] = None
    is_required: Optional[bool] = None
    skip_conditions: Optional[dict[str, Any]] = None
    help_text: Optional[str] = None


class QuestionOut(QuestionBase):
    id: UUID
    stage_id: UUID
    sequence_order: int
    model_config = ConfigDict(from_attributes=True)


class TransitionCreate(BaseModel):
    from_stage_id: UUID
    to_stage_id: UUID
    trigger_question_id: Optional[UUID] = None
    trigger_condition: Optional[str] = Field(default=None, max_length=255)
    is_automatic: bool = True
    requires_override: bool = False


class TransitionOut(TransitionCreate):
    id: UUID
    model_config = ConfigDict(from_attributes=True)


class TaskTemplateCreate(BaseModel):
    task_type: Literal["reminder", "checklist", "documentation", "communication", "approval", "scheduling"] = "checklist"
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    subtasks: list[Any] = Field(default_factory=list)
    upload_required: bool = False
    sla_hours: Optional[int] = Field(default=None, gt=0)
    due_date_offset_hours: int = Field(default=0, ge=0)
    priority: TaskPriority = "normal"
    auto_assign_to: AssignRule = "creator"
    client_visible: bool = False


class TaskTemplateOut(TaskTemplateCreate):
    id: UUID
    stage_id: UUID
    task_type: str
    is_active: bool
    model_config = ConfigDict(from_attributes=True)


class ReorderItem(BaseModel):
    id: UUID
    sequence_order: int


class QuestionReorderRequest(BaseModel):
    questions: list[ReorderItem] = Field(min_length=1)


class StageReorderRequest(BaseModel):
    stages: list[ReorderItem] = Field(min_length=1)


class ReorderResultOut(BaseModel):
    strategy: str
    phase: str
    updated_count: int
    failed_count: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)


class CopyGlobalStagesOut(BaseModel):
    stages_copied: int
    questions_copied: int
    transitions_copied: int
    templates_copied: int
    stages: list[StageOut]


# Progression
class ResponseSubmit(BaseModel):
    question_id: UUID
    response_value: str | int | float | bool
    metadata: dict[str, Any] = Field(default_factory=dict)
    source: str = Field(default="web", min_length=1, max_length=50)


class OverrideRequest(BaseModel):
    target_stage_id: UUID
    reason: str = Field(min_length=1, max_length=2000)


class SubtaskState(BaseModel):
    id: str
    title: str
    completed: bool = False
    completed_at: Optional[datetime] = None
    completed_by: Optional[UUID] = None
    notes: Optional[str] = None
    upload_urls: list[str] = Field(default_factory=list)


class JobTaskOut(BaseModel):
    id: UUID
    job_id: UUID
    template_id: UUID
    stage_id: UUID
    title: str
    description: Optional[str] = None
    task_type: str
    status: str
    priority: str
    subtasks: list[SubtaskState]
    assigned_to: Optional[UUID] = None
    due_date: Optional[datetime] = None
    sla_hours: Optional[int] = None
    upload_required: bool
    upload_urls: list[str]
    client_visible: bool
    completed_at: Optional[datetime] = None
    completed_by: Optional[UUID] = None
    created_at: datetime
    progress: int
    sla_status: Literal["ok", "warning", "violated"]
    sla_deadline: Optional[datetime] = None


class TaskStats(BaseModel):
    total: int
    pending: int
    in_progress: int
    completed: int
    overdue: int
    cancelled: int
    completion_rate: int
    sla_violations: int


class TaskListOut(BaseModel):
    tasks: list[JobTaskOut]
    stats: TaskStats


class SubtaskUpdate(BaseModel):
    id: str
    completed: Optional[bool] = None
    notes: Optional[str] = None
    upload_urls: Optional[list[str]] = None


class TaskUpdate(BaseModel):
    status: Optional[TaskStatus] = None
    subtasks: Optional[list[SubtaskUpdate]] = None
    upload_urls: Optional[list[str]] = None
    assigned_to: Optional[UUID] = None
    notes: Optional[str] = None


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    priority: TaskPriority = "normal"
    subtasks: list[str] = Field(default_factory=list)
    upload_required: bool = False
    sla_hours: Optional[int] = Field(default=None, gt=0)
    due_date: Optional[datetime] = None
    assigned_to: Optional[UUID] = None
    client_visible: bool = False


class ProgressionResultOut(BaseModel):
    action: Literal["stage_transition", "no_transition", "requires_override"]
    job_id: UUID
    response_id: Optional[UUID] = None
    old_stage_id: Optional[UUID] = None
    new_stage_id: Optional[UUID] = None
    audit_entry_id: Optional[UUID] = None
    ambiguous: bool = False
    message: str
    tasks_created: list[JobTaskOut] = Field(default_factory=list)
    tasks_created_count: int = 0


class QuestionFlowOut(BaseModel):
    job_id: UUID
    in_pipeline: bool
    current_stage: Optional[StageOut] = None
    questions: list[QuestionOut] = Field(default_factory=list)
    remaining_questions: list[QuestionOut] = Field(default_factory=list)
    current_question: Optional[QuestionOut] = None
    answered_count: int = 0
    skipped_question_ids: list[UUID] = Field(default_factory=list)
    can_proceed: bool = False
    next_stage_preview: Optional[StageOut] = None


class AuditEntryOut(BaseModel):
    id: UUID
    job_id: UUID
    from_stage_id: Optional[UUID] = None
    to_stage_id: UUID
    trigger_source: str
    triggered_by: Optional[UUID] = None
    question_id: Optional[UUID] = None
    response_value: Optional[str] = None
    duration_in_previous_stage_hours: Optional[float] = None
    trigger_details: Optional[dict[str, Any]] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class PerformanceWindowOut(BaseModel):
    id: UUID
    job_id: UUID
    stage_id: UUID
    entered_at: datetime
    exited_at: Optional[datetime] = None
    duration_hours: Optional[float] = None
    tasks_completed: int
    tasks_overdue: int
    conversion_successful: Optional[bool] = None
    model_config = ConfigDict(from_attributes=True)


class StagePerformanceRow(BaseModel):
    stage_id: UUID
    stage_name: str
    sequence_order: int
    windows: int
    open_windows: int
    avg_duration_hours: Optional[float] = None
    median_duration_hours: Optional[float] = None
    avg_tasks_completed: Optional[float] = None
    avg_tasks_overdue: Optional[float] = None
    conversion_rate: Optional[float] = None


class SlaViolationOut(BaseModel):
    task_id: UUID
    job_id: UUID
    title: str
    status: str
    assigned_to: Optional[UUID] = None
    sla_deadline: datetime
    hours_overdue: float
    severity: Literal["low", "medium", "high", "critical"]

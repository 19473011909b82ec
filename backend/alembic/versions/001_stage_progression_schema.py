"""Stage progression schema.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)
JSONB = postgresql.JSONB


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "stages",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("tenant_id", UUID, nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(length=20), nullable=True),
        sa.Column("sequence_order", sa.Integer(), nullable=False),
        sa.Column("status_bucket", sa.String(length=50), nullable=False),
        sa.Column("stage_type", sa.String(length=20), nullable=False, server_default="standard"),
        sa.Column("min_duration_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_duration_hours", sa.Integer(), nullable=True),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.CheckConstraint("stage_type IN ('standard', 'milestone', 'approval')", name="chk_stage_type"),
        sa.CheckConstraint("sequence_order >= 0", name="chk_stage_sequence_non_negative"),
        sa.CheckConstraint(
            "max_duration_hours IS NULL OR max_duration_hours >= min_duration_hours",
            name="chk_stage_duration_bounds",
        ),
        sa.UniqueConstraint(
            "tenant_id", "sequence_order",
            name="uq_stages_tenant_sequence",
            deferrable=True,
            initially="IMMEDIATE",
        ),
    )
    op.create_index("ix_stages_tenant_id", "stages", ["tenant_id"])
    op.create_index(
        "uq_stages_global_sequence",
        "stages",
        ["sequence_order"],
        unique=True,
        postgresql_where=sa.text("tenant_id IS NULL"),
    )

    op.create_table(
        "stage_questions",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("stage_id", UUID, sa.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("question_text", sa.Text(), nullable=False),
        sa.Column("response_type", sa.String(length=20), nullable=False),
        sa.Column("response_options", JSONB, nullable=True),
        sa.Column("sequence_order", sa.Integer(), nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("skip_conditions", JSONB, nullable=True),
        sa.Column("help_text", sa.Text(), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "response_type IN ('yes_no', 'text', 'number', 'date', 'file_upload', 'multiple_choice')",
            name="chk_question_response_type",
        ),
        sa.CheckConstraint("sequence_order >= 0", name="chk_question_sequence_non_negative"),
        sa.UniqueConstraint(
            "stage_id", "sequence_order",
            name="uq_questions_stage_sequence",
            deferrable=True,
            initially="IMMEDIATE",
        ),
    )
    op.create_index("ix_stage_questions_stage_id", "stage_questions", ["stage_id"])

    op.create_table(
        "stage_transitions",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("from_stage_id", UUID, sa.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("to_stage_id", UUID, sa.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "trigger_question_id",
            UUID,
            sa.ForeignKey("stage_questions.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("trigger_condition", sa.String(length=255), nullable=True),
        sa.Column("is_automatic", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("requires_override", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.CheckConstraint("from_stage_id <> to_stage_id", name="chk_transition_not_self"),
        sa.UniqueConstraint(
            "from_stage_id", "trigger_question_id", "trigger_condition", "to_stage_id",
            name="uq_transition_rule",
        ),
    )
    op.create_index("ix_stage_transitions_from_stage_id", "stage_transitions", ["from_stage_id"])
    op.create_index("idx_transitions_lookup", "stage_transitions", ["from_stage_id", "trigger_question_id"])

    op.create_table(
        "jobs",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("job_type", sa.String(length=100), nullable=True),
        sa.Column("created_by", UUID, nullable=True),
        sa.Column("foreman_id", UUID, nullable=True),
        sa.Column("current_stage_id", UUID, sa.ForeignKey("stages.id"), nullable=True),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_bucket", sa.String(length=50), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_jobs_tenant_id", "jobs", ["tenant_id"])
    op.create_index("ix_jobs_current_stage_id", "jobs", ["current_stage_id"])
    op.create_index("ix_jobs_status_bucket", "jobs", ["status_bucket"])

    op.create_table(
        "job_responses",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("job_id", UUID, sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("question_id", UUID, sa.ForeignKey("stage_questions.id"), nullable=False),
        sa.Column("response_value", sa.Text(), nullable=False),
        sa.Column("meta_data", JSONB, nullable=True),
        sa.Column("responded_by", UUID, nullable=True),
        sa.Column("source", sa.String(length=50), nullable=False, server_default="web"),
        _created_at(),
    )
    op.create_index("idx_job_responses_job_question", "job_responses", ["job_id", "question_id", "created_at"])

    op.create_table(
        "task_templates",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("stage_id", UUID, sa.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("task_type", sa.String(length=30), nullable=False, server_default="checklist"),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("subtasks", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("upload_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sla_hours", sa.Integer(), nullable=True),
        sa.Column("due_date_offset_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("priority", sa.String(length=20), nullable=False, server_default="normal"),
        sa.Column("auto_assign_to", sa.String(length=20), nullable=False, server_default="creator"),
        sa.Column("client_visible", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.CheckConstraint(
            "task_type IN ('reminder', 'checklist', 'documentation', 'communication', "
            "'approval', 'scheduling', 'manual')",
            name="chk_template_task_type",
        ),
        sa.CheckConstraint("priority IN ('low', 'normal', 'high', 'urgent')", name="chk_template_priority"),
        sa.CheckConstraint(
            "auto_assign_to IN ('creator', 'foreman', 'admin', 'client', 'unassigned')",
            name="chk_template_assign_rule",
        ),
        sa.CheckConstraint("sla_hours IS NULL OR sla_hours > 0", name="chk_template_sla_positive"),
    )
    op.create_index("ix_task_templates_stage_id", "task_templates", ["stage_id"])

    op.create_table(
        "job_tasks",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("job_id", UUID, sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("template_id", UUID, sa.ForeignKey("task_templates.id"), nullable=False),
        sa.Column("stage_id", UUID, sa.ForeignKey("stages.id"), nullable=False),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("task_type", sa.String(length=30), nullable=False, server_default="checklist"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.String(length=20), nullable=False, server_default="normal"),
        sa.Column("subtasks", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("assigned_to", UUID, nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sla_hours", sa.Integer(), nullable=True),
        sa.Column("upload_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("upload_urls", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("client_visible", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", UUID, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", UUID, nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'overdue', 'cancelled')",
            name="chk_job_task_status",
        ),
        sa.CheckConstraint("priority IN ('low', 'normal', 'high', 'urgent')", name="chk_job_task_priority"),
        sa.UniqueConstraint("job_id", "template_id", "stage_entered_at", name="uq_job_task_spawn"),
    )
    op.create_index("ix_job_tasks_job_id", "job_tasks", ["job_id"])
    op.create_index("ix_job_tasks_tenant_id", "job_tasks", ["tenant_id"])
    op.create_index("ix_job_tasks_status", "job_tasks", ["status"])
    op.create_index("ix_job_tasks_assigned_to", "job_tasks", ["assigned_to"])

    op.create_table(
        "stage_audit_log",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("job_id", UUID, sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("from_stage_id", UUID, sa.ForeignKey("stages.id"), nullable=True),
        sa.Column("to_stage_id", UUID, sa.ForeignKey("stages.id"), nullable=False),
        sa.Column("trigger_source", sa.String(length=30), nullable=False),
        sa.Column("triggered_by", UUID, nullable=True),
        sa.Column("question_id", UUID, sa.ForeignKey("stage_questions.id"), nullable=True),
        sa.Column("response_value", sa.Text(), nullable=True),
        sa.Column("duration_in_previous_stage_hours", sa.Float(), nullable=True),
        sa.Column("trigger_details", JSONB, nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "trigger_source IN ('question_response', 'admin_override', 'system_auto', 'client_action', 'error')",
            name="chk_audit_trigger_source",
        ),
    )
    op.create_index("ix_stage_audit_log_job_id", "stage_audit_log", ["job_id"])
    op.create_index("ix_stage_audit_log_tenant_id", "stage_audit_log", ["tenant_id"])
    op.create_index("ix_stage_audit_log_created_at", "stage_audit_log", ["created_at"])

    op.create_table(
        "stage_performance_windows",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("job_id", UUID, sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("stage_id", UUID, sa.ForeignKey("stages.id"), nullable=False),
        sa.Column("entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("exited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_hours", sa.Float(), nullable=True),
        sa.Column("tasks_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tasks_overdue", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversion_successful", sa.Boolean(), nullable=True),
    )
    op.create_index("ix_stage_performance_windows_job_id", "stage_performance_windows", ["job_id"])
    op.create_index("ix_stage_performance_windows_tenant_id", "stage_performance_windows", ["tenant_id"])
    op.create_index("ix_stage_performance_windows_stage_id", "stage_performance_windows", ["stage_id"])
    op.create_index(
        "uq_performance_window_open",
        "stage_performance_windows",
        ["job_id"],
        unique=True,
        postgresql_where=sa.text("exited_at IS NULL"),
    )

    op.create_table(
        "tenant_members",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.CheckConstraint(
            "role IN ('site_admin', 'owner', 'admin', 'foreman', 'worker', 'client')",
            name="chk_member_role",
        ),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_tenant_member"),
    )
    op.create_index("ix_tenant_members_tenant_id", "tenant_members", ["tenant_id"])
    op.create_index("ix_tenant_members_user_id", "tenant_members", ["user_id"])

    op.create_table(
        "notification_outbox",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("job_id", UUID, sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=True),
        sa.Column("task_id", UUID, sa.ForeignKey("job_tasks.id", ondelete="CASCADE"), nullable=True),
        sa.Column("task_title", sa.String(length=255), nullable=True),
        sa.Column("recipient_user_id", UUID, nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("meta_data", JSONB, nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        _created_at(),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("type IN ('task_assigned', 'stage_changed')", name="chk_notification_type"),
        sa.CheckConstraint("status IN ('pending', 'sent', 'failed')", name="chk_notification_status"),
        sa.UniqueConstraint("idempotency_key", name="uq_notification_outbox_idempotency_key"),
    )
    op.create_index("ix_notification_outbox_tenant_id", "notification_outbox", ["tenant_id"])
    op.create_index("ix_notification_outbox_recipient_user_id", "notification_outbox", ["recipient_user_id"])
    op.create_index("ix_notification_outbox_status", "notification_outbox", ["status"])
    op.create_index("ix_notification_outbox_next_retry_at", "notification_outbox", ["next_retry_at"])
    op.create_index("ix_notification_outbox_created_at", "notification_outbox", ["created_at"])


def downgrade() -> None:
    op.drop_table("notification_outbox")
    op.drop_table("tenant_members")
    op.drop_index("uq_performance_window_open", table_name="stage_performance_windows")
    op.drop_table("stage_performance_windows")
    op.drop_table("stage_audit_log")
    op.drop_table("job_tasks")
    op.drop_table("task_templates")
    op.drop_table("job_responses")
    op.drop_table("jobs")
    op.drop_table("stage_transitions")
    op.drop_table("stage_questions")
    op.drop_index("uq_stages_global_sequence", table_name="stages")
    op.drop_table("stages")

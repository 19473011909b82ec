"""SLA and duration helpers. Everything here is computed on read."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

SLA_OK = "ok"
SLA_WARNING = "warning"
SLA_VIOLATED = "violated"

_SLA_EXEMPT_STATUSES: set[str] = {"completed", "cancelled"}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def hours_between(start: datetime, end: datetime) -> float:
    """Elapsed hours rounded to two decimals."""
    return round((end - start).total_seconds() / 3600, 2)


def sla_deadline(created_at: datetime | None, sla_hours: int | None) -> datetime | None:
    if created_at is None or not sla_hours:
        return None
    return created_at + timedelta(hours=sla_hours)


def evaluate_sla(
    *,
    created_at: datetime | None,
    sla_hours: int | None,
    status: str | None,
    now: datetime,
    warning_window_hours: int = 2,
) -> str:
    """Classify timeliness as ok / warning / violated."""
    if status in _SLA_EXEMPT_STATUSES:
        return SLA_OK
    deadline = sla_deadline(created_at, sla_hours)
    if deadline is None:
        return SLA_OK
    if now > deadline:
        return SLA_VIOLATED
    if now >= deadline - timedelta(hours=warning_window_hours):
        return SLA_WARNING
    return SLA_OK


def violation_severity(hours_overdue: float) -> str:
    if hours_overdue > 48:
        return "critical"
    if hours_overdue > 24:
        return "high"
    if hours_overdue > 8:
        return "medium"
    return "low"


def is_task_overdue(task, *, now: datetime) -> bool:
    """Open task past its due date (or already flagged overdue)."""
    if task.status in _SLA_EXEMPT_STATUSES:
        return False
    if task.status == "overdue":
        return True
    return task.due_date is not None and now > task.due_date


def subtask_progress(subtasks: list[dict] | None) -> int:
    """Percentage of completed subtasks."""
    if not subtasks:
        return 0
    done = sum(1 for item in subtasks if item.get("completed"))
    return round(done * 100 / len(subtasks))

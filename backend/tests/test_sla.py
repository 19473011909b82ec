from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from jobflow.services.sla import (
    evaluate_sla,
    hours_between,
    is_task_overdue,
    sla_deadline,
    subtask_progress,
    violation_severity,
)

CREATED = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_hours_between_rounds_to_two_decimals() -> None:
    assert hours_between(CREATED, CREATED + timedelta(hours=48)) == 48.0
    assert hours_between(CREATED, CREATED + timedelta(minutes=20)) == 0.33


def test_deadline_needs_sla_hours() -> None:
    assert sla_deadline(CREATED, None) is None
    assert sla_deadline(CREATED, 24) == CREATED + timedelta(hours=24)


@pytest.mark.parametrize(
    ("elapsed_hours", "status", "expected"),
    [
        (1, "pending", "ok"),
        (22, "pending", "warning"),
        (24, "in_progress", "warning"),
        (25, "pending", "violated"),
        (25, "completed", "ok"),
        (25, "cancelled", "ok"),
    ],
)
def test_evaluate_sla(elapsed_hours, status, expected) -> None:
    now = CREATED + timedelta(hours=elapsed_hours)

    assert evaluate_sla(created_at=CREATED, sla_hours=24, status=status, now=now) == expected


@pytest.mark.parametrize(
    ("elapsed", "expected"),
    [
        (timedelta(hours=7, minutes=59), "ok"),
        (timedelta(hours=8, minutes=1), "warning"),
        (timedelta(hours=10, minutes=1), "violated"),
    ],
)
def test_ten_hour_sla_warns_in_last_two_hours(elapsed, expected) -> None:
    now = CREATED + elapsed

    assert evaluate_sla(created_at=CREATED, sla_hours=10, status="pending", now=now) == expected


def test_task_without_sla_is_always_ok() -> None:
    assert evaluate_sla(created_at=CREATED, sla_hours=None, status="pending", now=CREATED + timedelta(days=30)) == "ok"


@pytest.mark.parametrize(
    ("hours", "severity"),
    [(0.5, "low"), (8, "low"), (8.1, "medium"), (24.5, "high"), (49, "critical")],
)
def test_violation_severity_bands(hours, severity) -> None:
    assert violation_severity(hours) == severity


def test_is_task_overdue() -> None:
    now = CREATED + timedelta(hours=10)
    assert is_task_overdue(SimpleNamespace(status="pending", due_date=CREATED), now=now) is True
    assert is_task_overdue(SimpleNamespace(status="pending", due_date=None), now=now) is False
    assert is_task_overdue(SimpleNamespace(status="completed", due_date=CREATED), now=now) is False
    assert is_task_overdue(SimpleNamespace(status="overdue", due_date=None), now=now) is True


def test_subtask_progress() -> None:
    assert subtask_progress([]) == 0
    assert subtask_progress([{"completed": True}, {"completed": False}, {"completed": False}]) == 33
    assert subtask_progress([{"completed": True}]) == 100

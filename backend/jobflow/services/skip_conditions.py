"""Question skip-condition evaluation."""

from __future__ import annotations

from uuid import UUID


def should_skip_question(question, *, job_type: str | None, latest_responses: dict[UUID, str]) -> bool:
    """True when the job type or an earlier answer makes this question moot."""
    conditions = question.skip_conditions or {}
    if not conditions:
        return False

    job_types = conditions.get("job_types") or []
    if job_type is not None and job_type in job_types:
        return True

    for condition in conditions.get("previous_responses") or []:
        try:
            question_id = UUID(str(condition.get("question_id")))
        except (TypeError, ValueError, AttributeError):
            continue
        previous = latest_responses.get(question_id)
        if previous is not None and previous == condition.get("response_value"):
            return True
    return False

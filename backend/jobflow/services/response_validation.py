"""Answer validation per question response type."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from ..domain_errors import ValidationFailed

YES_NO_VALUES: tuple[str, ...] = ("Yes", "No")
_NUMBER_RE = re.compile(r"^\d+(\.\d+)?$")


def _as_text(raw_value: Any) -> str:
    if raw_value is None:
        return ""
    if isinstance(raw_value, bool):
        # JSON true/false are not accepted as yes_no answers
        return "true" if raw_value else "false"
    return str(raw_value).strip()


def _is_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
        return True
    except ValueError:
        pass
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
        return True
    except ValueError:
        return False


def validate_response(
    *,
    response_type: str,
    raw_value: Any,
    is_required: bool = True,
    response_options: list[str] | None = None,
    enforce_options: bool = False,
) -> str:
    """Return the normalized answer or raise ValidationFailed naming the rule."""
    value = _as_text(raw_value)

    if response_type == "yes_no":
        if value not in YES_NO_VALUES:
            raise ValidationFailed("Answer must be 'Yes' or 'No'", rule="yes_no")
        return value

    if response_type == "number":
        if not _NUMBER_RE.match(value):
            raise ValidationFailed("Answer must be a number", rule="number")
        return value

    if response_type == "date":
        if not value or not _is_date(value):
            raise ValidationFailed("Answer must be a valid date", rule="date")
        return value

    if response_type == "file_upload":
        if not value:
            raise ValidationFailed("A file reference is required", rule="file_upload")
        return value

    if response_type in ("text", "multiple_choice"):
        if is_required and not value:
            raise ValidationFailed("An answer is required", rule="required")
        if (
            response_type == "multiple_choice"
            and enforce_options
            and value
            and response_options
            and value not in response_options
        ):
            raise ValidationFailed(
                "Answer is not one of the allowed options",
                rule="multiple_choice",
                details={"options": list(response_options)},
            )
        return value

    raise ValidationFailed(f"Unsupported response type: {response_type}", rule="response_type")

from __future__ import annotations

import pytest

from jobflow.domain_errors import DomainError
from jobflow.services.response_validation import validate_response


@pytest.mark.parametrize("value", ["Yes", "No", "  Yes  "])
def test_yes_no_accepts_exact_answers(value) -> None:
    assert validate_response(response_type="yes_no", raw_value=value) == value.strip()


@pytest.mark.parametrize("value", ["yes", "Y", "", True, None])
def test_yes_no_rejects_anything_else(value) -> None:
    with pytest.raises(DomainError, match="'Yes' or 'No'") as exc:
        validate_response(response_type="yes_no", raw_value=value)

    assert exc.value.code == "VALIDATION_FAILED"
    assert exc.value.http_status == 400
    assert exc.value.details == {"rule": "yes_no"}


def test_number_accepts_integers_and_decimals() -> None:
    assert validate_response(response_type="number", raw_value="42") == "42"
    assert validate_response(response_type="number", raw_value=12.5) == "12.5"


@pytest.mark.parametrize("value", ["-3", "1e5", "12.", "abc", ""])
def test_number_rejects_non_plain_numbers(value) -> None:
    with pytest.raises(DomainError) as exc:
        validate_response(response_type="number", raw_value=value)

    assert exc.value.details["rule"] == "number"


def test_date_accepts_iso_dates_and_datetimes() -> None:
    assert validate_response(response_type="date", raw_value="2026-03-02") == "2026-03-02"
    assert validate_response(response_type="date", raw_value="2026-03-02T09:00:00Z") == "2026-03-02T09:00:00Z"


def test_date_rejects_garbage() -> None:
    with pytest.raises(DomainError) as exc:
        validate_response(response_type="date", raw_value="next tuesday")

    assert exc.value.details["rule"] == "date"


def test_file_upload_needs_a_reference() -> None:
    assert validate_response(response_type="file_upload", raw_value="s3://bucket/photo.jpg") == "s3://bucket/photo.jpg"
    with pytest.raises(DomainError) as exc:
        validate_response(response_type="file_upload", raw_value="   ")

    assert exc.value.details["rule"] == "file_upload"


def test_required_text_must_not_be_blank() -> None:
    with pytest.raises(DomainError) as exc:
        validate_response(response_type="text", raw_value="  ")

    assert exc.value.details["rule"] == "required"


def test_optional_text_may_be_blank() -> None:
    assert validate_response(response_type="text", raw_value="", is_required=False) == ""


def test_multiple_choice_options_checked_only_when_enforced() -> None:
    options = ["Kitchen", "Bathroom"]
    assert validate_response(
        response_type="multiple_choice",
        raw_value="Garage",
        response_options=options,
    ) == "Garage"

    with pytest.raises(DomainError) as exc:
        validate_response(
            response_type="multiple_choice",
            raw_value="Garage",
            response_options=options,
            enforce_options=True,
        )

    assert exc.value.details == {"rule": "multiple_choice", "options": options}


def test_unknown_response_type_is_rejected() -> None:
    with pytest.raises(DomainError) as exc:
        validate_response(response_type="signature", raw_value="x")

    assert exc.value.details["rule"] == "response_type"

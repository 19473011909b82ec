from __future__ import annotations

from types import SimpleNamespace
from uuid import uuid4

from jobflow.services.skip_conditions import should_skip_question


def _question(skip_conditions=None):
    return SimpleNamespace(id=uuid4(), skip_conditions=skip_conditions)


def test_question_without_conditions_is_asked() -> None:
    assert should_skip_question(_question(), job_type="roofing", latest_responses={}) is False


def test_job_type_condition_skips() -> None:
    question = _question({"job_types": ["roofing", "gutters"]})

    assert should_skip_question(question, job_type="roofing", latest_responses={}) is True
    assert should_skip_question(question, job_type="kitchen", latest_responses={}) is False
    assert should_skip_question(question, job_type=None, latest_responses={}) is False


def test_previous_response_condition_skips_on_exact_match() -> None:
    earlier = uuid4()
    question = _question({"previous_responses": [{"question_id": str(earlier), "response_value": "No"}]})

    assert should_skip_question(question, job_type=None, latest_responses={earlier: "No"}) is True
    assert should_skip_question(question, job_type=None, latest_responses={earlier: "Yes"}) is False
    assert should_skip_question(question, job_type=None, latest_responses={}) is False


def test_malformed_previous_response_entries_are_ignored() -> None:
    question = _question({"previous_responses": [{"question_id": "not-a-uuid", "response_value": "No"}]})

    assert should_skip_question(question, job_type=None, latest_responses={}) is False

from __future__ import annotations

from types import SimpleNamespace
from uuid import uuid4

import pytest

from jobflow.domain_errors import DomainError
from jobflow.models import JobResponse, Question, Stage, TaskTemplate, Transition
from jobflow.schemas import (
    QuestionCreate,
    StageCreate,
    StageUpdate,
    TaskTemplateCreate,
    TransitionCreate,
)
from jobflow.use_cases.stage_configuration import (
    copy_global_stages_use_case,
    create_question_use_case,
    create_stage_use_case,
    create_template_use_case,
    create_transition_use_case,
    delete_question_use_case,
    disable_stage_use_case,
    list_stages_use_case,
    update_stage_use_case,
)
from tests.fakes import principal


class _QueryStub:
    def __init__(self, *, first_result=None, all_result=None, scalar_result=None):
        self._first_result = first_result
        self._all_result = all_result or []
        self._scalar_result = scalar_result

    def filter(self, *_args, **_kwargs):
        return self

    def order_by(self, *_args, **_kwargs):
        return self

    def first(self):
        return self._first_result

    def all(self):
        return self._all_result

    def scalar(self):
        return self._scalar_result


class _SessionStub:
    """Answers queries by entity, consuming queued stubs in order (the last one repeats)."""

    def __init__(self, *queued, scalar=None):
        self._queued = list(queued)
        self._scalar = scalar
        self.added = []
        self.deleted = []
        self.commit_calls = 0
        self.flush_calls = 0

    def query(self, entity):
        matches = [index for index, (key, _) in enumerate(self._queued) if key is entity]
        if not matches:
            return _QueryStub(scalar_result=self._scalar)
        index = matches[0]
        stub = self._queued[index][1]
        if len(matches) > 1:
            del self._queued[index]
        return stub

    def add(self, obj):
        self.added.append(obj)

    def delete(self, obj):
        self.deleted.append(obj)

    def flush(self):
        self.flush_calls += 1

    def commit(self):
        self.commit_calls += 1


def _stage(*, tenant_id, sequence_order=0, name="Lead", is_active=True):
    return SimpleNamespace(
        id=uuid4(),
        tenant_id=tenant_id,
        name=name,
        description=None,
        color="#3366ff",
        sequence_order=sequence_order,
        status_bucket="lead",
        stage_type="standard",
        min_duration_hours=0,
        max_duration_hours=None,
        requires_approval=False,
        is_active=is_active,
    )


def test_list_stages_falls_back_to_global_pipeline(tenant_id) -> None:
    global_stages = [_stage(tenant_id=None)]
    db = _SessionStub((Stage, _QueryStub(all_result=[])), (Stage, _QueryStub(all_result=global_stages)))

    assert list_stages_use_case(db=db, actor=principal(tenant_id=tenant_id)) == global_stages


def test_create_stage_appends_to_tenant_pipeline(tenant_id) -> None:
    db = _SessionStub(scalar=2)
    data = StageCreate(name="Quote", status_bucket="active")

    stage = create_stage_use_case(db=db, data=data, actor=principal(tenant_id=tenant_id))

    assert stage.tenant_id == tenant_id
    assert stage.sequence_order == 3
    assert stage.is_active is True
    assert db.added == [stage]
    assert db.commit_calls == 1


def test_create_stage_rejects_taken_position(tenant_id) -> None:
    db = _SessionStub((Stage.id, _QueryStub(first_result=(uuid4(),))))

    with pytest.raises(DomainError, match="already used") as exc:
        create_stage_use_case(
            db=db,
            data=StageCreate(name="Quote", status_bucket="active", sequence_order=1),
            actor=principal(tenant_id=tenant_id),
        )

    assert exc.value.code == "STAGE_SEQUENCE_TAKEN"
    assert exc.value.http_status == 409
    assert db.commit_calls == 0


def test_only_site_admin_creates_global_stages(tenant_id) -> None:
    with pytest.raises(DomainError) as exc:
        create_stage_use_case(
            db=_SessionStub(),
            data=StageCreate(name="Quote", status_bucket="active", is_global=True),
            actor=principal(tenant_id=tenant_id, role="owner"),
        )

    assert exc.value.code == "GLOBAL_STAGE_READ_ONLY"
    assert exc.value.http_status == 403

    stage = create_stage_use_case(
        db=_SessionStub(scalar=None),
        data=StageCreate(name="Quote", status_bucket="active", is_global=True),
        actor=principal(role="site_admin"),
    )
    assert stage.tenant_id is None
    assert stage.sequence_order == 0


def test_stage_duration_bounds_are_checked(tenant_id) -> None:
    stage = _stage(tenant_id=tenant_id)
    db = _SessionStub((Stage, _QueryStub(first_result=stage)))

    with pytest.raises(DomainError) as exc:
        update_stage_use_case(
            db=db,
            stage_id=stage.id,
            data=StageUpdate(min_duration_hours=10, max_duration_hours=5),
            actor=principal(tenant_id=tenant_id),
        )

    assert exc.value.code == "STAGE_INVALID_DURATION"
    assert stage.min_duration_hours == 0


def test_update_stage_applies_only_sent_fields(tenant_id) -> None:
    stage = _stage(tenant_id=tenant_id)
    db = _SessionStub((Stage, _QueryStub(first_result=stage)))

    update_stage_use_case(
        db=db,
        stage_id=stage.id,
        data=StageUpdate(name="Qualified lead"),
        actor=principal(tenant_id=tenant_id, role="admin"),
    )

    assert stage.name == "Qualified lead"
    assert stage.color == "#3366ff"
    assert db.commit_calls == 1


def test_foreman_cannot_manage_stages(tenant_id) -> None:
    stage = _stage(tenant_id=tenant_id)

    with pytest.raises(DomainError, match="canManageStages") as exc:
        update_stage_use_case(
            db=_SessionStub((Stage, _QueryStub(first_result=stage))),
            stage_id=stage.id,
            data=StageUpdate(name="x"),
            actor=principal(tenant_id=tenant_id, role="foreman"),
        )

    assert exc.value.code == "ACCESS_DENIED"


def test_disable_stage_is_soft(tenant_id) -> None:
    stage = _stage(tenant_id=tenant_id)
    db = _SessionStub((Stage, _QueryStub(first_result=stage)), scalar=3)

    result = disable_stage_use_case(db=db, stage_id=stage.id, actor=principal(tenant_id=tenant_id))

    assert result is stage
    assert stage.is_active is False
    assert db.deleted == []
    assert db.commit_calls == 1


def test_multiple_choice_question_needs_options(tenant_id) -> None:
    stage = _stage(tenant_id=tenant_id)
    db = _SessionStub((Stage, _QueryStub(first_result=stage)))

    with pytest.raises(DomainError) as exc:
        create_question_use_case(
            db=db,
            stage_id=stage.id,
            data=QuestionCreate(question_text="Room?", response_type="multiple_choice"),
            actor=principal(tenant_id=tenant_id),
        )

    assert exc.value.code == "QUESTION_OPTIONS_REQUIRED"


def test_create_question_appends_in_stage(tenant_id) -> None:
    stage = _stage(tenant_id=tenant_id)
    db = _SessionStub((Stage, _QueryStub(first_result=stage)), scalar=0)

    question = create_question_use_case(
        db=db,
        stage_id=stage.id,
        data=QuestionCreate(question_text="Budget confirmed?", response_type="yes_no"),
        actor=principal(tenant_id=tenant_id),
    )

    assert question.stage_id == stage.id
    assert question.sequence_order == 1
    assert question.skip_conditions == {}


def test_answered_question_cannot_be_deleted(tenant_id) -> None:
    stage = _stage(tenant_id=tenant_id)
    question = SimpleNamespace(id=uuid4(), stage_id=stage.id)
    db = _SessionStub(
        (Stage, _QueryStub(first_result=stage)),
        (Question, _QueryStub(first_result=question)),
        (JobResponse.id, _QueryStub(first_result=(uuid4(),))),
    )

    with pytest.raises(DomainError) as exc:
        delete_question_use_case(db=db, stage_id=stage.id, question_id=question.id, actor=principal(tenant_id=tenant_id))

    assert exc.value.code == "QUESTION_HAS_RESPONSES"
    assert exc.value.http_status == 409
    assert db.deleted == []


def test_transition_cannot_loop_on_its_stage(tenant_id) -> None:
    stage_id = uuid4()

    with pytest.raises(DomainError) as exc:
        create_transition_use_case(
            db=_SessionStub(),
            data=TransitionCreate(from_stage_id=stage_id, to_stage_id=stage_id),
            actor=principal(tenant_id=tenant_id),
        )

    assert exc.value.code == "TRANSITION_SELF_LOOP"


def test_transition_stages_must_share_pipeline(tenant_id) -> None:
    source = _stage(tenant_id=tenant_id)
    target = _stage(tenant_id=None, sequence_order=1)
    db = _SessionStub((Stage, _QueryStub(first_result=source)), (Stage, _QueryStub(first_result=target)))

    with pytest.raises(DomainError) as exc:
        create_transition_use_case(
            db=db,
            data=TransitionCreate(from_stage_id=source.id, to_stage_id=target.id),
            actor=principal(tenant_id=tenant_id),
        )

    assert exc.value.code == "TRANSITION_SCOPE_MISMATCH"


def test_transition_question_must_belong_to_source_stage(tenant_id) -> None:
    source = _stage(tenant_id=tenant_id)
    target = _stage(tenant_id=tenant_id, sequence_order=1)
    stray = SimpleNamespace(id=uuid4(), stage_id=target.id)
    db = _SessionStub(
        (Stage, _QueryStub(first_result=source)),
        (Stage, _QueryStub(first_result=target)),
        (Question, _QueryStub(first_result=stray)),
    )

    with pytest.raises(DomainError) as exc:
        create_transition_use_case(
            db=db,
            data=TransitionCreate(from_stage_id=source.id, to_stage_id=target.id, trigger_question_id=stray.id),
            actor=principal(tenant_id=tenant_id),
        )

    assert exc.value.code == "TRANSITION_QUESTION_MISMATCH"


def test_transition_without_trigger_question_is_rejected(tenant_id) -> None:
    source = _stage(tenant_id=tenant_id)
    target = _stage(tenant_id=tenant_id, sequence_order=1)
    db = _SessionStub((Stage, _QueryStub(first_result=source)), (Stage, _QueryStub(first_result=target)))

    with pytest.raises(DomainError, match="needs a trigger question") as exc:
        create_transition_use_case(
            db=db,
            data=TransitionCreate(from_stage_id=source.id, to_stage_id=target.id, trigger_condition="Yes"),
            actor=principal(tenant_id=tenant_id),
        )

    assert exc.value.code == "TRANSITION_QUESTION_REQUIRED"
    assert exc.value.http_status == 400
    assert db.added == []


def test_duplicate_transition_conflicts(tenant_id) -> None:
    source = _stage(tenant_id=tenant_id)
    target = _stage(tenant_id=tenant_id, sequence_order=1)
    question = SimpleNamespace(id=uuid4(), stage_id=source.id)
    db = _SessionStub(
        (Stage, _QueryStub(first_result=source)),
        (Stage, _QueryStub(first_result=target)),
        (Question, _QueryStub(first_result=question)),
        (Transition.id, _QueryStub(first_result=(uuid4(),))),
    )

    with pytest.raises(DomainError) as exc:
        create_transition_use_case(
            db=db,
            data=TransitionCreate(
                from_stage_id=source.id,
                to_stage_id=target.id,
                trigger_question_id=question.id,
                trigger_condition="Yes",
            ),
            actor=principal(tenant_id=tenant_id),
        )

    assert exc.value.code == "TRANSITION_DUPLICATE"
    assert exc.value.http_status == 409


def test_create_transition_trims_condition(tenant_id) -> None:
    source = _stage(tenant_id=tenant_id)
    target = _stage(tenant_id=tenant_id, sequence_order=1)
    question = SimpleNamespace(id=uuid4(), stage_id=source.id)
    db = _SessionStub(
        (Stage, _QueryStub(first_result=source)),
        (Stage, _QueryStub(first_result=target)),
        (Question, _QueryStub(first_result=question)),
        (Transition.id, _QueryStub(first_result=None)),
    )

    transition = create_transition_use_case(
        db=db,
        data=TransitionCreate(
            from_stage_id=source.id,
            to_stage_id=target.id,
            trigger_question_id=question.id,
            trigger_condition="  >=90 ",
        ),
        actor=principal(tenant_id=tenant_id),
    )

    assert transition.trigger_condition == ">=90"
    assert transition.from_stage_id == source.id
    assert db.commit_calls == 1


def test_template_subtasks_need_titles(tenant_id) -> None:
    stage = _stage(tenant_id=tenant_id)
    db = _SessionStub((Stage, _QueryStub(first_result=stage)))

    with pytest.raises(DomainError, match="#2") as exc:
        create_template_use_case(
            db=db,
            stage_id=stage.id,
            data=TaskTemplateCreate(title="Survey", subtasks=["Measure", {"notes": "no title"}]),
            actor=principal(tenant_id=tenant_id),
        )

    assert exc.value.code == "TEMPLATE_INVALID_SUBTASK"


def test_copy_global_refuses_when_tenant_has_stages(tenant_id) -> None:
    db = _SessionStub((Stage.id, _QueryStub(first_result=(uuid4(),))))

    with pytest.raises(DomainError) as exc:
        copy_global_stages_use_case(db=db, actor=principal(tenant_id=tenant_id))

    assert exc.value.code == "TENANT_STAGES_EXIST"
    assert exc.value.http_status == 409


def test_copy_global_without_templates_is_not_found(tenant_id) -> None:
    db = _SessionStub((Stage.id, _QueryStub(first_result=None)), (Stage, _QueryStub(all_result=[])))

    with pytest.raises(DomainError) as exc:
        copy_global_stages_use_case(db=db, actor=principal(tenant_id=tenant_id))

    assert exc.value.code == "GLOBAL_STAGES_NOT_FOUND"
    assert exc.value.http_status == 404


def test_copy_global_clones_pipeline_and_remaps_references(tenant_id) -> None:
    lead = _stage(tenant_id=None, name="Lead", sequence_order=0)
    quote = _stage(tenant_id=None, name="Quote", sequence_order=1)
    permit = SimpleNamespace(
        id=uuid4(),
        stage_id=lead.id,
        question_text="Needs permit?",
        response_type="yes_no",
        response_options=None,
        sequence_order=0,
        is_required=True,
        skip_conditions=None,
        help_text=None,
    )
    number = SimpleNamespace(
        id=uuid4(),
        stage_id=lead.id,
        question_text="Permit number",
        response_type="text",
        response_options=None,
        sequence_order=1,
        is_required=False,
        skip_conditions={"previous_responses": [{"question_id": str(permit.id), "response_value": "No"}]},
        help_text=None,
    )
    template = SimpleNamespace(
        stage_id=quote.id,
        task_type="documentation",
        title="Draft quote",
        description=None,
        subtasks=["Materials", "Labour"],
        upload_required=False,
        sla_hours=24,
        due_date_offset_hours=24,
        priority="high",
        auto_assign_to="admin",
        client_visible=False,
    )
    forward = SimpleNamespace(
        from_stage_id=lead.id,
        to_stage_id=quote.id,
        trigger_question_id=permit.id,
        trigger_condition="Yes",
        is_automatic=True,
        requires_override=False,
    )
    dangling = SimpleNamespace(
        from_stage_id=lead.id,
        to_stage_id=uuid4(),
        trigger_question_id=None,
        trigger_condition=None,
        is_automatic=False,
        requires_override=True,
    )
    db = _SessionStub(
        (Stage.id, _QueryStub(first_result=None)),
        (Stage, _QueryStub(all_result=[lead, quote])),
        (Question, _QueryStub(all_result=[permit, number])),
        (TaskTemplate, _QueryStub(all_result=[template])),
        (Transition, _QueryStub(all_result=[forward, dangling])),
    )

    result = copy_global_stages_use_case(db=db, actor=principal(tenant_id=tenant_id))

    assert result["stages_copied"] == 2
    assert result["questions_copied"] == 2
    assert result["templates_copied"] == 1
    assert result["transitions_copied"] == 1
    assert all(stage.tenant_id == tenant_id for stage in result["stages"])
    assert [stage.name for stage in result["stages"]] == ["Lead", "Quote"]

    cloned_questions = [obj for obj in db.added if isinstance(obj, Question)]
    cloned_permit = next(q for q in cloned_questions if q.question_text == "Needs permit?")
    cloned_number = next(q for q in cloned_questions if q.question_text == "Permit number")
    assert cloned_permit.id != permit.id
    assert cloned_number.skip_conditions["previous_responses"][0]["question_id"] == str(cloned_permit.id)
    assert number.skip_conditions["previous_responses"][0]["question_id"] == str(permit.id)

    cloned_transition = next(obj for obj in db.added if isinstance(obj, Transition))
    assert cloned_transition.trigger_question_id == cloned_permit.id
    assert cloned_transition.to_stage_id == result["stages"][1].id
    assert db.commit_calls == 1

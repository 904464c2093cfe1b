"""Tests for entry matching of record events to workflow definitions."""

from datetime import timedelta

import pytest

from app.models.workflow import RecordEvent, TriggerType
from app.workflows.matcher import accepts_event, find_matching_workflows

from conftest import START, make_workflow

STEPS = [
    {"step_key": "trigger", "step_type": "trigger", "next_step_key": "done"},
    {"step_key": "done", "step_type": "end"},
]


def _event(kind="create", object_type="lead", **kwargs):
    record = kwargs.pop("record", {"id": "L1", "status": "new"})
    return RecordEvent(object_type=object_type, event_kind=kind, record=record, **kwargs)


@pytest.mark.unit
class TestAcceptsEvent:
    def test_object_type_must_match(self):
        workflow = make_workflow(STEPS)
        assert accepts_event(workflow, _event())
        assert not accepts_event(workflow, _event(object_type="contact"))

    def test_object_type_is_case_insensitive(self):
        workflow = make_workflow(STEPS, object_type="Lead")
        assert accepts_event(workflow, _event(object_type="LEAD"))

    def test_inactive_workflows_never_match(self):
        workflow = make_workflow(STEPS, is_active=False)
        assert not accepts_event(workflow, _event())

    @pytest.mark.parametrize(
        "trigger_type,kind,expected",
        [
            (TriggerType.RECORD_CREATE, "create", True),
            (TriggerType.RECORD_CREATE, "update", False),
            (TriggerType.RECORD_UPDATE, "update", True),
            (TriggerType.RECORD_UPDATE, "field_change", True),
            (TriggerType.RECORD_UPDATE, "create", False),
            (TriggerType.FIELD_CHANGE, "update", True),
            (TriggerType.STAGE_CHANGE, "stage_change", True),
            (TriggerType.FORM_SUBMIT, "create", True),
            (TriggerType.PAYMENT_RECEIVED, "field_change", True),
            (TriggerType.SCHEDULED, "create", False),
            (TriggerType.MANUAL, "update", False),
        ],
    )
    def test_trigger_type_to_event_kind(self, trigger_type, kind, expected):
        workflow = make_workflow(STEPS, trigger_type=trigger_type)
        assert accepts_event(workflow, _event(kind=kind)) is expected

    def test_event_kind_aliases(self):
        event = _event(kind="record_update")
        assert event.event_kind.value == "update"

    def test_field_change_requires_configured_field_to_change(self):
        workflow = make_workflow(
            STEPS,
            trigger_type="field_change",
            trigger_config={"field": "status", "to_value": "client"},
        )
        changed = _event(
            kind="field_change",
            record={"id": "L1", "status": "client"},
            previous_values={"status": "contacted"},
        )
        unchanged = _event(
            kind="field_change",
            record={"id": "L1", "status": "client"},
            previous_values={"status": "client"},
        )
        other_field = _event(
            kind="field_change",
            record={"id": "L1", "status": "client"},
            changed_fields=["phone"],
        )
        assert accepts_event(workflow, changed)
        assert not accepts_event(workflow, unchanged)
        assert not accepts_event(workflow, other_field)

    def test_field_change_from_value(self):
        workflow = make_workflow(
            STEPS,
            trigger_type="stage_change",
            trigger_config={"field": "stage", "from_value": "proposal"},
        )
        from_proposal = _event(
            kind="stage_change",
            record={"id": "D1", "stage": "won"},
            previous_values={"stage": "proposal"},
        )
        from_other = _event(
            kind="stage_change",
            record={"id": "D1", "stage": "won"},
            previous_values={"stage": "qualified"},
        )
        assert accepts_event(workflow, from_proposal)
        assert not accepts_event(workflow, from_other)


@pytest.mark.unit
class TestFindMatchingWorkflows:
    def test_entry_criteria_filters(self):
        workflow = make_workflow(
            STEPS,
            entry_criteria={
                "conditions": [{"field": "status", "operator": "equals", "value": "client"}]
            },
        )
        assert find_matching_workflows(_event(), [workflow]) == []
        matched = find_matching_workflows(
            _event(record={"id": "L1", "status": "client"}), [workflow]
        )
        assert matched == [workflow]

    def test_orders_by_evaluation_order_then_created_at(self):
        late = make_workflow(STEPS, id="late", evaluation_order=5, created_at=START)
        early_new = make_workflow(
            STEPS, id="early-new", evaluation_order=1, created_at=START + timedelta(days=1)
        )
        early_old = make_workflow(STEPS, id="early-old", evaluation_order=1, created_at=START)

        matched = find_matching_workflows(_event(), [late, early_new, early_old])
        assert [w.id for w in matched] == ["early-old", "early-new", "late"]

    def test_no_matches_returns_empty_list(self):
        assert find_matching_workflows(_event(object_type="invoice"), [make_workflow(STEPS)]) == []

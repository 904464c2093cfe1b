"""Entry matcher: which workflow definitions does a record event start?"""

from typing import Dict, FrozenSet, Iterable, List

from loguru import logger

from ..models.workflow import (
    EventKind,
    RecordEvent,
    TriggerType,
    WorkflowDefinition,
)
from .conditions import as_text, evaluate_conditions

# Upstream services do not always emit the most specific event kind, so the
# change-oriented trigger types also accept plain updates.
TRIGGER_EVENT_KINDS: Dict[TriggerType, FrozenSet[EventKind]] = {
    TriggerType.RECORD_CREATE: frozenset({EventKind.CREATE}),
    TriggerType.RECORD_UPDATE: frozenset(
        {EventKind.UPDATE, EventKind.FIELD_CHANGE, EventKind.STAGE_CHANGE}
    ),
    TriggerType.FIELD_CHANGE: frozenset(
        {EventKind.FIELD_CHANGE, EventKind.UPDATE, EventKind.STAGE_CHANGE}
    ),
    TriggerType.STAGE_CHANGE: frozenset(
        {EventKind.STAGE_CHANGE, EventKind.FIELD_CHANGE, EventKind.UPDATE}
    ),
    TriggerType.FORM_SUBMIT: frozenset({EventKind.CREATE}),
    TriggerType.PAYMENT_RECEIVED: frozenset(
        {EventKind.CREATE, EventKind.UPDATE, EventKind.FIELD_CHANGE}
    ),
    TriggerType.SCHEDULED: frozenset(),
    TriggerType.MANUAL: frozenset(),
}


def accepts_event(workflow: WorkflowDefinition, event: RecordEvent) -> bool:
    """Check object type, trigger type and the trigger's field transition."""
    if not workflow.is_active or workflow.object_type != event.object_type:
        return False
    if event.event_kind not in TRIGGER_EVENT_KINDS.get(workflow.trigger_type, frozenset()):
        return False
    return _matches_trigger_config(workflow, event)


def _matches_trigger_config(workflow: WorkflowDefinition, event: RecordEvent) -> bool:
    config = workflow.trigger_config
    if not config.field or workflow.trigger_type not in (
        TriggerType.FIELD_CHANGE,
        TriggerType.STAGE_CHANGE,
    ):
        return True

    new_value = event.record.get(config.field)
    if config.field in event.previous_values:
        old_value = event.previous_values[config.field]
        changed = as_text(old_value) != as_text(new_value)
    else:
        old_value = None
        changed = config.field in event.changed_fields
    if not changed:
        return False

    if config.from_value is not None and as_text(old_value) != config.from_value:
        return False
    if config.to_value is not None and as_text(new_value) != config.to_value:
        return False
    return True


def find_matching_workflows(
    event: RecordEvent, definitions: Iterable[WorkflowDefinition]
) -> List[WorkflowDefinition]:
    """Return definitions this event enters, lowest ``evaluation_order`` first.

    Ties keep creation order. Pure function over the event and the snapshot of
    definitions supplied by the caller.
    """
    matches = []
    for workflow in definitions:
        if not accepts_event(workflow, event):
            continue
        criteria = workflow.entry_criteria
        if not evaluate_conditions(criteria.conditions, criteria.match_type, event.record):
            logger.debug(
                f"Entry criteria not met for workflow {workflow.id} "
                f"(record {event.object_type}:{event.record_id})"
            )
            continue
        matches.append(workflow)

    return sorted(matches, key=lambda w: (w.evaluation_order, w.created_at))

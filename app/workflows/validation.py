"""Static checks over a workflow graph before it is activated."""

from typing import List, Set

from ..models.workflow import (
    DecisionStepConfig,
    ReentryMode,
    SendEmailStepConfig,
    StepType,
    UpdateFieldStepConfig,
    ValidationReport,
    WebhookStepConfig,
    WorkflowDefinition,
    WorkflowStep,
)

TRIGGER_STEP_KEY = "trigger"


def _referenced_keys(step: WorkflowStep) -> List[str]:
    """Every step key this step can hand control to."""
    keys = []
    if step.next_step_key:
        keys.append(step.next_step_key)
    keys.extend(b.next_step_key for b in step.branches if b.next_step_key)
    if isinstance(step.config, DecisionStepConfig):
        keys.extend(
            b.next_step_key for b in step.config.decision_branches if b.next_step_key
        )
        if step.config.default_next_step_key:
            keys.append(step.config.default_next_step_key)
    return keys


def _reachable(definition: WorkflowDefinition) -> Set[str]:
    seen: Set[str] = set()
    frontier = [TRIGGER_STEP_KEY]
    while frontier:
        key = frontier.pop()
        if key in seen:
            continue
        step = definition.get_step(key)
        if step is None:
            continue
        seen.add(key)
        frontier.extend(_referenced_keys(step))
    return seen


def _check_decision(step: WorkflowStep, errors: List[str], warnings: List[str]) -> None:
    config: DecisionStepConfig = step.config
    if config.decision_mode == "advanced":
        if not config.decision_branches:
            errors.append(f"Decision step '{step.step_key}' has no decision branches")
        for branch in config.decision_branches:
            if not branch.condition_groups:
                warnings.append(
                    f"Decision branch '{branch.label or branch.id}' in step "
                    f"'{step.step_key}' has no conditions and will never match"
                )
        if not config.default_next_step_key:
            warnings.append(f"Decision step '{step.step_key}' has no default next step")
        return

    if not config.condition_field:
        errors.append(f"Decision step '{step.step_key}' requires condition_field")
    if not step.branches:
        errors.append(f"Decision step '{step.step_key}' has no branches")
        return
    labels = {b.condition for b in step.branches}
    for label in ("true", "false"):
        if label not in labels:
            warnings.append(f"Decision step '{step.step_key}' has no '{label}' branch")


def validate_workflow(definition: WorkflowDefinition) -> ValidationReport:
    """Check a definition's graph and step configs.

    Errors make the definition unrunnable as written; warnings flag likely
    mistakes that still execute.
    """
    errors: List[str] = []
    warnings: List[str] = []
    keys = {step.step_key for step in definition.steps}

    trigger = definition.get_step(TRIGGER_STEP_KEY)
    if trigger is None:
        errors.append("Workflow must have a step with key 'trigger'")
    elif trigger.step_type != StepType.TRIGGER:
        errors.append("Step 'trigger' must be of type trigger")
    elif not trigger.next_step_key:
        errors.append("Trigger step must point to a next step")

    if not any(step.step_type != StepType.TRIGGER for step in definition.steps):
        errors.append("Workflow must have at least one action step")

    if (
        definition.reentry_mode == ReentryMode.AFTER_WAIT_DAYS
        and definition.reentry_wait_days is None
    ):
        errors.append("Re-entry mode after_wait_days requires reentry_wait_days")

    for step in definition.steps:
        for target in _referenced_keys(step):
            if target not in keys:
                errors.append(f"Step '{step.step_key}' references unknown step '{target}'")

        config = step.config
        if step.step_type == StepType.DECISION:
            _check_decision(step, errors, warnings)
        elif isinstance(config, SendEmailStepConfig):
            if not config.subject and not config.template_id:
                warnings.append(f"Email step '{step.step_key}' has no subject")
            if not config.body and not config.template_id:
                warnings.append(f"Email step '{step.step_key}' has no body")
        elif isinstance(config, UpdateFieldStepConfig):
            if not config.field or config.value is None:
                errors.append(f"Update field step '{step.step_key}' requires field and value")
        elif isinstance(config, WebhookStepConfig):
            if not config.url:
                errors.append(f"Webhook step '{step.step_key}' requires url")

    if trigger is not None:
        reachable = _reachable(definition)
        for step in definition.steps:
            if step.step_key not in reachable:
                warnings.append(f"Step '{step.step_key}' is not reachable from the trigger")

    return ValidationReport(is_valid=not errors, errors=errors, warnings=warnings)

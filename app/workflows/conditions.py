"""Decision evaluator: pure condition checks against a record snapshot.

Used by the entry matcher (entry criteria) and by decision steps. Nothing in
this module touches storage or mutates its inputs.

Comparison rules:

- ``equals``/``not_equals`` compare string forms, so a form value ``"10"``
  equals a stored ``10``. ``None`` reads as ``""``.
- ``contains``/``starts_with``/``ends_with`` are case-sensitive. When the
  record value is a list, ``contains`` tests membership.
- Numeric operators coerce both sides with ``float``; anything that does not
  parse becomes NaN and every comparison against NaN is false.
- ``in_list`` accepts either a list or a comma-separated string.
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..models.workflow import (
    Condition,
    ConditionGroup,
    ConditionOperator,
    DecisionBranch,
    DecisionStepConfig,
    MatchType,
    StepBranch,
)
from .errors import ConfigurationError, UnknownOperatorError


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return math.nan
    return math.nan


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [as_text(item) for item in value]
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [as_text(value)]


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _equals(actual: Any, expected: Any) -> bool:
    if _is_sequence(actual) or _is_sequence(expected):
        if not (_is_sequence(actual) and _is_sequence(expected)):
            return False
        return [as_text(a) for a in actual] == [as_text(e) for e in expected]
    return as_text(actual) == as_text(expected)


def _contains(actual: Any, expected: Any) -> bool:
    if _is_sequence(actual):
        needle = as_text(expected)
        return any(as_text(item) == needle for item in actual)
    return as_text(expected) in as_text(actual)


def _is_empty(actual: Any) -> bool:
    if actual is None:
        return True
    if isinstance(actual, str):
        return actual.strip() == ""
    if isinstance(actual, (list, tuple, set, dict)):
        return len(actual) == 0
    return False


def _in_list(actual: Any, expected: Any) -> bool:
    return as_text(actual) in _as_list(expected)


_OPERATORS: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: _equals,
    ConditionOperator.NOT_EQUALS: lambda a, e: not _equals(a, e),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: lambda a, e: not _contains(a, e),
    ConditionOperator.STARTS_WITH: lambda a, e: as_text(a).startswith(as_text(e)),
    ConditionOperator.ENDS_WITH: lambda a, e: as_text(a).endswith(as_text(e)),
    ConditionOperator.IS_EMPTY: lambda a, e: _is_empty(a),
    ConditionOperator.IS_NOT_EMPTY: lambda a, e: not _is_empty(a),
    ConditionOperator.GREATER_THAN: lambda a, e: _to_number(a) > _to_number(e),
    ConditionOperator.LESS_THAN: lambda a, e: _to_number(a) < _to_number(e),
    ConditionOperator.GREATER_OR_EQUAL: lambda a, e: _to_number(a) >= _to_number(e),
    ConditionOperator.LESS_OR_EQUAL: lambda a, e: _to_number(a) <= _to_number(e),
    ConditionOperator.IN_LIST: _in_list,
    ConditionOperator.NOT_IN_LIST: lambda a, e: not _in_list(a, e),
}


def evaluate_operator(operator: Any, actual: Any, expected: Any = None) -> bool:
    """Apply ``operator`` to a record value and a configured value."""
    try:
        op = ConditionOperator(operator)
    except ValueError:
        raise UnknownOperatorError(str(operator)) from None
    return _OPERATORS[op](actual, expected)


def evaluate_condition(condition: Condition, record: Mapping[str, Any]) -> bool:
    """Evaluate one condition against a record snapshot."""
    return evaluate_operator(condition.operator, record.get(condition.field), condition.value)


def evaluate_conditions(
    conditions: Sequence[Condition],
    match_type: MatchType,
    record: Mapping[str, Any],
) -> bool:
    """Combine conditions by match type. An empty list always matches."""
    if not conditions:
        return True
    results = (evaluate_condition(c, record) for c in conditions)
    if MatchType(match_type) == MatchType.ALL:
        return all(results)
    return any(results)


def evaluate_group(group: ConditionGroup, record: Mapping[str, Any]) -> bool:
    return evaluate_conditions(group.conditions, group.match_type, record)


def evaluate_branch(branch: DecisionBranch, record: Mapping[str, Any]) -> bool:
    """A branch with no condition groups never matches."""
    if not branch.condition_groups:
        return False
    results = (evaluate_group(g, record) for g in branch.condition_groups)
    if branch.match_type == MatchType.ALL:
        return all(results)
    return any(results)


def select_branch(
    branches: Sequence[DecisionBranch], record: Mapping[str, Any]
) -> Optional[DecisionBranch]:
    """Return the first branch, in declaration order, whose groups match."""
    for branch in branches:
        if evaluate_branch(branch, record):
            return branch
    return None


@dataclass
class DecisionOutcome:
    """Which branch a decision step took and where it leads."""

    branch_taken: str
    next_step_key: Optional[str]
    condition_met: Optional[bool] = None
    field_value: Any = None

    def as_output(self) -> Dict[str, Any]:
        output: Dict[str, Any] = {
            "branch_taken": self.branch_taken,
            "next_step_key": self.next_step_key,
        }
        if self.condition_met is not None:
            output["condition_met"] = self.condition_met
            output["field_value"] = self.field_value
        return output


def evaluate_decision(
    config: DecisionStepConfig,
    branches: Sequence[StepBranch],
    record: Mapping[str, Any],
) -> DecisionOutcome:
    """Pick the outgoing edge of a decision step.

    Simple mode evaluates one field/operator/value triple and follows the
    ``"true"`` or ``"false"`` branch. Advanced mode walks ``decision_branches``
    in order and falls back to ``default_next_step_key``.
    """
    if config.decision_mode == "advanced":
        branch = select_branch(config.decision_branches, record)
        if branch is not None:
            return DecisionOutcome(
                branch_taken=branch.id, next_step_key=branch.next_step_key
            )
        return DecisionOutcome(
            branch_taken=config.default_branch_label,
            next_step_key=config.default_next_step_key,
        )

    if not config.condition_field:
        raise ConfigurationError("Decision step requires condition_field")

    field_value = record.get(config.condition_field)
    condition_met = evaluate_operator(
        config.condition_operator, field_value, config.condition_value
    )
    label = "true" if condition_met else "false"
    next_step_key = None
    for branch in branches:
        if branch.condition == label:
            next_step_key = branch.next_step_key
            break
    return DecisionOutcome(
        branch_taken=label,
        next_step_key=next_step_key,
        condition_met=condition_met,
        field_value=field_value,
    )

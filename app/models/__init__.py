"""Data models package."""

from .workflow import (
    TERMINAL_STATUSES,
    Condition,
    ConditionGroup,
    ConditionOperator,
    DecisionBranch,
    EntryCriteria,
    EventKind,
    ExecutionContext,
    ExecutionStatus,
    ExecutionStatusResponse,
    MatchType,
    NotificationResult,
    RecordEvent,
    RecordIntent,
    ReentryDecision,
    ReentryMode,
    StepExecutionStatus,
    StepResult,
    StepStats,
    StepType,
    TriggerConfig,
    TriggerType,
    ValidationReport,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
    WorkflowStepExecution,
    WorkflowStats,
    WorkflowTemplate,
)

__all__ = [
    "TERMINAL_STATUSES",
    "Condition",
    "ConditionGroup",
    "ConditionOperator",
    "DecisionBranch",
    "EntryCriteria",
    "EventKind",
    "ExecutionContext",
    "ExecutionStatus",
    "ExecutionStatusResponse",
    "MatchType",
    "NotificationResult",
    "RecordEvent",
    "RecordIntent",
    "ReentryDecision",
    "ReentryMode",
    "StepExecutionStatus",
    "StepResult",
    "StepStats",
    "StepType",
    "TriggerConfig",
    "TriggerType",
    "ValidationReport",
    "WorkflowDefinition",
    "WorkflowExecution",
    "WorkflowStep",
    "WorkflowStepExecution",
    "WorkflowStats",
    "WorkflowTemplate",
]

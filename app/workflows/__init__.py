"""Workflow engine package for state machine-based CRM automation."""

from .engine import WorkflowEngine
from .notifications import (
    InMemoryIntentSink,
    LoggingNotificationSender,
    NotificationSender,
    RecordIntentSink,
)
from .scheduler import WorkflowScheduler
from .state_manager import WorkflowStateManager
from .store import ExecutionStore, InMemoryExecutionStore
from .validation import validate_workflow

__all__ = [
    "ExecutionStore",
    "InMemoryExecutionStore",
    "InMemoryIntentSink",
    "LoggingNotificationSender",
    "NotificationSender",
    "RecordIntentSink",
    "WorkflowEngine",
    "WorkflowScheduler",
    "WorkflowStateManager",
    "validate_workflow",
]

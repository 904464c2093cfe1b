"""Exception types raised by the workflow engine."""

from typing import Optional


class WorkflowError(Exception):
    """Base class for workflow engine errors."""


class WorkflowNotFoundError(WorkflowError):
    """Raised when a workflow definition id is unknown."""

    def __init__(self, workflow_id: str, version: Optional[int] = None) -> None:
        message = f"Workflow not found: {workflow_id}"
        if version is not None:
            message += f" (version {version})"
        super().__init__(message)
        self.workflow_id = workflow_id
        self.version = version


class ExecutionNotFoundError(WorkflowError):
    """Raised when an execution id is unknown."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class ConfigurationError(WorkflowError):
    """Static misconfiguration of a workflow; retrying cannot fix it."""


class UnknownOperatorError(ConfigurationError):
    """Raised when a condition uses an operator the evaluator does not know."""

    def __init__(self, operator: str) -> None:
        super().__init__(f"Unknown condition operator: {operator}")
        self.operator = operator


class InvalidExecutionStateError(WorkflowError):
    """Raised when an operation is not allowed for an execution's status."""


class WorkflowInactiveError(WorkflowError):
    """Raised when a manual trigger targets a deactivated workflow."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow is not active: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowVersionConflictError(WorkflowError):
    """Raised when a definition would replace a version that is already stored.

    Executions run against the version they started on, so a stored version
    never changes its steps; publish changes under a higher version.
    """

    def __init__(self, workflow_id: str, version: int, latest_version: int) -> None:
        super().__init__(
            f"Workflow {workflow_id} already has version {latest_version}; "
            f"version {version} cannot be registered"
        )
        self.workflow_id = workflow_id
        self.version = version
        self.latest_version = latest_version


class TemplateNotFoundError(WorkflowError):
    """Raised when a workflow template id is unknown."""

    def __init__(self, template_id: str) -> None:
        super().__init__(f"Workflow template not found: {template_id}")
        self.template_id = template_id

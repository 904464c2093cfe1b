"""Workflow API endpoints for definition management, events and executions."""

from typing import List, Optional

import yaml
from fastapi import APIRouter, HTTPException, Query, status
from loguru import logger
from pydantic import ValidationError

from ..config import WorkflowSettings, get_settings
from ..models.workflow import (
    EventIngestResponse,
    ExecutionStatus,
    ExecutionStatusResponse,
    ManualTriggerRequest,
    RecordEvent,
    SchedulerTickRequest,
    SchedulerTickResponse,
    StepExecutionStatus,
    ValidationReport,
    WorkflowActivateRequest,
    WorkflowCopyRequest,
    WorkflowCreateRequest,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStats,
    WorkflowStepExecution,
    WorkflowTemplate,
)
from ..workflows.engine import WorkflowEngine
from ..workflows.errors import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    TemplateNotFoundError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
    WorkflowVersionConflictError,
)
from ..workflows.state_manager import WorkflowStateManager
from ..workflows.store import ExecutionStore, InMemoryExecutionStore
from ..workflows.templates import list_templates
from ..workflows.validation import validate_workflow

router = APIRouter(prefix="/api/v1/workflows", tags=["workflows"])

# Global instances (initialized on first request)
_store: Optional[ExecutionStore] = None
_engine: Optional[WorkflowEngine] = None


def get_workflow_engine(settings: Optional[WorkflowSettings] = None) -> WorkflowEngine:
    """Get or create workflow engine instance."""
    global _store, _engine

    settings = settings or get_settings()
    if not _store:
        if settings.store_backend == "redis":
            _store = WorkflowStateManager(settings.redis_url)
        else:
            _store = InMemoryExecutionStore()

    if not _engine:
        _engine = WorkflowEngine(_store, settings=settings)

    return _engine


def set_workflow_engine(engine: Optional[WorkflowEngine]) -> None:
    """Install the engine the endpoints use (or reset with ``None``)."""
    global _store, _engine
    _engine = engine
    _store = engine.store if engine else None


def _execution_response(
    execution: WorkflowExecution, steps: List[WorkflowStepExecution]
) -> ExecutionStatusResponse:
    elapsed = None
    if execution.completed_at:
        elapsed = (execution.completed_at - execution.started_at).total_seconds()

    return ExecutionStatusResponse(
        execution_id=execution.id,
        workflow_id=execution.workflow_id,
        record_type=execution.record_type,
        record_id=execution.record_id,
        status=execution.status,
        current_step_key=execution.current_step_key,
        started_at=execution.started_at,
        completed_at=execution.completed_at,
        elapsed_seconds=elapsed,
        steps_completed=len(
            [s for s in steps if s.status == StepExecutionStatus.COMPLETED]
        ),
        next_run_at=execution.next_run_at,
        waiting_for=execution.waiting_for,
        retry_count=execution.retry_count,
        retry_of=execution.retry_of,
        error_message=execution.error_message,
    )


def _require_valid(definition: WorkflowDefinition) -> None:
    """Reject an active workflow whose graph has validation errors."""
    report = validate_workflow(definition)
    if not report.is_valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Workflow is not valid", "errors": report.errors},
        )


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


@router.post(
    "/definitions",
    response_model=WorkflowDefinition,
    status_code=status.HTTP_201_CREATED,
    summary="Register a workflow definition",
)
async def create_workflow(request: WorkflowCreateRequest) -> WorkflowDefinition:
    """
    Register a workflow definition from YAML or JSON.

    Example workflow definition:
    ```yaml
    name: New lead follow-up
    object_type: lead
    trigger_type: record_create
    reentry_mode: no_reentry
    entry_criteria:
      match_type: all
      conditions:
        - field: source
          operator: equals
          value: website
    steps:
      - step_key: trigger
        step_type: trigger
        next_step_key: welcome
      - step_key: welcome
        step_type: send_email
        config:
          subject: "Welcome {{first_name}}"
          body: "Thanks for reaching out."
        next_step_key: done
      - step_key: done
        step_type: end
    ```
    """
    try:
        engine = get_workflow_engine()

        # Parse definition (support both YAML and JSON)
        if isinstance(request.definition, str):
            definition_dict = yaml.safe_load(request.definition)
        else:
            definition_dict = request.definition
        if not isinstance(definition_dict, dict):
            raise ValueError("Workflow definition must be a mapping")

        definition = WorkflowDefinition.model_validate(definition_dict)
        if definition.is_active:
            _require_valid(definition)
        await engine.register_workflow(definition)
        return definition

    except WorkflowVersionConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except (ValueError, ValidationError, yaml.YAMLError) as e:
        logger.error(f"Failed to create workflow: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid workflow definition: {str(e)}",
        )


@router.get(
    "/definitions",
    response_model=List[WorkflowDefinition],
    summary="List workflow definitions",
)
async def list_workflows() -> List[WorkflowDefinition]:
    try:
        engine = get_workflow_engine()
        return await engine.list_workflows()
    except Exception as e:
        logger.error(f"Failed to list workflows: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list workflows: {str(e)}",
        )


@router.get(
    "/definitions/{workflow_id}",
    response_model=WorkflowDefinition,
    summary="Get a workflow definition",
)
async def get_workflow(workflow_id: str) -> WorkflowDefinition:
    try:
        engine = get_workflow_engine()
        return await engine.get_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/definitions/{workflow_id}/validate",
    response_model=ValidationReport,
    summary="Validate a workflow graph",
)
async def validate_definition(workflow_id: str) -> ValidationReport:
    """
    Run static checks over a stored workflow.

    Errors (missing trigger, dangling step references, unusable step
    configs) make the workflow unrunnable; warnings (unreachable steps,
    decisions without a true/false branch, empty emails) do not.
    """
    try:
        engine = get_workflow_engine()
        definition = await engine.get_workflow(workflow_id)
        return validate_workflow(definition)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/definitions/{workflow_id}/active",
    response_model=WorkflowDefinition,
    summary="Activate or deactivate a workflow",
)
async def set_workflow_active(
    workflow_id: str, request: WorkflowActivateRequest
) -> WorkflowDefinition:
    """Deactivated workflows match no events and reject manual triggers."""
    try:
        engine = get_workflow_engine()
        if request.is_active:
            _require_valid(await engine.get_workflow(workflow_id))
        return await engine.set_workflow_active(workflow_id, request.is_active)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get(
    "/definitions/{workflow_id}/stats",
    response_model=WorkflowStats,
    summary="Get execution analytics for a workflow",
)
async def get_workflow_stats(workflow_id: str) -> WorkflowStats:
    """
    Summarize a workflow's executions.

    Includes counts by status, the success rate of finished runs, the
    average duration of completed runs, per-step outcome counts and the
    most common error messages.
    """
    try:
        engine = get_workflow_engine()
        return await engine.get_workflow_stats(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/definitions/{workflow_id}/duplicate",
    response_model=WorkflowDefinition,
    status_code=status.HTTP_201_CREATED,
    summary="Copy a workflow into a new inactive workflow",
)
async def duplicate_workflow(
    workflow_id: str, request: Optional[WorkflowCopyRequest] = None
) -> WorkflowDefinition:
    try:
        engine = get_workflow_engine()
        return await engine.duplicate_workflow(
            workflow_id,
            request.id if request else None,
            request.name if request else None,
        )
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except WorkflowVersionConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post(
    "/definitions/{workflow_id}/trigger",
    response_model=ExecutionStatusResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a workflow by hand for one record",
)
async def trigger_workflow(
    workflow_id: str, request: ManualTriggerRequest
) -> ExecutionStatusResponse:
    """
    Start a workflow for a record, skipping trigger matching and re-entry.

    The workflow must be active. Returns the execution as it stands once it
    has run to completion, failure or its first wait.
    """
    try:
        engine = get_workflow_engine()
        execution = await engine.trigger_manually(
            workflow_id,
            request.record,
            record_type=request.record_type,
            triggered_by=request.triggered_by,
        )
        steps = await engine.get_step_executions(execution.id)
        return _execution_response(execution, steps)

    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (WorkflowInactiveError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to trigger workflow: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to trigger workflow: {str(e)}",
        )


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@router.get(
    "/templates",
    response_model=List[WorkflowTemplate],
    summary="List built-in workflow templates",
)
async def get_templates() -> List[WorkflowTemplate]:
    return list_templates()


@router.post(
    "/templates/{template_id}/instantiate",
    response_model=WorkflowDefinition,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow from a template",
)
async def instantiate_template(
    template_id: str, request: Optional[WorkflowCopyRequest] = None
) -> WorkflowDefinition:
    """The new workflow starts inactive; review it, then activate it."""
    try:
        engine = get_workflow_engine()
        return await engine.create_from_template(
            template_id,
            request.id if request else None,
            request.name if request else None,
        )
    except TemplateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except WorkflowVersionConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


# ---------------------------------------------------------------------------
# Events and scheduling
# ---------------------------------------------------------------------------


@router.post(
    "/events",
    response_model=EventIngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest a record event",
)
async def ingest_event(event: RecordEvent) -> EventIngestResponse:
    """
    Evaluate a record create/update event against every active workflow.

    Each matching workflow that the record may (re-)enter gets a new
    execution. Returns the new execution ids; an empty list means nothing
    matched or re-entry was denied.
    """
    try:
        engine = get_workflow_engine()
        execution_ids = await engine.evaluate_event(event)
        return EventIngestResponse(execution_ids=execution_ids)
    except Exception as e:
        logger.error(f"Failed to process event: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to process event: {str(e)}",
        )


@router.post(
    "/scheduler/tick",
    response_model=SchedulerTickResponse,
    summary="Resume waiting executions that are due",
)
async def scheduler_tick(request: Optional[SchedulerTickRequest] = None) -> SchedulerTickResponse:
    try:
        engine = get_workflow_engine()
        processed = await engine.resume_due_executions(request.now if request else None)
        return SchedulerTickResponse(processed=processed)
    except Exception as e:
        logger.error(f"Scheduler tick failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Scheduler tick failed: {str(e)}",
        )


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


@router.get(
    "/executions",
    summary="List workflow executions",
)
async def list_executions(
    workflow_id: Optional[str] = None,
    status_filter: Optional[ExecutionStatus] = Query(None, alias="status"),
    record_id: Optional[str] = None,
    limit: int = 50,
) -> dict:
    """
    List workflow executions with optional filtering, newest first.

    Parameters:
    - workflow_id: Filter by specific workflow definition
    - status: Filter by execution status
    - record_id: Filter by business record
    - limit: Maximum number of results (default: 50)
    """
    try:
        engine = get_workflow_engine()
        executions = await engine.list_executions(workflow_id, status_filter, record_id)

        # Limit results
        executions = executions[:limit]

        return {
            "total": len(executions),
            "executions": [
                {
                    "execution_id": e.id,
                    "workflow_id": e.workflow_id,
                    "record_type": e.record_type,
                    "record_id": e.record_id,
                    "status": e.status.value,
                    "current_step_key": e.current_step_key,
                    "started_at": e.started_at.isoformat(),
                    "completed_at": (
                        e.completed_at.isoformat() if e.completed_at else None
                    ),
                    "retry_of": e.retry_of,
                }
                for e in executions
            ],
        }

    except Exception as e:
        logger.error(f"Failed to list executions: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list executions: {str(e)}",
        )


@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionStatusResponse,
    summary="Get workflow execution status",
)
async def get_execution_status(execution_id: str) -> ExecutionStatusResponse:
    """
    Get the current status of a workflow execution.

    Statuses:
    - running: a worker is advancing through steps
    - waiting: suspended on a wait step until ``next_run_at``
    - completed: reached an end step or a step with no successor
    - failed: a step failed; ``current_step_key`` names it
    - cancelled: stopped by an operator
    """
    engine = get_workflow_engine()
    execution = await engine.get_execution_status(execution_id)

    if not execution:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Execution not found: {execution_id}",
        )

    steps = await engine.get_step_executions(execution_id)
    return _execution_response(execution, steps)


@router.get(
    "/executions/{execution_id}/steps",
    response_model=List[WorkflowStepExecution],
    summary="Get the step audit trail of an execution",
)
async def get_execution_steps(execution_id: str) -> List[WorkflowStepExecution]:
    """Step execution rows in the order they ran, including failed and skipped steps."""
    try:
        engine = get_workflow_engine()
        return await engine.get_step_executions(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/executions/{execution_id}/cancel",
    summary="Cancel a running or waiting execution",
)
async def cancel_execution(execution_id: str) -> dict:
    """
    Cancel a workflow execution.

    Only executions in running or waiting state can be cancelled. A worker
    in the middle of a step finishes that step and then stops.
    """
    try:
        engine = get_workflow_engine()
        success = await engine.cancel_execution(execution_id)

        if not success:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Execution cannot be cancelled (not found or already finished)",
            )

        return {
            "execution_id": execution_id,
            "status": ExecutionStatus.CANCELLED.value,
            "message": "Workflow execution cancelled",
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to cancel execution: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to cancel execution: {str(e)}",
        )


@router.post(
    "/executions/{execution_id}/retry",
    response_model=ExecutionStatusResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Retry a failed or cancelled execution",
)
async def retry_execution(execution_id: str) -> ExecutionStatusResponse:
    """
    Start a new execution from the step where the given one stopped.

    The original execution keeps its terminal status; the new one carries
    ``retry_of`` and an incremented ``retry_count``.
    """
    try:
        engine = get_workflow_engine()
        execution = await engine.retry_execution(execution_id)
        steps = await engine.get_step_executions(execution.id)
        return _execution_response(execution, steps)

    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidExecutionStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to retry execution: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to retry execution: {str(e)}",
        )

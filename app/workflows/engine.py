"""Workflow execution engine with state machine implementation."""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..config import WorkflowSettings, get_settings
from ..models.workflow import (
    ExecutionContext,
    ExecutionStatus,
    RecordEvent,
    StepExecutionStatus,
    StepResult,
    StepStats,
    StepType,
    TriggerType,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
    WorkflowStats,
    WorkflowStepExecution,
    as_utc,
    utcnow,
)
from .errors import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
    WorkflowVersionConflictError,
)
from .executors import StepExecutors, parse_timestamp
from .matcher import find_matching_workflows
from .notifications import (
    InMemoryIntentSink,
    LoggingNotificationSender,
    NotificationSender,
    RecordIntentSink,
)
from .reentry import check_reentry
from .store import ExecutionStore
from .templates import get_template

INITIAL_STEP_KEY = "trigger"


class WorkflowEngine:
    """
    State machine-based workflow execution engine.

    Features:
    - Event ingestion: entry matching, re-entry gating, execution creation
    - State machine with transitions (running ⇄ waiting → completed/failed/cancelled)
    - Durable progress after every step; resumes from ``current_step_key``
    - Wait steps suspend without holding a task; a scheduler tick resumes them
    - Step-count ceiling so cyclic graphs fail instead of spinning
    - Cooperative cancellation and retry as a new execution row
    """

    def __init__(
        self,
        store: ExecutionStore,
        sender: Optional[NotificationSender] = None,
        intents: Optional[RecordIntentSink] = None,
        settings: Optional[WorkflowSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize workflow engine with its store and collaborators."""
        self.store = store
        self.settings = settings or get_settings()
        self.sender = sender or LoggingNotificationSender()
        self.intents = intents or InMemoryIntentSink()
        self.clock = clock
        self.executors = StepExecutors(self.sender, self.intents, self.settings, clock)
        self._workflows: Dict[str, WorkflowDefinition] = {}

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def register_workflow(self, definition: WorkflowDefinition) -> None:
        """Register a workflow definition.

        Stored versions are immutable: changing a workflow means registering
        it again under a higher ``version``. Executions already in flight keep
        running the version they started on.
        """
        latest = await self.store.get_definition(definition.id)
        if latest is not None and definition.version <= latest.version:
            raise WorkflowVersionConflictError(definition.id, definition.version, latest.version)
        await self.store.save_definition(definition)
        self._workflows[definition.id] = definition
        logger.info(
            f"Registered workflow: {definition.name} "
            f"(ID: {definition.id}, Version: {definition.version})"
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            workflow = await self.store.get_definition(workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(workflow_id)
            self._workflows[workflow_id] = workflow
        return workflow

    async def list_workflows(self) -> List[WorkflowDefinition]:
        definitions = await self.store.list_definitions()
        self._workflows = {d.id: d for d in definitions}
        return definitions

    async def set_workflow_active(self, workflow_id: str, is_active: bool) -> WorkflowDefinition:
        workflow = await self.get_workflow(workflow_id)
        updated = workflow.model_copy(update={"is_active": is_active})
        await self.store.save_definition(updated)
        self._workflows[workflow_id] = updated
        logger.info(f"Workflow {workflow_id} {'activated' if is_active else 'deactivated'}")
        return updated

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def evaluate_event(self, event: RecordEvent) -> List[str]:
        """Start every matching, permitted workflow for a record event.

        Returns the ids of the executions created. Zero matches and re-entry
        denials are normal outcomes and only logged.
        """
        matches = find_matching_workflows(event, await self.list_workflows())
        if not matches:
            logger.info(
                f"No workflows matched {event.event_kind.value} on "
                f"{event.object_type}:{event.record_id}"
            )
            return []

        now = self.clock()
        execution_ids = []
        for workflow in matches:
            decision = await check_reentry(self.store, workflow, event.record_id, now)
            if not decision.allowed:
                logger.info(
                    f"Re-entry denied for workflow {workflow.id} "
                    f"record {event.record_id}: {decision.reason}"
                )
                continue

            context = ExecutionContext(
                trigger_type=workflow.trigger_type.value,
                triggered_at=now,
                record_data=dict(event.record),
                event_kind=event.event_kind.value,
                changed_fields=list(event.changed_fields),
                previous_values=dict(event.previous_values),
                triggered_by=event.triggered_by,
            )
            execution = await self._create_execution(
                workflow, event.object_type, event.record_id, context
            )
            execution_ids.append(execution.id)

        for execution_id in execution_ids:
            await self.process_execution(execution_id)
        return execution_ids

    async def trigger_manually(
        self,
        workflow_id: str,
        record: Dict[str, Any],
        record_type: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> WorkflowExecution:
        """Start a workflow for one record, bypassing trigger matching."""
        workflow = await self.get_workflow(workflow_id)
        if not workflow.is_active:
            raise WorkflowInactiveError(workflow_id)
        if record.get("id") is None:
            raise ValueError("Record must have an id")

        context = ExecutionContext(
            trigger_type=TriggerType.MANUAL.value,
            triggered_at=self.clock(),
            record_data=dict(record),
            triggered_by=triggered_by,
        )
        execution = await self._create_execution(
            workflow, record_type or workflow.object_type, str(record["id"]), context
        )
        await self.process_execution(execution.id)
        return await self._require_execution(execution.id)

    async def resume_due_executions(self, now: Optional[datetime] = None) -> int:
        """Resume waiting executions whose ``next_run_at`` has passed.

        Also picks up running executions whose worker died mid-run: a row
        not saved for longer than the claim lease is processed again from its
        ``current_step_key``.
        """
        now = as_utc(now) if now is not None else self.clock()
        due = await self.store.list_due_executions(now)
        processed = 0
        for execution in due:
            if await self.process_execution(execution.id, resume_at=now) is not None:
                processed += 1
        if processed:
            logger.info(f"Resumed {processed} due workflow executions")

        cutoff = now - timedelta(seconds=self.settings.claim_lease_seconds)
        for execution in await self.store.list_stale_executions(cutoff):
            logger.warning(
                f"Recovering stalled execution {execution.id} "
                f"at step {execution.current_step_key}"
            )
            if await self.process_execution(execution.id) is not None:
                processed += 1
        return processed

    async def process_execution(
        self, execution_id: str, resume_at: Optional[datetime] = None
    ) -> Optional[WorkflowExecution]:
        """Claim an execution and drive it until it waits or terminates.

        Returns None when another worker holds the claim.
        """
        worker_id = self.settings.worker_id
        claimed = await self.store.claim_execution(
            execution_id, worker_id, self.settings.claim_lease_seconds
        )
        if not claimed:
            logger.info(f"Execution {execution_id} is claimed by another worker, skipping")
            return None
        try:
            return await self._execute_workflow(execution_id, resume_at)
        finally:
            await self.store.release_execution(execution_id, worker_id)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _execute_workflow(
        self, execution_id: str, resume_at: Optional[datetime]
    ) -> WorkflowExecution:
        execution = await self._require_execution(execution_id)

        if execution.status == ExecutionStatus.WAITING and resume_at is not None:
            if execution.next_run_at is None or execution.next_run_at > resume_at:
                return execution
            execution.status = ExecutionStatus.RUNNING
            execution.next_run_at = None
            execution.waiting_for = None
            if not await self._persist(execution):
                return await self._require_execution(execution_id)
            logger.info(f"Resuming execution {execution_id} at step {execution.current_step_key}")

        if execution.status != ExecutionStatus.RUNNING:
            logger.info(
                f"Execution {execution_id} not in running state: {execution.status.value}"
            )
            return execution

        try:
            workflow = await self._workflow_for(execution)
        except WorkflowNotFoundError as e:
            return await self._fail(execution, str(e))
        if not workflow.steps:
            return await self._fail(execution, "No workflow steps found")

        transitions = 0
        try:
            while True:
                if await self._is_cancelled(execution.id):
                    return await self._require_execution(execution_id)

                step_key = execution.current_step_key
                if step_key is None:
                    return await self._complete(execution)

                if transitions >= self.settings.max_step_transitions:
                    return await self._fail(
                        execution,
                        f"Step limit of {self.settings.max_step_transitions} exceeded "
                        f"at step {step_key}; the workflow graph may contain a cycle",
                    )

                step = workflow.get_step(step_key)
                if step is None:
                    return await self._fail(execution, f"Step not found: {step_key}")

                # End steps are markers with no side effect; no audit row.
                if step.step_type == StepType.END:
                    return await self._complete(execution)

                result = await self._execute_step(execution, step)
                execution.step_count += 1
                transitions += 1

                if not result.success:
                    return await self._fail(execution, result.error or "Step execution failed")

                if result.output:
                    self._record_step_output(execution, step_key, result.output)

                wait_until = result.output.get("wait_until")
                if step.step_type == StepType.WAIT and wait_until:
                    return await self._suspend(execution, step, parse_timestamp(wait_until))

                if not result.next_step_key:
                    return await self._complete(execution)

                execution.current_step_key = result.next_step_key
                if not await self._persist(execution):
                    return await self._require_execution(execution_id)

        except Exception as e:
            logger.error(f"Workflow execution failed: {execution_id} - {e}")
            return await self._fail(execution, str(e))

    async def _execute_step(
        self, execution: WorkflowExecution, step: WorkflowStep
    ) -> StepResult:
        """Run one step between a running audit row and its outcome."""
        logger.info(f"Executing step: {step.step_key} ({step.step_type.value}) for {execution.id}")

        step_execution = WorkflowStepExecution(
            execution_id=execution.id,
            step_id=step.id,
            step_key=step.step_key,
            step_type=step.step_type,
            status=StepExecutionStatus.RUNNING,
            input={
                "context": execution.context.model_dump(mode="json"),
                "step_config": step.config.model_dump(mode="json"),
            },
            started_at=self.clock(),
        )
        await self.store.add_step_execution(step_execution)

        try:
            result = await self.executors.execute(step, execution)
        except Exception as e:
            logger.error(f"Step execution failed: {step.step_key} - {e}")
            result = StepResult(success=False, error=f"Unexpected error in {step.step_key}: {e}")

        if result.skipped:
            step_execution.status = StepExecutionStatus.SKIPPED
        elif result.success:
            step_execution.status = StepExecutionStatus.COMPLETED
        else:
            step_execution.status = StepExecutionStatus.FAILED
        step_execution.output = result.output or None
        step_execution.error_message = result.error
        step_execution.completed_at = self.clock()
        await self.store.save_step_execution(step_execution)
        return result

    @staticmethod
    def _record_step_output(
        execution: WorkflowExecution, step_key: str, output: Dict[str, Any]
    ) -> None:
        """Append a step's output; repeat visits get ``key#2``, ``key#3``, ..."""
        results = execution.context.step_results
        key = step_key
        attempt = 1
        while key in results:
            attempt += 1
            key = f"{step_key}#{attempt}"
        results[key] = output

    async def _suspend(
        self, execution: WorkflowExecution, step: WorkflowStep, wait_until: datetime
    ) -> WorkflowExecution:
        execution.status = ExecutionStatus.WAITING
        execution.current_step_key = step.next_step_key
        execution.next_run_at = wait_until
        execution.waiting_for = f"Waiting until {wait_until.isoformat()}"
        if not await self._persist(execution):
            return await self._require_execution(execution.id)
        logger.info(f"Execution {execution.id} waiting until {wait_until.isoformat()}")
        return execution

    async def _complete(self, execution: WorkflowExecution) -> WorkflowExecution:
        execution.status = ExecutionStatus.COMPLETED
        execution.current_step_key = None
        execution.next_run_at = None
        execution.waiting_for = None
        execution.completed_at = self.clock()
        if not await self._persist(execution):
            return await self._require_execution(execution.id)
        logger.info(f"Workflow execution completed: {execution.id}")
        return execution

    async def _fail(self, execution: WorkflowExecution, error: str) -> WorkflowExecution:
        # current_step_key stays on the failing step so a retry starts there.
        execution.status = ExecutionStatus.FAILED
        execution.error_message = error
        execution.next_run_at = None
        execution.waiting_for = None
        execution.completed_at = self.clock()
        if not await self._persist(execution):
            return await self._require_execution(execution.id)
        logger.error(f"Workflow execution failed: {execution.id} - {error}")
        return execution

    async def _persist(self, execution: WorkflowExecution) -> bool:
        """Save progress unless the row went terminal out-of-band (e.g. cancelled)."""
        execution.updated_at = self.clock()
        if await self.store.save_execution(execution):
            return True
        logger.info(f"Execution {execution.id} was stopped by another writer, stopping")
        return False

    async def _is_cancelled(self, execution_id: str) -> bool:
        stored = await self.store.get_execution(execution_id)
        if stored is not None and stored.status == ExecutionStatus.CANCELLED:
            logger.info(f"Execution {execution_id} was cancelled, stopping")
            return True
        return False

    async def _workflow_for(self, execution: WorkflowExecution) -> WorkflowDefinition:
        """The definition version an execution started on."""
        cached = self._workflows.get(execution.workflow_id)
        if cached is not None and cached.version == execution.workflow_version:
            return cached
        workflow = await self.store.get_definition(
            execution.workflow_id, execution.workflow_version
        )
        if workflow is None:
            raise WorkflowNotFoundError(execution.workflow_id, execution.workflow_version)
        return workflow

    async def _create_execution(
        self,
        workflow: WorkflowDefinition,
        record_type: str,
        record_id: str,
        context: ExecutionContext,
    ) -> WorkflowExecution:
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            record_type=record_type,
            record_id=record_id,
            status=ExecutionStatus.RUNNING,
            current_step_key=INITIAL_STEP_KEY,
            context=context,
            started_at=self.clock(),
            updated_at=self.clock(),
        )
        await self.store.create_execution(execution)
        logger.info(
            f"Created workflow execution: {execution.id} "
            f"(workflow {workflow.id}, record {record_type}:{record_id})"
        )
        return execution

    async def _require_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def get_execution_status(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Get current execution status."""
        return await self.store.get_execution(execution_id)

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        record_id: Optional[str] = None,
    ) -> List[WorkflowExecution]:
        return await self.store.list_executions(workflow_id, status, record_id)

    async def get_step_executions(self, execution_id: str) -> List[WorkflowStepExecution]:
        await self._require_execution(execution_id)
        return await self.store.list_step_executions(execution_id)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a running or waiting execution.

        A worker already inside a step finishes that step and then stops.
        """
        execution = await self.store.get_execution(execution_id)
        if not execution:
            return False

        if execution.status not in (ExecutionStatus.RUNNING, ExecutionStatus.WAITING):
            return False

        execution.status = ExecutionStatus.CANCELLED
        execution.next_run_at = None
        execution.waiting_for = None
        execution.completed_at = self.clock()
        execution.updated_at = self.clock()
        if not await self.store.save_execution(execution):
            # Finished between the read and the write.
            return False

        logger.info(f"Cancelled workflow execution: {execution_id}")
        return True

    async def retry_execution(self, execution_id: str) -> WorkflowExecution:
        """Start a new execution picking up where a failed/cancelled one stopped.

        The original row stays terminal; the new row points back via ``retry_of``.
        """
        previous = await self._require_execution(execution_id)
        if previous.status not in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
            raise InvalidExecutionStateError(
                f"Only failed or cancelled executions can be retried "
                f"(execution {execution_id} is {previous.status.value})"
            )

        retry = WorkflowExecution(
            workflow_id=previous.workflow_id,
            workflow_version=previous.workflow_version,
            record_type=previous.record_type,
            record_id=previous.record_id,
            status=ExecutionStatus.RUNNING,
            current_step_key=previous.current_step_key or INITIAL_STEP_KEY,
            context=previous.context.model_copy(deep=True),
            retry_count=previous.retry_count + 1,
            retry_of=previous.id,
            started_at=self.clock(),
            updated_at=self.clock(),
        )
        await self.store.create_execution(retry)
        logger.info(
            f"Retrying execution {execution_id} as {retry.id} "
            f"from step {retry.current_step_key} (attempt {retry.retry_count})"
        )
        await self.process_execution(retry.id)
        return await self._require_execution(retry.id)

    # ------------------------------------------------------------------
    # Definition authoring and analytics
    # ------------------------------------------------------------------

    async def duplicate_workflow(
        self,
        workflow_id: str,
        new_workflow_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Copy the latest version of a workflow into a new, inactive workflow."""
        source = await self.get_workflow(workflow_id)
        data = source.model_dump(exclude={"id", "version", "created_at", "is_active"})
        data["name"] = name or f"{source.name} (Copy)"
        copy = self._new_definition(data, new_workflow_id)
        await self.register_workflow(copy)
        return copy

    async def create_from_template(
        self,
        template_id: str,
        workflow_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Create an inactive workflow from a built-in template."""
        template = get_template(template_id)
        data = template.model_dump(exclude={"id", "category"})
        if name:
            data["name"] = name
        definition = self._new_definition(data, workflow_id)
        await self.register_workflow(definition)
        logger.info(f"Created workflow {definition.id} from template {template_id}")
        return definition

    def _new_definition(
        self, data: Dict[str, Any], workflow_id: Optional[str]
    ) -> WorkflowDefinition:
        # Fresh step ids; keys stay the same so the graph is unchanged.
        data["steps"] = [
            {k: v for k, v in step.items() if k != "id"} for step in data.get("steps", [])
        ]
        data["is_active"] = False
        data["created_at"] = self.clock()
        if workflow_id:
            data["id"] = workflow_id
        return WorkflowDefinition.model_validate(data)

    async def get_workflow_stats(self, workflow_id: str) -> WorkflowStats:
        """Execution counts, success rate, durations and a per-step funnel."""
        workflow = await self.get_workflow(workflow_id)
        executions = await self.store.list_executions(workflow_id=workflow_id)

        status_counts = {status: 0 for status in ExecutionStatus}
        errors: Dict[str, int] = {}
        durations = []
        for execution in executions:
            status_counts[execution.status] += 1
            if execution.error_message:
                errors[execution.error_message] = errors.get(execution.error_message, 0) + 1
            if execution.status == ExecutionStatus.COMPLETED and execution.completed_at:
                durations.append((execution.completed_at - execution.started_at).total_seconds())

        completed = status_counts[ExecutionStatus.COMPLETED]
        finished = completed + status_counts[ExecutionStatus.FAILED]

        funnel = {
            step.step_key: StepStats(step_key=step.step_key, step_type=step.step_type)
            for step in sorted(workflow.steps, key=lambda s: s.step_order)
            if step.step_type not in (StepType.TRIGGER, StepType.END)
        }
        for execution in executions:
            for row in await self.store.list_step_executions(execution.id):
                stats = funnel.get(row.step_key)
                if stats is None:
                    continue
                stats.total += 1
                if row.status == StepExecutionStatus.COMPLETED:
                    stats.completed += 1
                elif row.status == StepExecutionStatus.FAILED:
                    stats.failed += 1
                elif row.status == StepExecutionStatus.SKIPPED:
                    stats.skipped += 1

        return WorkflowStats(
            workflow_id=workflow_id,
            execution_count=len(executions),
            last_executed_at=executions[0].started_at if executions else None,
            status_counts=status_counts,
            success_rate=round(completed * 100 / finished) if finished else 0,
            average_duration_seconds=sum(durations) / len(durations) if durations else None,
            steps=list(funnel.values()),
            errors=errors,
        )

"""Execution store boundary and an in-memory implementation."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..models.workflow import (
    ExecutionStatus,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStepExecution,
    utcnow,
)


class ExecutionStore(ABC):
    """Durable record of definitions, executions and step executions.

    Implementations must make ``claim_execution`` atomic across workers: at
    most one worker may hold the claim on an execution id at a time.
    """

    async def connect(self) -> None:
        """Open backend connections. No-op by default."""

    async def disconnect(self) -> None:
        """Close backend connections. No-op by default."""

    # Definitions -----------------------------------------------------------

    @abstractmethod
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace one (id, version) of a workflow definition."""

    @abstractmethod
    async def get_definition(
        self, workflow_id: str, version: Optional[int] = None
    ) -> Optional[WorkflowDefinition]:
        """Return a definition version; the latest one when ``version`` is None."""

    @abstractmethod
    async def list_definitions(self) -> List[WorkflowDefinition]:
        """Return the latest version of every stored definition."""

    # Executions ------------------------------------------------------------

    @abstractmethod
    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Persist a brand-new execution row."""

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Return an execution by id."""

    @abstractmethod
    async def save_execution(self, execution: WorkflowExecution) -> bool:
        """Persist changes to an existing execution row.

        The check and the write are atomic. A row that is already terminal is
        never overwritten: the call returns False and leaves it unchanged.
        """

    @abstractmethod
    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        record_id: Optional[str] = None,
    ) -> List[WorkflowExecution]:
        """List executions, newest ``started_at`` first."""

    @abstractmethod
    async def list_due_executions(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[WorkflowExecution]:
        """Waiting executions with ``next_run_at <= now``, earliest first."""

    async def list_executions_for_record(
        self, workflow_id: str, record_id: str
    ) -> List[WorkflowExecution]:
        """Prior executions of one (workflow, record) pair, newest first."""
        return await self.list_executions(workflow_id=workflow_id, record_id=record_id)

    async def list_stale_executions(self, updated_before: datetime) -> List[WorkflowExecution]:
        """Running executions last saved before ``updated_before``, oldest first.

        Used to find executions whose worker died mid-run.
        """
        rows = [
            e
            for e in await self.list_executions(status=ExecutionStatus.RUNNING)
            if e.updated_at < updated_before
        ]
        rows.sort(key=lambda e: e.updated_at)
        return rows

    # Step executions -------------------------------------------------------

    @abstractmethod
    async def add_step_execution(self, step_execution: WorkflowStepExecution) -> None:
        """Append a step execution row."""

    @abstractmethod
    async def save_step_execution(self, step_execution: WorkflowStepExecution) -> None:
        """Record the outcome on an existing step execution row."""

    @abstractmethod
    async def list_step_executions(self, execution_id: str) -> List[WorkflowStepExecution]:
        """Step execution rows for one execution in the order they were added."""

    # Claims ----------------------------------------------------------------

    @abstractmethod
    async def claim_execution(
        self, execution_id: str, worker_id: str, lease_seconds: int
    ) -> bool:
        """Take the processing lease on an execution. False while any live lease exists."""

    @abstractmethod
    async def release_execution(self, execution_id: str, worker_id: str) -> None:
        """Drop the lease if ``worker_id`` still holds it."""


class InMemoryExecutionStore(ExecutionStore):
    """Store workflow state in local memory.

    Useful for tests or when no Redis is configured. Data is not persisted
    across process restarts. Rows are copied on the way in and out so callers
    never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, Dict[int, WorkflowDefinition]] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._steps: Dict[str, List[WorkflowStepExecution]] = {}
        self._leases: Dict[str, Tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        versions = self._definitions.setdefault(definition.id, {})
        versions[definition.version] = definition.model_copy(deep=True)

    async def get_definition(
        self, workflow_id: str, version: Optional[int] = None
    ) -> Optional[WorkflowDefinition]:
        versions = self._definitions.get(workflow_id)
        if not versions:
            return None
        definition = versions.get(max(versions) if version is None else version)
        return definition.model_copy(deep=True) if definition else None

    async def list_definitions(self) -> List[WorkflowDefinition]:
        return [
            versions[max(versions)].model_copy(deep=True)
            for versions in self._definitions.values()
        ]

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        if execution.id in self._executions:
            raise ValueError(f"Execution already exists: {execution.id}")
        self._executions[execution.id] = execution.model_copy(deep=True)
        self._steps.setdefault(execution.id, [])

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def save_execution(self, execution: WorkflowExecution) -> bool:
        async with self._lock:
            stored = self._executions.get(execution.id)
            if stored is None:
                raise ValueError(f"Execution not found: {execution.id}")
            if stored.is_terminal:
                return False
            self._executions[execution.id] = execution.model_copy(deep=True)
            return True

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        record_id: Optional[str] = None,
    ) -> List[WorkflowExecution]:
        rows = [
            e
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
            and (record_id is None or e.record_id == record_id)
        ]
        rows.sort(key=lambda e: e.started_at, reverse=True)
        return [e.model_copy(deep=True) for e in rows]

    async def list_due_executions(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[WorkflowExecution]:
        rows = [
            e
            for e in self._executions.values()
            if e.status == ExecutionStatus.WAITING
            and e.next_run_at is not None
            and e.next_run_at <= now
        ]
        rows.sort(key=lambda e: e.next_run_at)
        if limit is not None:
            rows = rows[:limit]
        return [e.model_copy(deep=True) for e in rows]

    # ------------------------------------------------------------------
    async def add_step_execution(self, step_execution: WorkflowStepExecution) -> None:
        self._steps.setdefault(step_execution.execution_id, []).append(
            step_execution.model_copy(deep=True)
        )

    async def save_step_execution(self, step_execution: WorkflowStepExecution) -> None:
        rows = self._steps.get(step_execution.execution_id, [])
        for index, row in enumerate(rows):
            if row.id == step_execution.id:
                rows[index] = step_execution.model_copy(deep=True)
                return
        raise ValueError(f"Step execution not found: {step_execution.id}")

    async def list_step_executions(self, execution_id: str) -> List[WorkflowStepExecution]:
        return [s.model_copy(deep=True) for s in self._steps.get(execution_id, [])]

    # ------------------------------------------------------------------
    async def claim_execution(
        self, execution_id: str, worker_id: str, lease_seconds: int
    ) -> bool:
        async with self._lock:
            now = utcnow()
            holder = self._leases.get(execution_id)
            if holder and holder[1] > now:
                return False
            self._leases[execution_id] = (worker_id, now + timedelta(seconds=lease_seconds))
            return True

    async def release_execution(self, execution_id: str, worker_id: str) -> None:
        async with self._lock:
            holder = self._leases.get(execution_id)
            if holder and holder[0] == worker_id:
                del self._leases[execution_id]

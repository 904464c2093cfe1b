"""State manager for workflow persistence using Redis."""

import json
from datetime import datetime
from typing import List, Optional

import redis.asyncio as aioredis
from loguru import logger
from redis.exceptions import WatchError

from ..models.workflow import (
    TERMINAL_STATUSES,
    ExecutionStatus,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStepExecution,
)
from .store import ExecutionStore


class WorkflowStateManager(ExecutionStore):
    """Redis-backed execution store with an append-only step audit trail.

    Layout:

    - ``workflow:definition:<id>:<version>`` JSON definition, versions in the
      ``workflow:versions:<id>`` sorted set, ids in ``workflow:definitions``
    - ``workflow:execution:<id>`` JSON execution row
    - ``workflow:executions`` / ``workflow:index:<workflow>`` /
      ``workflow:record:<workflow>:<record>`` sorted sets scored by ``started_at``
    - ``workflow:waiting`` sorted set of waiting executions scored by ``next_run_at``
    - ``workflow:steps:<execution>`` list of step execution ids,
      ``workflow:step:<id>`` JSON step execution row
    - ``workflow:lease:<execution>`` processing lease holding the worker id
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0") -> None:
        """Initialize state manager with Redis connection."""
        self.redis_url = redis_url
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        if not self._redis:
            self._redis = aioredis.from_url(
                self.redis_url, encoding="utf-8", decode_responses=True
            )
            logger.info("Connected to Redis for workflow state management")

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Disconnected from Redis")

    async def _client(self) -> aioredis.Redis:
        if not self._redis:
            await self.connect()
        return self._redis

    # Keys ------------------------------------------------------------------

    def _definition_key(self, workflow_id: str, version: int) -> str:
        return f"workflow:definition:{workflow_id}:{version}"

    def _versions_key(self, workflow_id: str) -> str:
        return f"workflow:versions:{workflow_id}"

    def _execution_key(self, execution_id: str) -> str:
        return f"workflow:execution:{execution_id}"

    def _workflow_index_key(self, workflow_id: str) -> str:
        return f"workflow:index:{workflow_id}"

    def _record_index_key(self, workflow_id: str, record_id: str) -> str:
        return f"workflow:record:{workflow_id}:{record_id}"

    def _steps_key(self, execution_id: str) -> str:
        return f"workflow:steps:{execution_id}"

    def _step_key(self, step_execution_id: str) -> str:
        return f"workflow:step:{step_execution_id}"

    def _lease_key(self, execution_id: str) -> str:
        return f"workflow:lease:{execution_id}"

    _DEFINITIONS_KEY = "workflow:definitions"
    _EXECUTIONS_KEY = "workflow:executions"
    _WAITING_KEY = "workflow:waiting"

    # Definitions -----------------------------------------------------------

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        redis = await self._client()
        await redis.set(
            self._definition_key(definition.id, definition.version),
            json.dumps(definition.model_dump(mode="json")),
        )
        await redis.zadd(
            self._versions_key(definition.id), {str(definition.version): definition.version}
        )
        await redis.sadd(self._DEFINITIONS_KEY, definition.id)
        logger.debug(f"Saved workflow definition: {definition.id} v{definition.version}")

    async def get_definition(
        self, workflow_id: str, version: Optional[int] = None
    ) -> Optional[WorkflowDefinition]:
        redis = await self._client()
        if version is None:
            latest = await redis.zrevrange(self._versions_key(workflow_id), 0, 0)
            if not latest:
                return None
            version = int(latest[0])
        data = await redis.get(self._definition_key(workflow_id, version))
        if not data:
            return None
        return WorkflowDefinition.model_validate(json.loads(data))

    async def list_definitions(self) -> List[WorkflowDefinition]:
        redis = await self._client()
        definitions = []
        for workflow_id in sorted(await redis.smembers(self._DEFINITIONS_KEY)):
            definition = await self.get_definition(workflow_id)
            if definition:
                definitions.append(definition)
        return definitions

    # Executions ------------------------------------------------------------

    async def create_execution(self, execution: WorkflowExecution) -> None:
        redis = await self._client()
        created = await redis.set(
            self._execution_key(execution.id),
            json.dumps(execution.model_dump(mode="json")),
            nx=True,
        )
        if not created:
            raise ValueError(f"Execution already exists: {execution.id}")

        score = execution.started_at.timestamp()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self._EXECUTIONS_KEY, {execution.id: score})
            pipe.zadd(self._workflow_index_key(execution.workflow_id), {execution.id: score})
            pipe.zadd(
                self._record_index_key(execution.workflow_id, execution.record_id),
                {execution.id: score},
            )
            self._queue_waiting_index(pipe, execution)
            await pipe.execute()
        logger.debug(f"Created execution state: {execution.id} - {execution.status.value}")

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Retrieve workflow execution from Redis."""
        redis = await self._client()
        data = await redis.get(self._execution_key(execution_id))
        if not data:
            return None
        return WorkflowExecution.model_validate(json.loads(data))

    async def save_execution(self, execution: WorkflowExecution) -> bool:
        """Save workflow execution state to Redis unless the stored row is terminal."""
        redis = await self._client()
        key = self._execution_key(execution.id)
        payload = json.dumps(execution.model_dump(mode="json"))
        async with redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if not data:
                        await pipe.unwatch()
                        raise ValueError(f"Execution not found: {execution.id}")
                    if ExecutionStatus(json.loads(data)["status"]) in TERMINAL_STATUSES:
                        await pipe.unwatch()
                        logger.debug(f"Refused to overwrite terminal execution: {execution.id}")
                        return False
                    pipe.multi()
                    pipe.set(key, payload)
                    self._queue_waiting_index(pipe, execution)
                    await pipe.execute()
                    break
                except WatchError:
                    # Another writer touched the row; re-check its status.
                    continue
        logger.debug(f"Saved execution state: {execution.id} - {execution.status.value}")
        return True

    def _queue_waiting_index(self, pipe, execution: WorkflowExecution) -> None:
        if execution.status == ExecutionStatus.WAITING and execution.next_run_at:
            pipe.zadd(self._WAITING_KEY, {execution.id: execution.next_run_at.timestamp()})
        else:
            pipe.zrem(self._WAITING_KEY, execution.id)

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        record_id: Optional[str] = None,
    ) -> List[WorkflowExecution]:
        """List workflow executions with optional filtering."""
        redis = await self._client()

        if workflow_id and record_id:
            index_key = self._record_index_key(workflow_id, record_id)
        elif workflow_id:
            index_key = self._workflow_index_key(workflow_id)
        else:
            index_key = self._EXECUTIONS_KEY

        executions = []
        for execution_id in await redis.zrevrange(index_key, 0, -1):
            execution = await self.get_execution(execution_id)
            if not execution:
                continue
            if status and execution.status != status:
                continue
            if record_id and execution.record_id != record_id:
                continue
            executions.append(execution)
        return executions

    async def list_due_executions(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[WorkflowExecution]:
        redis = await self._client()
        if limit is not None:
            execution_ids = await redis.zrangebyscore(
                self._WAITING_KEY, "-inf", now.timestamp(), start=0, num=limit
            )
        else:
            execution_ids = await redis.zrangebyscore(
                self._WAITING_KEY, "-inf", now.timestamp()
            )

        due = []
        for execution_id in execution_ids:
            execution = await self.get_execution(execution_id)
            if (
                execution
                and execution.status == ExecutionStatus.WAITING
                and execution.next_run_at
                and execution.next_run_at <= now
            ):
                due.append(execution)
        return due

    # Step executions -------------------------------------------------------

    async def add_step_execution(self, step_execution: WorkflowStepExecution) -> None:
        redis = await self._client()
        await redis.set(
            self._step_key(step_execution.id),
            json.dumps(step_execution.model_dump(mode="json")),
        )
        await redis.rpush(self._steps_key(step_execution.execution_id), step_execution.id)

    async def save_step_execution(self, step_execution: WorkflowStepExecution) -> None:
        redis = await self._client()
        saved = await redis.set(
            self._step_key(step_execution.id),
            json.dumps(step_execution.model_dump(mode="json")),
            xx=True,
        )
        if not saved:
            raise ValueError(f"Step execution not found: {step_execution.id}")

    async def list_step_executions(self, execution_id: str) -> List[WorkflowStepExecution]:
        redis = await self._client()
        rows = []
        for step_execution_id in await redis.lrange(self._steps_key(execution_id), 0, -1):
            data = await redis.get(self._step_key(step_execution_id))
            if data:
                rows.append(WorkflowStepExecution.model_validate(json.loads(data)))
        return rows

    # Claims ----------------------------------------------------------------

    async def claim_execution(
        self, execution_id: str, worker_id: str, lease_seconds: int
    ) -> bool:
        redis = await self._client()
        claimed = await redis.set(
            self._lease_key(execution_id), worker_id, nx=True, ex=lease_seconds
        )
        return bool(claimed)

    async def release_execution(self, execution_id: str, worker_id: str) -> None:
        redis = await self._client()
        key = self._lease_key(execution_id)
        async with redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                holder = await pipe.get(key)
                if holder != worker_id:
                    await pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except WatchError:
                # Lease expired and was taken over while releasing.
                logger.warning(f"Lease on execution {execution_id} changed during release")

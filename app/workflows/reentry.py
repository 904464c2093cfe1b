"""Re-entry gatekeeper: may this record start this workflow again?"""

from datetime import datetime, timedelta
from typing import Optional

from loguru import logger

from ..models.workflow import ReentryDecision, ReentryMode, WorkflowDefinition, utcnow
from .store import ExecutionStore

ALLOWED = ReentryDecision(allowed=True)


async def check_reentry(
    store: ExecutionStore,
    workflow: WorkflowDefinition,
    record_id: str,
    now: Optional[datetime] = None,
) -> ReentryDecision:
    """Apply the workflow's re-entry mode to the pair's execution history.

    A denial is an expected outcome, returned rather than raised.
    """
    mode = workflow.reentry_mode
    if mode == ReentryMode.ALLOW_ALL:
        return ALLOWED

    prior = await store.list_executions_for_record(workflow.id, record_id)
    if not prior:
        return ALLOWED
    latest = prior[0]

    if mode == ReentryMode.NO_REENTRY:
        return ReentryDecision(
            allowed=False, reason="Record has already entered this workflow"
        )

    if mode == ReentryMode.AFTER_EXIT:
        if latest.is_terminal:
            return ALLOWED
        return ReentryDecision(
            allowed=False,
            reason=f"Previous execution {latest.id} is still {latest.status.value}",
        )

    if mode == ReentryMode.AFTER_WAIT_DAYS:
        now = now or utcnow()
        permitted_at = latest.started_at + timedelta(days=workflow.reentry_wait_days or 0)
        if now >= permitted_at:
            return ALLOWED
        return ReentryDecision(
            allowed=False,
            reason=f"Must wait until {permitted_at.isoformat()} to re-enter",
            permitted_at=permitted_at,
        )

    logger.warning(f"Unhandled re-entry mode {mode} on workflow {workflow.id}")
    return ALLOWED

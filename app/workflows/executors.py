"""Step executors: one handler per step type.

Each handler receives the step (with its typed config) and the execution and
returns a ``StepResult``. Expected failures (missing recipient, bad phone
number, non-2xx webhook) come back as ``success=False``; a step skipped for a
control-flow reason (SMS opt-out, legacy condition false) comes back as
``success=True, skipped=True`` and the workflow continues.
"""

import re
from datetime import date, datetime, time, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import WorkflowSettings
from ..models.workflow import (
    CreateTaskStepConfig,
    DecisionStepConfig,
    RecordIntent,
    SendEmailStepConfig,
    SendSmsStepConfig,
    StepResult,
    StepType,
    UpdateFieldStepConfig,
    WaitStepConfig,
    WebhookStepConfig,
    WorkflowExecution,
    WorkflowStep,
    as_utc,
    utcnow,
)
from .conditions import evaluate_condition, evaluate_decision
from .errors import WorkflowError
from .notifications import NotificationSender, RecordIntentSink
from .templating import render, render_value

Handler = Callable[[WorkflowStep, WorkflowExecution], Awaitable[StepResult]]

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{6,14}$")
PHONE_SEPARATORS = re.compile(r"[\s\-().]")

_TRUTHY = {"true", "yes", "y", "1", "on", "opted_in"}


def _failure(error: str) -> StepResult:
    return StepResult(success=False, error=error)


def _opted_in(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def normalize_phone(raw: str) -> Optional[str]:
    """Strip separators; return None unless what's left looks like E.164."""
    phone = PHONE_SEPARATORS.sub("", raw)
    if not PHONE_PATTERN.match(phone):
        return None
    return phone


def parse_timestamp(value: Any) -> datetime:
    """Read a date/datetime/ISO string from a record field as aware UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    return as_utc(parsed)


class StepExecutors:
    """Registry of step handlers bound to the engine's collaborators."""

    def __init__(
        self,
        sender: NotificationSender,
        intents: RecordIntentSink,
        settings: WorkflowSettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sender = sender
        self.intents = intents
        self.settings = settings
        self.clock = clock
        self._handlers: Dict[StepType, Handler] = {
            StepType.TRIGGER: self.execute_trigger,
            StepType.SEND_EMAIL: self.execute_send_email,
            StepType.SEND_SMS: self.execute_send_sms,
            StepType.CREATE_TASK: self.execute_create_task,
            StepType.UPDATE_FIELD: self.execute_update_field,
            StepType.WAIT: self.execute_wait,
            StepType.DECISION: self.execute_decision,
            StepType.WEBHOOK: self.execute_webhook,
            StepType.END: self.execute_end,
        }

    async def execute(self, step: WorkflowStep, execution: WorkflowExecution) -> StepResult:
        """Run the handler for ``step`` after its legacy gating condition."""
        handler = self._handlers.get(step.step_type)
        if handler is None:
            return _failure(f"Unsupported step type: {step.step_type.value}")

        record = execution.context.record_data
        try:
            if step.condition and not evaluate_condition(step.condition, record):
                logger.info(f"Step condition not met, skipping: {step.step_key}")
                return StepResult(
                    success=True,
                    skipped=True,
                    output={"skipped_reason": "condition not met"},
                    next_step_key=step.next_step_key,
                )
            return await handler(step, execution)
        except WorkflowError as e:
            return _failure(str(e))

    # ------------------------------------------------------------------
    async def execute_trigger(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> StepResult:
        return StepResult(success=True, next_step_key=step.next_step_key)

    async def execute_end(self, step: WorkflowStep, execution: WorkflowExecution) -> StepResult:
        return StepResult(success=True)

    # ------------------------------------------------------------------
    async def execute_send_email(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> StepResult:
        config: SendEmailStepConfig = step.config
        record = execution.context.record_data

        to_email = None
        if config.to_type == "custom" and config.to_email:
            to_email = config.to_email
        elif config.to_type == "admin" and self.settings.admin_email:
            to_email = self.settings.admin_email
        elif config.to_field and record.get(config.to_field):
            to_email = str(record[config.to_field])
        elif record.get(config.fallback_field):
            to_email = str(record[config.fallback_field])

        if not to_email:
            return _failure("No recipient email found")

        subject = render(config.subject, record) if config.subject else None
        body = render(config.body or "", record)

        result = await self.sender.send("email", to_email, subject, body)
        if not result.success:
            return _failure(result.error or f"Email delivery to {to_email} failed")

        return StepResult(
            success=True,
            output={
                "email_sent_to": to_email,
                "subject": subject,
                "template": config.template_name,
                "provider_message_id": result.provider_message_id,
            },
            next_step_key=step.next_step_key,
        )

    async def execute_send_sms(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> StepResult:
        config: SendSmsStepConfig = step.config
        record = execution.context.record_data

        if config.require_consent:
            consent_field = config.consent_field or self.settings.sms_consent_field
            if not _opted_in(record.get(consent_field)):
                logger.info(
                    f"Skipping SMS for {execution.record_type}:{execution.record_id}: "
                    f"not opted in ({consent_field})"
                )
                return StepResult(
                    success=True,
                    skipped=True,
                    output={"skipped_reason": "recipient has not opted in to SMS"},
                    next_step_key=step.next_step_key,
                )

        raw_phone = None
        if config.to_phone:
            raw_phone = config.to_phone
        elif config.to_field and record.get(config.to_field):
            raw_phone = str(record[config.to_field])
        elif record.get(config.fallback_field):
            raw_phone = str(record[config.fallback_field])

        if not raw_phone:
            return _failure("No recipient phone number found")

        phone = normalize_phone(raw_phone)
        if phone is None:
            return _failure(f"Invalid phone number: {raw_phone}")

        body = render(config.body or "", record)
        result = await self.sender.send("sms", phone, None, body)
        if not result.success:
            return _failure(result.error or f"SMS delivery to {phone} failed")

        return StepResult(
            success=True,
            output={
                "sms_sent_to": phone,
                "provider_message_id": result.provider_message_id,
            },
            next_step_key=step.next_step_key,
        )

    # ------------------------------------------------------------------
    async def execute_create_task(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> StepResult:
        config: CreateTaskStepConfig = step.config
        record = execution.context.record_data
        record_id = execution.record_id or record.get("id")
        if not record_id:
            return _failure("No record id found in record data")

        title = render(config.title, record)
        payload: Dict[str, Any] = {
            "title": title,
            "action_type": config.action_type,
            "description": render(config.description, record) if config.description else None,
            "assigned_to": config.assigned_to,
            "priority": config.priority,
            "status": "pending",
        }
        if config.due_days is not None:
            payload["due_at"] = (self.clock() + timedelta(days=config.due_days)).isoformat()

        task_id = await self.intents.emit(
            RecordIntent(
                kind="create_task",
                execution_id=execution.id,
                step_key=step.step_key,
                record_type=execution.record_type,
                record_id=str(record_id),
                payload=payload,
            )
        )
        return StepResult(
            success=True,
            output={"task_created": True, "task_id": task_id, "task_title": title},
            next_step_key=step.next_step_key,
        )

    async def execute_update_field(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> StepResult:
        config: UpdateFieldStepConfig = step.config
        if not config.field or config.value is None:
            return _failure("Field and value are required for update_field step")

        record = execution.context.record_data
        value = render_value(config.value, record)
        await self.intents.emit(
            RecordIntent(
                kind="update_field",
                execution_id=execution.id,
                step_key=step.step_key,
                record_type=execution.record_type,
                record_id=execution.record_id,
                payload={"field": config.field, "value": value},
            )
        )
        return StepResult(
            success=True,
            output={
                "field_updated": config.field,
                "new_value": value,
                "previous_value": record.get(config.field),
            },
            next_step_key=step.next_step_key,
        )

    # ------------------------------------------------------------------
    async def execute_wait(self, step: WorkflowStep, execution: WorkflowExecution) -> StepResult:
        config: WaitStepConfig = step.config

        if config.wait_days or config.wait_hours:
            wait_until = self.clock() + timedelta(
                days=config.wait_days or 0, hours=config.wait_hours or 0
            )
        elif config.wait_until_field:
            value = execution.context.record_data.get(config.wait_until_field)
            if value is None or (isinstance(value, str) and not value.strip()):
                return _failure(f"Field {config.wait_until_field} not found or empty")
            try:
                wait_until = parse_timestamp(value)
            except ValueError:
                return _failure(
                    f"Field {config.wait_until_field} is not a valid date: {value!r}"
                )
        else:
            # Nothing configured, continue immediately.
            return StepResult(success=True, next_step_key=step.next_step_key)

        return StepResult(
            success=True,
            output={
                "wait_until": wait_until.isoformat(),
                "wait_days": config.wait_days,
                "wait_hours": config.wait_hours,
            },
            next_step_key=step.next_step_key,
        )

    async def execute_decision(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> StepResult:
        config: DecisionStepConfig = step.config
        outcome = evaluate_decision(config, step.branches, execution.context.record_data)
        logger.debug(f"Decision {step.step_key} took branch {outcome.branch_taken}")
        return StepResult(
            success=True,
            output=outcome.as_output(),
            next_step_key=outcome.next_step_key,
        )

    # ------------------------------------------------------------------
    async def execute_webhook(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> StepResult:
        config: WebhookStepConfig = step.config
        if not config.url:
            return _failure("Webhook step requires url")

        record = execution.context.record_data
        url = render(config.url, record)
        headers = {k: render(v, record) for k, v in config.headers.items()}
        # Receivers dedupe retried deliveries on this key.
        headers.setdefault("Idempotency-Key", f"{execution.id}:{step.step_key}")
        body = render_value(config.body, record) if config.body is not None else None

        request_kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None and config.method != "GET":
            request_kwargs["json"] = body

        try:
            response = await self._send_webhook_request(config.method, url, request_kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Webhook {config.method} {url} failed: {e}")
            return _failure(f"Webhook request failed: {e}")

        if not response.is_success:
            return _failure(f"Webhook returned HTTP {response.status_code}")

        logger.info(f"Webhook sent: {config.method} {url} -> {response.status_code}")
        return StepResult(
            success=True,
            output={"url": url, "method": config.method, "status_code": response.status_code},
            next_step_key=step.next_step_key,
        )

    async def _send_webhook_request(
        self, method: str, url: str, request_kwargs: Dict[str, Any]
    ) -> httpx.Response:
        """Send with bounded exponential backoff on transport errors only."""
        async with httpx.AsyncClient(timeout=self.settings.webhook_timeout_seconds) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, self.settings.webhook_retry_attempts)),
                wait=wait_exponential(multiplier=0.5, max=8),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    return await client.request(method, url, **request_kwargs)

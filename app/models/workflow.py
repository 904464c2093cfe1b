"""Workflow models and schemas for the CRM automation state machine."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Timezone-aware current UTC time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class TriggerType(str, Enum):
    """What kind of record activity a workflow listens for."""

    RECORD_CREATE = "record_create"
    RECORD_UPDATE = "record_update"
    FIELD_CHANGE = "field_change"
    STAGE_CHANGE = "stage_change"
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    FORM_SUBMIT = "form_submit"
    PAYMENT_RECEIVED = "payment_received"


class EventKind(str, Enum):
    """Normalized kind of a record event."""

    CREATE = "create"
    UPDATE = "update"
    FIELD_CHANGE = "field_change"
    STAGE_CHANGE = "stage_change"


# Event names emitted by upstream record services that map onto EventKind.
EVENT_KIND_ALIASES: Dict[str, str] = {
    "record_create": "create",
    "record_update": "update",
    "activity_scheduled": "create",
    "activity_completed": "update",
}


class MatchType(str, Enum):
    """How a list of conditions is combined."""

    ALL = "all"
    ANY = "any"


class ReentryMode(str, Enum):
    """Whether a record may start the same workflow more than once."""

    ALLOW_ALL = "allow_all"
    NO_REENTRY = "no_reentry"
    AFTER_EXIT = "after_exit"
    AFTER_WAIT_DAYS = "after_wait_days"


REENTRY_MODE_ALIASES: Dict[str, str] = {
    "reentry_after_exit": "after_exit",
    "reentry_after_days": "after_wait_days",
    "once_only": "no_reentry",
    "wait_period": "after_wait_days",
}


class StepType(str, Enum):
    """Kinds of nodes a workflow graph can contain."""

    TRIGGER = "trigger"
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CREATE_TASK = "create_task"
    UPDATE_FIELD = "update_field"
    WAIT = "wait"
    DECISION = "decision"
    WEBHOOK = "webhook"
    END = "end"


class ExecutionStatus(str, Enum):
    """Workflow execution states."""

    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StepExecutionStatus(str, Enum):
    """Individual step execution states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ConditionOperator(str, Enum):
    """Operators understood by the decision evaluator."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    IN_LIST = "in_list"
    NOT_IN_LIST = "not_in_list"


# ---------------------------------------------------------------------------
# Conditions and criteria
# ---------------------------------------------------------------------------


class Condition(BaseModel):
    """A single field/operator/value test against a record snapshot."""

    field: str = Field(..., min_length=1)
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None


class EntryCriteria(BaseModel):
    """Filter a record must pass before it may enter a workflow."""

    conditions: List[Condition] = Field(default_factory=list)
    match_type: MatchType = MatchType.ALL


class ConditionGroup(BaseModel):
    """A group of conditions combined by its own match type."""

    conditions: List[Condition] = Field(default_factory=list)
    match_type: MatchType = MatchType.ALL


class DecisionBranch(BaseModel):
    """Named outcome of an advanced decision step."""

    id: str = Field(default_factory=_new_id)
    label: Optional[str] = None
    condition_groups: List[ConditionGroup] = Field(default_factory=list)
    match_type: MatchType = MatchType.ALL
    next_step_key: Optional[str] = None


class StepBranch(BaseModel):
    """Branch of a simple decision: ``condition`` is ``"true"`` or ``"false"``."""

    condition: str
    next_step_key: Optional[str] = None


class TriggerConfig(BaseModel):
    """Trigger-specific filter, e.g. which field must change and to what."""

    field: Optional[str] = None
    from_value: Optional[str] = None
    to_value: Optional[str] = None
    schedule: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Step configuration, one variant per step type
# ---------------------------------------------------------------------------


class TriggerStepConfig(BaseModel):
    type: Literal["trigger"] = "trigger"


class SendEmailStepConfig(BaseModel):
    type: Literal["send_email"] = "send_email"
    to_type: Literal["client", "admin", "custom"] = "client"
    to_email: Optional[str] = None
    to_field: Optional[str] = None
    fallback_field: str = "email"
    subject: Optional[str] = None
    body: Optional[str] = None
    template_id: Optional[str] = None
    template_name: Optional[str] = None


class SendSmsStepConfig(BaseModel):
    type: Literal["send_sms"] = "send_sms"
    to_phone: Optional[str] = None
    to_field: Optional[str] = None
    fallback_field: str = "phone"
    body: Optional[str] = None
    # Record field holding the opt-in flag; falls back to the service setting.
    consent_field: Optional[str] = None
    require_consent: bool = True


class CreateTaskStepConfig(BaseModel):
    type: Literal["create_task"] = "create_task"
    title: str = "Action item from workflow"
    action_type: str = "custom"
    description: Optional[str] = None
    assigned_to: Optional[str] = None
    priority: Optional[int] = None
    due_days: Optional[int] = Field(None, ge=0)


class UpdateFieldStepConfig(BaseModel):
    type: Literal["update_field"] = "update_field"
    field: Optional[str] = None
    value: Any = None


class WaitStepConfig(BaseModel):
    type: Literal["wait"] = "wait"
    wait_days: Optional[float] = Field(None, ge=0)
    wait_hours: Optional[float] = Field(None, ge=0)
    wait_until_field: Optional[str] = None


class DecisionStepConfig(BaseModel):
    type: Literal["decision"] = "decision"
    decision_mode: Literal["simple", "advanced"] = "simple"
    condition_field: Optional[str] = None
    condition_operator: ConditionOperator = ConditionOperator.EQUALS
    condition_value: Any = None
    decision_branches: List[DecisionBranch] = Field(default_factory=list)
    default_next_step_key: Optional[str] = None
    default_branch_label: str = "default"


class WebhookStepConfig(BaseModel):
    type: Literal["webhook"] = "webhook"
    url: Optional[str] = None
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None


class EndStepConfig(BaseModel):
    type: Literal["end"] = "end"


StepConfig = Annotated[
    Union[
        TriggerStepConfig,
        SendEmailStepConfig,
        SendSmsStepConfig,
        CreateTaskStepConfig,
        UpdateFieldStepConfig,
        WaitStepConfig,
        DecisionStepConfig,
        WebhookStepConfig,
        EndStepConfig,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


class WorkflowStep(BaseModel):
    """One node of a workflow graph, addressed by ``step_key``."""

    id: str = Field(default_factory=_new_id)
    step_key: str = Field(..., min_length=1)
    step_type: StepType
    step_order: int = 0
    config: StepConfig
    condition: Optional[Condition] = None
    branches: List[StepBranch] = Field(default_factory=list)
    next_step_key: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def fill_config_type(cls, data: Any) -> Any:
        """Let callers omit ``config`` or its ``type`` tag."""
        if isinstance(data, dict) and data.get("step_type") is not None:
            step_type = data["step_type"]
            step_type = step_type.value if isinstance(step_type, StepType) else step_type
            config = data.get("config")
            if config is None:
                data = {**data, "config": {"type": step_type}}
            elif isinstance(config, dict) and "type" not in config:
                data = {**data, "config": {**config, "type": step_type}}
        return data

    @model_validator(mode="after")
    def check_config_matches_type(self) -> "WorkflowStep":
        if self.config.type != self.step_type.value:
            raise ValueError(
                f"Step '{self.step_key}' config type '{self.config.type}' "
                f"does not match step type '{self.step_type.value}'"
            )
        return self


class WorkflowDefinition(BaseModel):
    """Operator-authored automation: trigger, entry filter, steps."""

    id: str = Field(default_factory=_new_id)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    version: int = Field(default=1, ge=1)
    object_type: str = Field(..., min_length=1)
    trigger_type: TriggerType
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    entry_criteria: EntryCriteria = Field(default_factory=EntryCriteria)
    reentry_mode: ReentryMode = ReentryMode.ALLOW_ALL
    reentry_wait_days: Optional[int] = Field(None, ge=0)
    is_active: bool = True
    evaluation_order: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    steps: List[WorkflowStep] = Field(default_factory=list)

    @field_validator("object_type")
    @classmethod
    def normalize_object_type(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("reentry_mode", mode="before")
    @classmethod
    def normalize_reentry_mode(cls, v: Any) -> Any:
        if isinstance(v, str):
            return REENTRY_MODE_ALIASES.get(v, v)
        return v

    @field_validator("steps")
    @classmethod
    def validate_unique_step_keys(cls, v: List[WorkflowStep]) -> List[WorkflowStep]:
        """Step keys are pointers, so they must be unique within a workflow."""
        seen = set()
        for step in v:
            if step.step_key in seen:
                raise ValueError(f"Duplicate step key: {step.step_key}")
            seen.add(step.step_key)
        return v

    def get_step(self, step_key: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step_key == step_key:
                return step
        return None


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------


class ExecutionContext(BaseModel):
    """Data threaded through a running execution."""

    model_config = ConfigDict(extra="allow")

    trigger_type: str
    triggered_at: datetime = Field(default_factory=utcnow)
    record_data: Dict[str, Any] = Field(default_factory=dict)
    event_kind: Optional[str] = None
    changed_fields: List[str] = Field(default_factory=list)
    previous_values: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: Optional[str] = None
    step_results: Dict[str, Any] = Field(default_factory=dict)


class WorkflowExecution(BaseModel):
    """One run of a workflow against one record."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    workflow_version: int = 1
    record_type: str
    record_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_step_key: Optional[str] = "trigger"
    context: ExecutionContext
    error_message: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    retry_of: Optional[str] = None
    step_count: int = Field(default=0, ge=0)

    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    waiting_for: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class WorkflowStepExecution(BaseModel):
    """Audit row for one attempt at one step."""

    id: str = Field(default_factory=_new_id)
    execution_id: str
    step_id: str
    step_key: str
    step_type: StepType
    status: StepExecutionStatus = StepExecutionStatus.PENDING
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class StepResult(BaseModel):
    """What a step executor hands back to the engine."""

    success: bool
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    next_step_key: Optional[str] = None
    skipped: bool = False


class ReentryDecision(BaseModel):
    """Outcome of a re-entry check. A denial is not an error."""

    allowed: bool
    reason: Optional[str] = None
    permitted_at: Optional[datetime] = None


class RecordEvent(BaseModel):
    """Normalized business-record event emitted by the record services."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    object_type: str
    event_kind: EventKind
    record: Dict[str, Any]
    record_id: Optional[str] = None
    previous_values: Dict[str, Any] = Field(default_factory=dict)
    changed_fields: List[str] = Field(default_factory=list)
    triggered_by: Optional[str] = None

    @field_validator("object_type")
    @classmethod
    def normalize_object_type(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("event_kind", mode="before")
    @classmethod
    def normalize_event_kind(cls, v: Any) -> Any:
        if isinstance(v, str):
            return EVENT_KIND_ALIASES.get(v, v)
        return v

    @model_validator(mode="after")
    def fill_record_id(self) -> "RecordEvent":
        if self.record_id is None and self.record.get("id") is not None:
            self.record_id = str(self.record["id"])
        if not self.record_id:
            raise ValueError("Record event requires a record id")
        return self


class RecordIntent(BaseModel):
    """A side effect the engine asks the record owner to apply."""

    id: str = Field(default_factory=_new_id)
    kind: Literal["create_task", "update_field"]
    execution_id: str
    step_key: str
    record_type: str
    record_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class NotificationResult(BaseModel):
    """Outcome reported by a notification sender."""

    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class ValidationReport(BaseModel):
    """Static checks over a workflow graph."""

    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class StepStats(BaseModel):
    """Outcome counts for one step across a workflow's executions."""

    step_key: str
    step_type: StepType
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class WorkflowStats(BaseModel):
    """Run analytics for one workflow, derived from its executions."""

    workflow_id: str
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    status_counts: Dict[ExecutionStatus, int] = Field(default_factory=dict)
    # Percentage of finished runs (completed + failed) that completed.
    success_rate: int = 0
    average_duration_seconds: Optional[float] = None
    steps: List[StepStats] = Field(default_factory=list)
    errors: Dict[str, int] = Field(default_factory=dict)


class WorkflowTemplate(BaseModel):
    """Starter workflow an operator can copy into an inactive definition."""

    id: str
    name: str
    description: Optional[str] = None
    category: str = "general"
    object_type: str
    trigger_type: TriggerType
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    steps: List[WorkflowStep] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class WorkflowCreateRequest(BaseModel):
    """API request for registering a workflow definition."""

    definition: Union[Dict[str, Any], str] = Field(
        ..., description="YAML/JSON workflow definition"
    )


class WorkflowActivateRequest(BaseModel):
    is_active: bool


class WorkflowCopyRequest(BaseModel):
    """Optional overrides when duplicating a workflow or instantiating a template."""

    id: Optional[str] = None
    name: Optional[str] = Field(None, min_length=1, max_length=255)


class ManualTriggerRequest(BaseModel):
    """API request for starting a workflow by hand for one record."""

    record_type: Optional[str] = None
    record: Dict[str, Any]
    triggered_by: Optional[str] = None


class EventIngestResponse(BaseModel):
    execution_ids: List[str]


class SchedulerTickRequest(BaseModel):
    now: Optional[datetime] = None

    @field_validator("now")
    @classmethod
    def normalize_now(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None



class SchedulerTickResponse(BaseModel):
    processed: int


class ExecutionStatusResponse(BaseModel):
    """API response for workflow execution status."""

    execution_id: str
    workflow_id: str
    record_type: str
    record_id: str
    status: ExecutionStatus
    current_step_key: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    elapsed_seconds: Optional[float]
    steps_completed: int
    next_run_at: Optional[datetime] = None
    waiting_for: Optional[str] = None
    retry_count: int = 0
    retry_of: Optional[str] = None
    error_message: Optional[str] = None

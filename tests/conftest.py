"""Local test configuration for the workflow automation service."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# -- Path management ------------------------------------------------------
# The service uses a classic ``app/`` package layout instead of the ``src/``
# layout that editable installs automatically expose on ``sys.path``. When
# pytest spins up in a clean environment the repository root is *not* present
# on ``sys.path`` which makes ``import app`` fail before our fixtures run.
SERVICE_ROOT = Path(__file__).resolve().parent.parent
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

from app.config import WorkflowSettings
from app.main import create_app
from app.models.workflow import RecordEvent, WorkflowDefinition
from app.routers import workflows as workflows_router
from app.workflows.engine import WorkflowEngine
from app.workflows.notifications import InMemoryIntentSink, LoggingNotificationSender
from app.workflows.store import InMemoryExecutionStore

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable ``now`` for the engine and executors."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def test_settings() -> WorkflowSettings:
    """Provide test-specific settings."""
    return WorkflowSettings(
        app_name="crm-workflow-engine-test",
        cors_origins=["http://localhost:3000", "http://localhost:8000"],
        store_backend="memory",
        max_step_transitions=25,
        webhook_retry_attempts=2,
        scheduler_enabled=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def sender() -> LoggingNotificationSender:
    return LoggingNotificationSender()


@pytest.fixture
def intents() -> InMemoryIntentSink:
    return InMemoryIntentSink()


@pytest.fixture
def engine(store, sender, intents, test_settings, clock) -> WorkflowEngine:
    """Engine wired to in-memory collaborators and a fake clock."""
    return WorkflowEngine(
        store, sender=sender, intents=intents, settings=test_settings, clock=clock
    )


@pytest.fixture
def app(test_settings, engine):
    """Create FastAPI app with test settings and the test engine installed."""
    workflows_router.set_workflow_engine(engine)
    yield create_app(test_settings)
    workflows_router.set_workflow_engine(None)


@pytest.fixture
def client(app):
    """Provide TestClient for the workflow service."""
    return TestClient(app)


@pytest.fixture
def client_welcome_workflow() -> WorkflowDefinition:
    """Lead becomes a client: send a welcome email and finish."""
    return WorkflowDefinition.model_validate(
        {
            "id": "wf-client-welcome",
            "name": "Client welcome",
            "object_type": "lead",
            "trigger_type": "field_change",
            "entry_criteria": {
                "match_type": "all",
                "conditions": [{"field": "status", "operator": "equals", "value": "client"}],
            },
            "steps": [
                {"step_key": "trigger", "step_type": "trigger", "next_step_key": "welcome"},
                {
                    "step_key": "welcome",
                    "step_type": "send_email",
                    "config": {
                        "subject": "Welcome aboard, {{first_name}}",
                        "body": "Hi {{first_name}}, thanks for choosing us.",
                    },
                    "next_step_key": "end",
                },
                {"step_key": "end", "step_type": "end"},
            ],
        }
    )


@pytest.fixture
def client_event() -> RecordEvent:
    return RecordEvent.model_validate(
        {
            "objectType": "lead",
            "eventKind": "field_change",
            "record": {
                "id": "L1",
                "status": "client",
                "first_name": "Ada",
                "email": "ada@example.com",
            },
            "changedFields": ["status"],
            "previousValues": {"status": "contacted"},
        }
    )


def make_workflow(steps, **overrides) -> WorkflowDefinition:
    """Build an active lead workflow on record_create with the given steps."""
    data = {
        "name": "Test workflow",
        "object_type": "lead",
        "trigger_type": "record_create",
        "steps": steps,
    }
    data.update(overrides)
    return WorkflowDefinition.model_validate(data)


def lead_created(record_id: str = "L1", **fields) -> RecordEvent:
    record = {"id": record_id, "email": f"{record_id.lower()}@example.com"}
    record.update(fields)
    return RecordEvent(object_type="lead", event_kind="create", record=record)

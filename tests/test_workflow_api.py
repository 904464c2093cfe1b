"""Tests for workflow API endpoints."""

from datetime import timedelta

import pytest
import pytest_asyncio
from fastapi import status
from httpx import ASGITransport, AsyncClient

from conftest import START

PREFIX = "/api/v1/workflows"

WORKFLOW_YAML = """
id: wf-yaml
name: Nurture new leads
object_type: lead
trigger_type: record_create
reentry_mode: no_reentry
steps:
  - step_key: trigger
    step_type: trigger
    next_step_key: pause
  - step_key: pause
    step_type: wait
    config:
      wait_days: 2
    next_step_key: nudge
  - step_key: nudge
    step_type: send_email
    config:
      subject: "Hi {{first_name}}"
      body: "Any questions?"
    next_step_key: end
  - step_key: end
    step_type: end
"""


@pytest.fixture
def workflow_definition_dict(client_welcome_workflow):
    """Sample workflow definition as dictionary."""
    return client_welcome_workflow.model_dump(mode="json")


@pytest_asyncio.fixture
async def api(app):
    """Create async test client bound to the app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


def _event_payload(record_id="L1", **fields):
    record = {"id": record_id, "email": "ada@example.com", "first_name": "Ada"}
    record.update(fields)
    return {"objectType": "lead", "eventKind": "create", "record": record}


@pytest.mark.integration
@pytest.mark.asyncio
class TestDefinitionsAPI:
    async def test_create_workflow_from_json(self, api, workflow_definition_dict):
        response = await api.post(
            f"{PREFIX}/definitions", json={"definition": workflow_definition_dict}
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["id"] == "wf-client-welcome"

        listed = await api.get(f"{PREFIX}/definitions")
        assert [w["id"] for w in listed.json()] == ["wf-client-welcome"]

    async def test_create_workflow_from_yaml(self, api):
        response = await api.post(f"{PREFIX}/definitions", json={"definition": WORKFLOW_YAML})

        assert response.status_code == status.HTTP_201_CREATED
        payload = response.json()
        assert payload["reentry_mode"] == "no_reentry"
        assert payload["steps"][1]["config"] == {
            "type": "wait",
            "wait_days": 2.0,
            "wait_hours": None,
            "wait_until_field": None,
        }

    async def test_create_workflow_invalid(self, api):
        duplicate_keys = {
            "name": "Broken",
            "object_type": "lead",
            "trigger_type": "record_create",
            "steps": [
                {"step_key": "trigger", "step_type": "trigger"},
                {"step_key": "trigger", "step_type": "end"},
            ],
        }
        response = await api.post(f"{PREFIX}/definitions", json={"definition": duplicate_keys})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Duplicate step key" in response.json()["detail"]

        response = await api.post(f"{PREFIX}/definitions", json={"definition": "- just a list"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_get_workflow_not_found(self, api):
        response = await api.get(f"{PREFIX}/definitions/missing")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"] == "Workflow not found: missing"

    async def test_validate_workflow(self, api, workflow_definition_dict):
        workflow_definition_dict["is_active"] = False
        workflow_definition_dict["steps"][1]["next_step_key"] = "nowhere"
        await api.post(f"{PREFIX}/definitions", json={"definition": workflow_definition_dict})

        response = await api.post(f"{PREFIX}/definitions/wf-client-welcome/validate")

        assert response.status_code == status.HTTP_200_OK
        report = response.json()
        assert report["is_valid"] is False
        assert "Step 'welcome' references unknown step 'nowhere'" in report["errors"]

    async def test_activation_requires_valid_graph(self, api, workflow_definition_dict):
        workflow_definition_dict["is_active"] = False
        workflow_definition_dict["steps"][0]["next_step_key"] = None
        await api.post(f"{PREFIX}/definitions", json={"definition": workflow_definition_dict})

        response = await api.post(
            f"{PREFIX}/definitions/wf-client-welcome/active", json={"is_active": True}
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

        response = await api.post(
            f"{PREFIX}/definitions/wf-client-welcome/active", json={"is_active": False}
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["is_active"] is False

    async def test_create_active_workflow_requires_valid_graph(
        self, api, workflow_definition_dict
    ):
        workflow_definition_dict["steps"][1]["next_step_key"] = "nowhere"

        response = await api.post(
            f"{PREFIX}/definitions", json={"definition": workflow_definition_dict}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        detail = response.json()["detail"]
        assert detail["message"] == "Workflow is not valid"
        assert "Step 'welcome' references unknown step 'nowhere'" in detail["errors"]
        missing = await api.get(f"{PREFIX}/definitions/wf-client-welcome")
        assert missing.status_code == status.HTTP_404_NOT_FOUND

    async def test_same_version_conflicts(self, api, workflow_definition_dict):
        first = await api.post(
            f"{PREFIX}/definitions", json={"definition": workflow_definition_dict}
        )
        assert first.status_code == status.HTTP_201_CREATED

        workflow_definition_dict["name"] = "Client welcome v2"
        again = await api.post(
            f"{PREFIX}/definitions", json={"definition": workflow_definition_dict}
        )
        assert again.status_code == status.HTTP_409_CONFLICT

        workflow_definition_dict["version"] = 2
        bumped = await api.post(
            f"{PREFIX}/definitions", json={"definition": workflow_definition_dict}
        )
        assert bumped.status_code == status.HTTP_201_CREATED
        latest = (await api.get(f"{PREFIX}/definitions/wf-client-welcome")).json()
        assert (latest["name"], latest["version"]) == ("Client welcome v2", 2)

    async def test_duplicate_workflow(self, api, workflow_definition_dict):
        await api.post(f"{PREFIX}/definitions", json={"definition": workflow_definition_dict})

        response = await api.post(f"{PREFIX}/definitions/wf-client-welcome/duplicate")
        assert response.status_code == status.HTTP_201_CREATED
        copy = response.json()
        assert copy["name"] == "Client welcome (Copy)"
        assert copy["is_active"] is False

        named = await api.post(
            f"{PREFIX}/definitions/wf-client-welcome/duplicate",
            json={"id": "wf-copy", "name": "Second copy"},
        )
        assert named.json()["id"] == "wf-copy"
        clash = await api.post(
            f"{PREFIX}/definitions/wf-client-welcome/duplicate", json={"id": "wf-copy"}
        )
        assert clash.status_code == status.HTTP_409_CONFLICT
        missing = await api.post(f"{PREFIX}/definitions/missing/duplicate")
        assert missing.status_code == status.HTTP_404_NOT_FOUND

    async def test_workflow_stats(self, api, workflow_definition_dict):
        await api.post(f"{PREFIX}/definitions", json={"definition": workflow_definition_dict})
        await api.post(
            f"{PREFIX}/definitions/wf-client-welcome/trigger",
            json={"record": {"id": "L9", "email": "grace@example.com"}},
        )

        response = await api.get(f"{PREFIX}/definitions/wf-client-welcome/stats")

        assert response.status_code == status.HTTP_200_OK
        stats = response.json()
        assert stats["execution_count"] == 1
        assert stats["status_counts"]["completed"] == 1
        assert stats["success_rate"] == 100
        assert stats["steps"] == [
            {
                "step_key": "welcome",
                "step_type": "send_email",
                "total": 1,
                "completed": 1,
                "failed": 0,
                "skipped": 0,
            }
        ]
        missing = await api.get(f"{PREFIX}/definitions/missing/stats")
        assert missing.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.integration
@pytest.mark.asyncio
class TestTemplatesAPI:
    async def test_list_templates(self, api):
        response = await api.get(f"{PREFIX}/templates")

        assert response.status_code == status.HTTP_200_OK
        templates = response.json()
        assert "new-lead-welcome" in [t["id"] for t in templates]
        categories = [t["category"] for t in templates]
        assert categories == sorted(categories)

    async def test_instantiate_template(self, api):
        response = await api.post(
            f"{PREFIX}/templates/new-lead-welcome/instantiate", json={"id": "wf-welcome"}
        )

        assert response.status_code == status.HTTP_201_CREATED
        workflow = response.json()
        assert workflow["id"] == "wf-welcome"
        assert workflow["name"] == "New Lead Welcome Email"
        assert workflow["is_active"] is False

        activated = await api.post(
            f"{PREFIX}/definitions/wf-welcome/active", json={"is_active": True}
        )
        assert activated.status_code == status.HTTP_200_OK

        events = await api.post(f"{PREFIX}/events", json=_event_payload())
        assert len(events.json()["execution_ids"]) == 1

    async def test_instantiate_unknown_template(self, api):
        response = await api.post(f"{PREFIX}/templates/missing/instantiate")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"] == "Workflow template not found: missing"


@pytest.mark.integration
@pytest.mark.asyncio
class TestExecutionsAPI:
    async def test_event_wait_tick_and_status(self, api, sender):
        await api.post(f"{PREFIX}/definitions", json={"definition": WORKFLOW_YAML})

        response = await api.post(f"{PREFIX}/events", json=_event_payload())
        assert response.status_code == status.HTTP_202_ACCEPTED
        [execution_id] = response.json()["execution_ids"]

        execution = (await api.get(f"{PREFIX}/executions/{execution_id}")).json()
        assert execution["status"] == "waiting"
        assert execution["current_step_key"] == "nudge"
        assert execution["steps_completed"] == 2

        early = await api.post(
            f"{PREFIX}/scheduler/tick",
            json={"now": (START + timedelta(days=1)).isoformat()},
        )
        assert early.json() == {"processed": 0}

        due = await api.post(
            f"{PREFIX}/scheduler/tick",
            json={"now": (START + timedelta(days=2)).isoformat()},
        )
        assert due.json() == {"processed": 1}

        execution = (await api.get(f"{PREFIX}/executions/{execution_id}")).json()
        assert execution["status"] == "completed"
        assert sender.sent[0]["subject"] == "Hi Ada"

        steps = (await api.get(f"{PREFIX}/executions/{execution_id}/steps")).json()
        assert [s["step_key"] for s in steps] == ["trigger", "pause", "nudge"]

    async def test_tick_accepts_naive_timestamp(self, api):
        await api.post(f"{PREFIX}/definitions", json={"definition": WORKFLOW_YAML})
        [execution_id] = (await api.post(f"{PREFIX}/events", json=_event_payload())).json()[
            "execution_ids"
        ]

        response = await api.post(f"{PREFIX}/scheduler/tick", json={"now": "2024-03-03T09:00:00"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"processed": 1}
        execution = (await api.get(f"{PREFIX}/executions/{execution_id}")).json()
        assert execution["status"] == "completed"

    async def test_second_event_denied_by_reentry(self, api):
        await api.post(f"{PREFIX}/definitions", json={"definition": WORKFLOW_YAML})

        await api.post(f"{PREFIX}/events", json=_event_payload())
        response = await api.post(f"{PREFIX}/events", json=_event_payload())

        assert response.json() == {"execution_ids": []}

    async def test_event_requires_record_id(self, api):
        payload = {"objectType": "lead", "eventKind": "create", "record": {"status": "new"}}
        response = await api.post(f"{PREFIX}/events", json=payload)
        assert response.status_code == 422

    async def test_list_executions_filters(self, api):
        await api.post(f"{PREFIX}/definitions", json={"definition": WORKFLOW_YAML})
        await api.post(f"{PREFIX}/events", json=_event_payload("L1"))
        await api.post(f"{PREFIX}/events", json=_event_payload("L2"))

        everything = (await api.get(f"{PREFIX}/executions")).json()
        assert everything["total"] == 2

        one = (await api.get(f"{PREFIX}/executions", params={"record_id": "L2"})).json()
        assert [e["record_id"] for e in one["executions"]] == ["L2"]

        none = (await api.get(f"{PREFIX}/executions", params={"status": "completed"})).json()
        assert none["total"] == 0

    async def test_cancel_execution(self, api):
        await api.post(f"{PREFIX}/definitions", json={"definition": WORKFLOW_YAML})
        [execution_id] = (await api.post(f"{PREFIX}/events", json=_event_payload())).json()[
            "execution_ids"
        ]

        response = await api.post(f"{PREFIX}/executions/{execution_id}/cancel")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "cancelled"

        again = await api.post(f"{PREFIX}/executions/{execution_id}/cancel")
        assert again.status_code == status.HTTP_400_BAD_REQUEST

    async def test_retry_execution(self, api):
        await api.post(f"{PREFIX}/definitions", json={"definition": WORKFLOW_YAML})
        [execution_id] = (await api.post(f"{PREFIX}/events", json=_event_payload())).json()[
            "execution_ids"
        ]

        not_failed = await api.post(f"{PREFIX}/executions/{execution_id}/retry")
        assert not_failed.status_code == status.HTTP_400_BAD_REQUEST

        await api.post(f"{PREFIX}/executions/{execution_id}/cancel")
        response = await api.post(f"{PREFIX}/executions/{execution_id}/retry")

        assert response.status_code == status.HTTP_201_CREATED
        retry = response.json()
        assert retry["retry_of"] == execution_id
        assert retry["retry_count"] == 1
        assert retry["execution_id"] != execution_id

    async def test_unknown_execution(self, api):
        assert (await api.get(f"{PREFIX}/executions/missing")).status_code == 404
        assert (await api.get(f"{PREFIX}/executions/missing/steps")).status_code == 404
        assert (await api.post(f"{PREFIX}/executions/missing/retry")).status_code == 404

    async def test_manual_trigger(self, api, workflow_definition_dict):
        await api.post(f"{PREFIX}/definitions", json={"definition": workflow_definition_dict})

        response = await api.post(
            f"{PREFIX}/definitions/wf-client-welcome/trigger",
            json={"record": {"id": "L9", "email": "grace@example.com"}, "triggered_by": "u-1"},
        )

        assert response.status_code == status.HTTP_201_CREATED
        payload = response.json()
        assert payload["status"] == "completed"
        assert payload["record_id"] == "L9"
        assert payload["steps_completed"] == 2

    async def test_manual_trigger_unknown_workflow(self, api):
        response = await api.post(
            f"{PREFIX}/definitions/missing/trigger", json={"record": {"id": "L1"}}
        )
        assert response.status_code == status.HTTP_404_NOT_FOUND

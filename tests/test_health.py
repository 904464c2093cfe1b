"""Health endpoint and application factory checks for the workflow service."""

from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.main import create_app


def test_creates_fastapi_instance(test_settings) -> None:
    app = create_app(test_settings)
    assert isinstance(app, FastAPI)
    assert app.title == test_settings.app_name


def test_health_returns_service_status(client, test_settings) -> None:
    """/health should surface the service identifier and store backend."""

    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["service"] == test_settings.app_name
    assert payload["status"] == "ok"
    assert payload["store"] == "memory"


def test_readiness_endpoint(client) -> None:
    response = client.get("/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["scheduler_enabled"] is False


def test_metrics_endpoint(client) -> None:
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "durable_waits" in response.json()["capabilities"]


def test_cors_headers(client) -> None:
    response = client.options(
        "/health",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


@pytest.mark.integration
def test_lifespan_runs_scheduler_when_enabled(engine, test_settings) -> None:
    from app.routers import workflows as workflows_router

    settings = test_settings.model_copy(
        update={"scheduler_enabled": True, "scheduler_interval_seconds": 3600}
    )
    workflows_router.set_workflow_engine(engine)
    try:
        app = create_app(settings)
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            assert app.state.scheduler is not None
            assert app.state.scheduler.is_running
        assert not app.state.scheduler.is_running
    finally:
        workflows_router.set_workflow_engine(None)


def test_main_serves_app_on_configured_address(test_settings) -> None:
    from app.__main__ import main

    settings = test_settings.model_copy(update={"api_host": "0.0.0.0", "api_port": 9000})
    with (
        patch("app.__main__.get_settings", return_value=settings),
        patch("uvicorn.run") as mock_uvicorn_run,
    ):
        main()

    mock_uvicorn_run.assert_called_once_with(
        "app.main:app", host="0.0.0.0", port=9000, log_level="info"
    )

"""FastAPI entry point for the CRM workflow automation service."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .config import WorkflowSettings, get_settings
from .routers import workflows
from .workflows.scheduler import WorkflowScheduler


def create_app(settings: Optional[WorkflowSettings] = None) -> FastAPI:
    """Create a FastAPI application serving the workflow engine."""

    resolved_settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine = workflows.get_workflow_engine(resolved_settings)
        await engine.store.connect()
        scheduler: Optional[WorkflowScheduler] = None
        if resolved_settings.scheduler_enabled:
            scheduler = WorkflowScheduler(
                engine, resolved_settings.scheduler_interval_seconds
            )
            scheduler.start()
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            if scheduler:
                await scheduler.stop()
            await engine.store.disconnect()
            logger.info(f"{resolved_settings.app_name} shut down")

    app = FastAPI(title=resolved_settings.app_name, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=resolved_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(workflows.router)

    @app.get("/health", tags=["health"])
    def health_check() -> Dict[str, Optional[str]]:
        """Report service status and the configured execution store."""

        return {
            "status": "ok",
            "service": resolved_settings.app_name,
            "store": resolved_settings.store_backend,
        }

    @app.get("/ready", tags=["health"])
    def readiness_check() -> Dict[str, object]:
        """Readiness check endpoint for Kubernetes."""

        return {
            "status": "ready",
            "service": resolved_settings.app_name,
            "store_backend": resolved_settings.store_backend,
            "scheduler_enabled": resolved_settings.scheduler_enabled,
        }

    @app.get("/metrics", tags=["monitoring"])
    def metrics() -> Dict[str, object]:
        """Basic metrics endpoint."""

        return {
            "service": resolved_settings.app_name,
            "version": "0.1.0",
            "capabilities": [
                "event_matching",
                "reentry_control",
                "decision_branching",
                "durable_waits",
                "webhooks",
            ],
        }

    return app


app = create_app()

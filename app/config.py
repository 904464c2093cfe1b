"""Configuration utilities for the workflow automation service."""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkflowSettings(BaseSettings):
    """Settings definition with inline documentation for future maintainers."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="WORKFLOW_",
        extra="ignore",
    )

    app_name: str = "crm-workflow-engine"
    cors_origins: List[str] = ["http://localhost:3000"]

    # Bind address for `python -m app` and the crm-workflow-engine script.
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Execution store backend. "memory" keeps state in-process (tests, demos).
    store_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"

    # Hard ceiling on step transitions per processing run; cyclic graphs
    # that never reach an end step fail instead of spinning forever.
    max_step_transitions: int = 100

    # Lease held by a worker while it processes one execution.
    claim_lease_seconds: int = 300
    worker_id: str = "worker-local"

    scheduler_enabled: bool = False
    scheduler_interval_seconds: float = 60.0

    webhook_timeout_seconds: float = 10.0
    webhook_retry_attempts: int = 3

    sms_consent_field: str = "sms_opt_in"

    # Recipient for send_email steps with to_type "admin".
    admin_email: Optional[str] = None


@lru_cache
def get_settings() -> WorkflowSettings:
    """Return cached WorkflowSettings to avoid repeated environment parsing."""

    return WorkflowSettings()

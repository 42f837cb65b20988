from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class SchedulerConfig(BaseModel):
    """Settings for the execution poller."""

    poll_interval_seconds: float = 30.0
    batch_size: int = Field(default=100, ge=1)
    worker_count: int = Field(default=1, ge=1)
    claim_timeout_seconds: float = 600.0
    max_steps_per_claim: int = Field(default=100, ge=1)


class RetryConfig(BaseModel):
    """Backoff policy for transient node errors."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = 60.0
    multiplier: float = 2.0
    max_delay_seconds: float = 3600.0


class SubWorkflowConfig(BaseModel):
    """Settings for ``call_sub_workflow`` nodes."""

    poll_interval_seconds: float = 60.0
    max_call_depth: int = Field(default=5, ge=1)
    # Applied when a sync call is configured with timeout_seconds = 0.
    # None keeps the "no timeout" behaviour.
    default_timeout_seconds: Optional[int] = None


class EnrollflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    services_factory: Optional[str] = None
    max_enroll_batch: int = 1000
    scheduler: SchedulerConfig = SchedulerConfig()
    retry: RetryConfig = RetryConfig()
    sub_workflows: SubWorkflowConfig = SubWorkflowConfig()


def load_config(path: Optional[str] = None) -> EnrollflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ENROLLFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("ENROLLFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = EnrollflowConfig(**data)
    else:
        config = EnrollflowConfig()

    env_db_url = os.getenv("ENROLLFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_services = os.getenv("ENROLLFLOW_SERVICES")
    if env_services:
        config.services_factory = env_services
    return config

import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    store_backend: Literal["memory", "orchestrator"] = "memory"
    orchestrator_url: str = "http://localhost:8000/api"
    orchestrator_timeout: int = Field(10, gt=0)

    poll_interval: int = Field(30, gt=0)
    worker_count: int = Field(4, gt=0)
    job_batch_size: int = Field(50, gt=0)

    max_steps: int = Field(100, gt=0)
    max_runtime_minutes: int = Field(30, gt=0)
    max_steps_per_drive: int = Field(25, gt=0)

    max_job_attempts: int = Field(5, gt=0)
    retry_base_seconds: float = Field(60.0, gt=0)
    retry_max_seconds: float = Field(3600.0, gt=0)
    claim_lease_seconds: int = Field(900, gt=0)

    default_dedupe_window_minutes: int = Field(60, gt=0)

    log_level: str = "INFO"
    log_file: str = "automation.log"


_ENV_NAMES = {
    "store_backend": "STORE_BACKEND",
    "orchestrator_url": "ORCHESTRATOR_URL",
    "orchestrator_timeout": "ORCHESTRATOR_TIMEOUT",
    "poll_interval": "POLL_INTERVAL",
    "worker_count": "WORKER_COUNT",
    "job_batch_size": "JOB_BATCH_SIZE",
    "max_steps": "MAX_STEPS",
    "max_runtime_minutes": "MAX_RUNTIME_MINUTES",
    "max_steps_per_drive": "MAX_STEPS_PER_DRIVE",
    "max_job_attempts": "MAX_JOB_ATTEMPTS",
    "retry_base_seconds": "RETRY_BASE_SECONDS",
    "retry_max_seconds": "RETRY_MAX_SECONDS",
    "claim_lease_seconds": "CLAIM_LEASE_SECONDS",
    "default_dedupe_window_minutes": "DEFAULT_DEDUPE_WINDOW_MINUTES",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
}


def load_config() -> EngineConfig:
    """Builds the engine config from the environment (and .env, if present)."""
    load_dotenv()
    values = {field: os.getenv(env) for field, env in _ENV_NAMES.items() if os.getenv(env) not in (None, "")}
    return EngineConfig(**values)

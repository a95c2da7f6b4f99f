from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_CLAIM_TIMEOUT_SECONDS,
    DEFAULT_DISPATCH_PATH,
    DEFAULT_DISPATCH_TIMEOUT_SECONDS,
    DEFAULT_MAX_RUNS_PER_TICK,
    DEFAULT_TICK_INTERVAL_SECONDS,
)


class DispatchConfig(BaseModel):
    """Where and how executions are handed to the remote execution host."""

    agent_base_url: str = "http://localhost:8787"
    dispatch_path: str = DEFAULT_DISPATCH_PATH
    external_token: Optional[str] = None
    timeout_seconds: float = DEFAULT_DISPATCH_TIMEOUT_SECONDS


class SchedulerConfig(BaseModel):
    """Tick loop settings."""

    tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS
    max_runs_per_tick: int = DEFAULT_MAX_RUNS_PER_TICK
    claim_timeout_seconds: float = DEFAULT_CLAIM_TIMEOUT_SECONDS


class SecurityConfig(BaseModel):
    """Shared secrets for webhook callers and capability tokens."""

    webhook_token: Optional[str] = None
    capability_secret: Optional[str] = None
    token_issuer: str = "autoflow"
    token_audience: str = "autoflow-agent"
    # tokens never expire unless set; they are bound to one execution
    token_ttl_seconds: Optional[int] = None
    token_leeway_seconds: int = 30


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class AutoflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    dispatch: DispatchConfig = DispatchConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    security: SecurityConfig = SecurityConfig()
    server: ServerConfig = ServerConfig()


def load_config(path: Optional[str] = None) -> AutoflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to AUTOFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("AUTOFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AutoflowConfig(**data)
    else:
        config = AutoflowConfig()

    env_db_url = os.getenv("AUTOFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if agent_url := os.getenv("AUTOFLOW_AGENT_URL"):
        config.dispatch.agent_base_url = agent_url
    if external_token := os.getenv("AUTOFLOW_EXTERNAL_TOKEN"):
        config.dispatch.external_token = external_token
    if webhook_token := os.getenv("AUTOFLOW_WEBHOOK_TOKEN"):
        config.security.webhook_token = webhook_token
    if capability_secret := os.getenv("AUTOFLOW_CAPABILITY_SECRET"):
        config.security.capability_secret = capability_secret
    return config

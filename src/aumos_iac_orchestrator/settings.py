"""Service settings for aumos-iac-orchestrator.

All settings use the AUMOS_IAC_ prefix and cover:
- Remote state backend (SQLAlchemy URL, pool sizing)
- Environment locking (TTL, owner identity)
- Provider selection (aws | azure | gcp profiles)
- Pipeline approval policy and policy gate tuning
- Outbound notifier webhook
- Logging
"""

import os
import socket
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_lock_owner() -> str:
    """Build a lock owner identity unique to this process.

    Returns:
        A ``host:pid`` string.
    """
    return f"{socket.gethostname()}:{os.getpid()}"


class Settings(BaseSettings):
    """Settings for aumos-iac-orchestrator.

    Environment variable prefix: AUMOS_IAC_
    """

    service_name: str = "aumos-iac-orchestrator"
    version: str = "0.1.0"

    # -------------------------------------------------------------------------
    # Remote state backend: one snapshot row + one lock row per environment
    # -------------------------------------------------------------------------

    state_backend_url: str = Field(
        default="sqlite+aiosqlite:///./aumos-iac-state.db",
        description="SQLAlchemy async URL for the state backend, or 'memory://' for a "
        "process-local store. PostgreSQL deployments use postgresql+asyncpg://...",
    )
    state_db_pool_size: int = Field(
        default=5,
        description="Connection pool size for the state DB. Ignored for SQLite.",
    )
    state_db_max_overflow: int = Field(
        default=2,
        description="Max overflow connections above state_db_pool_size.",
    )
    state_db_pool_timeout: int = Field(
        default=30,
        description="Seconds to wait for a state DB connection before raising an error.",
    )

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    lock_ttl_seconds: int = Field(
        default=900,
        gt=0,
        description="Lifetime of an environment lock. Long applies renew the lock after "
        "every resource action.",
    )
    lock_owner: str = Field(
        default_factory=_default_lock_owner,
        description="Identity recorded on locks taken by this process.",
    )

    # -------------------------------------------------------------------------
    # Provider and apply behaviour
    # -------------------------------------------------------------------------

    provider: Literal["aws", "azure", "gcp"] = Field(
        default="aws",
        description="Provider profile used for resource descriptions and replacement rules.",
    )
    checkpoint_each_action: bool = Field(
        default=True,
        description="Persist the state snapshot after every completed resource action.",
    )
    executor_latency_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Simulated per-action latency of the built-in executor.",
    )

    # -------------------------------------------------------------------------
    # Pipeline approvals and policy gate
    # -------------------------------------------------------------------------

    required_approvals: int = Field(
        default=1,
        ge=1,
        description="Number of distinct human approvals needed before a gated apply.",
    )
    authorized_approvers: list[str] = Field(
        default_factory=list,
        description="Actors allowed to approve change requests. Empty means any actor "
        "other than the change author.",
    )
    policy_override_actors: list[str] = Field(
        default_factory=list,
        description="Actors allowed to override blocking policy findings.",
    )
    policy_severity_overrides: dict[str, Literal["info", "warning", "blocking"]] = Field(
        default_factory=dict,
        description="Per-rule severity overrides, e.g. {'storage.encryption-disabled': 'blocking'}.",
    )
    disabled_policy_rules: list[str] = Field(
        default_factory=list,
        description="Rule ids skipped by the policy gate.",
    )

    # -------------------------------------------------------------------------
    # Notifier (plan summaries, approval requests, apply results)
    # -------------------------------------------------------------------------

    notifier_webhook_url: str = Field(
        default="",
        description="Webhook receiving pipeline notifications. Leave empty to only log them.",
    )
    notifier_timeout_ms: int = Field(
        default=2000,
        description="Hard timeout for webhook delivery in milliseconds.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Root log level.")
    log_json: bool = Field(default=True, description="Render logs as JSON lines.")

    model_config = SettingsConfigDict(env_prefix="AUMOS_IAC_")

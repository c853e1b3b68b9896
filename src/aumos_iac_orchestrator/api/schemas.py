"""Pydantic request and response schemas for the orchestrator API.

All API inputs and outputs use Pydantic models, never raw dicts.
Schemas are grouped by resource type.

Resources:
- Environment: workspace registration, variables and state
- Plan: ad-hoc plan with policy findings
- CI events: pull-request-opened, new-commit, merge-to-main
- ChangeRequest: pipeline records, approvals, overrides, vetoes
- PolicyRule: active policy rules
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from aumos_iac_orchestrator.core.models import (
    ApplyResult,
    Environment,
    PlanDiff,
    PolicyFinding,
    ResourceDescriptor,
)
from aumos_iac_orchestrator.pipeline.records import ChangeRequest

# ---------------------------------------------------------------------------
# Environment schemas
# ---------------------------------------------------------------------------


class EnvironmentCreateRequest(BaseModel):
    """Request body for registering an environment."""

    name: str = Field(
        description="Unique environment name: lowercase letters, digits, '-' or '_'",
        min_length=1,
        max_length=63,
    )
    variables: dict[str, Any] = Field(
        default_factory=dict,
        description="Variable set referenced by resources as ${var.NAME}",
    )


class EnvironmentVariablesRequest(BaseModel):
    """Request body for replacing an environment's variable set."""

    variables: dict[str, Any] = Field(description="The complete new variable set")


class EnvironmentResponse(BaseModel):
    """Response schema for an environment."""

    name: str = Field(description="Environment name")
    variables: dict[str, Any] = Field(description="Current variable set")
    variables_revision: int = Field(description="Incremented on every variable change")
    variables_fingerprint: str = Field(description="SHA-256 fingerprint pinned by plans")
    state_location: str = Field(description="Where the environment's state is stored")
    state_version: int = Field(description="Current state snapshot version")
    lock_owner: str | None = Field(description="Owner of the active lock, if any")
    planned: bool = Field(description="Whether a plan exists for the current variable revision")
    created_at: datetime | None = Field(description="Registration time (UTC)")

    @classmethod
    def from_environment(cls, environment: Environment) -> "EnvironmentResponse":
        return cls(
            name=environment.name,
            variables=dict(environment.variables),
            variables_revision=environment.variables_revision,
            variables_fingerprint=environment.variables_fingerprint,
            state_location=environment.state.location,
            state_version=environment.state.version,
            lock_owner=environment.state.lock_owner,
            planned=environment.planned,
            created_at=environment.created_at,
        )


class ForceUnlockRequest(BaseModel):
    """Request body for removing a stuck environment lock."""

    actor: str = Field(min_length=1, description="Operator forcing the unlock")


class ForceUnlockResponse(BaseModel):
    environment: str
    removed: bool = Field(description="Whether a lock record was removed")


# ---------------------------------------------------------------------------
# Plan schemas
# ---------------------------------------------------------------------------


class PlanRequest(BaseModel):
    """Request body for an ad-hoc plan."""

    resources: list[ResourceDescriptor] = Field(
        default_factory=list,
        description="The full desired resource set",
    )


class PlanResponse(BaseModel):
    """A computed plan with its policy findings."""

    plan: PlanDiff
    summary: dict[str, int] = Field(description="Action counts by kind")
    findings: list[PolicyFinding]
    blocked: bool = Field(description="True when any finding is blocking")


# ---------------------------------------------------------------------------
# CI event schemas
# ---------------------------------------------------------------------------


class CIEventRequest(BaseModel):
    """CI event delivered by the source-control integration."""

    event_type: Literal["pull-request-opened", "new-commit", "merge-to-main"] = Field(
        description="Which CI event occurred",
    )
    change_request_id: str = Field(min_length=1, description="Pull request identifier")
    actor: str = Field(min_length=1, description="Author of the PR, commit pusher or merger")
    environment: str | None = Field(
        default=None,
        description="Target environment. Required for pull-request-opened.",
    )
    commit_sha: str = Field(default="", description="Commit the event refers to")
    title: str = Field(default="", description="Pull request title")
    resources: list[ResourceDescriptor] = Field(
        default_factory=list,
        description="Desired resources at the commit. Required for pull-request-opened and new-commit.",
    )


# ---------------------------------------------------------------------------
# Change request schemas
# ---------------------------------------------------------------------------


class ChangeRequestResponse(BaseModel):
    """Response schema for a change request."""

    change_request_id: str
    environment: str
    author: str
    commit_sha: str
    title: str
    stage: str = Field(description="proposed | planned | policy_checked | awaiting_approval | applied | rejected")
    version: int = Field(description="Record version, incremented per transition")
    plan: PlanDiff | None
    plan_summary: dict[str, int] | None
    findings: list[PolicyFinding]
    approvers: list[str]
    override_actor: str | None
    apply_result: ApplyResult | None
    rejection_reason: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: ChangeRequest) -> "ChangeRequestResponse":
        return cls(
            change_request_id=record.change_request_id,
            environment=record.environment,
            author=record.author,
            commit_sha=record.commit_sha,
            title=record.title,
            stage=record.stage,
            version=record.version,
            plan=record.plan,
            plan_summary=record.plan.summary() if record.plan is not None else None,
            findings=list(record.findings),
            approvers=record.approvers,
            override_actor=record.override.actor if record.override is not None else None,
            apply_result=record.apply_result,
            rejection_reason=record.rejection_reason,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class ApprovalRequest(BaseModel):
    """Request body for recording a human approval."""

    approver: str = Field(min_length=1, description="Identity of the approver")
    comment: str = Field(default="", description="Optional review comment")


class OverrideRequest(BaseModel):
    """Request body for overriding blocking policy findings."""

    actor: str = Field(min_length=1, description="Authorized override actor")
    reason: str = Field(min_length=1, description="Why the findings are accepted")


class VetoRequest(BaseModel):
    """Request body for rejecting a change request."""

    actor: str = Field(min_length=1)
    reason: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Policy schemas
# ---------------------------------------------------------------------------


class PolicyRuleResponse(BaseModel):
    """An active policy rule with its effective severity."""

    rule_id: str
    severity: str
    description: str
    remediation: str

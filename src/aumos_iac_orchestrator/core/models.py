"""Domain records for the orchestration engine.

All records are immutable. State transitions produce new records via
``model_copy(update=...)`` rather than mutating in place, so a PlanDiff or
snapshot handed to another component can never change underneath it.

Records:
- ResourceDescriptor : declared desired resource
- ResourceRecord     : resource as persisted in a state snapshot
- PartialApplyMarker : progress left behind by an interrupted apply
- StateSnapshot      : persisted infrastructure state of one environment
- StateHandle        : reference to one environment's persisted state
- LockToken          : proof of holding an environment lock
- PlannedAction      : one create/update/destroy step of a plan
- PlanDiff           : ordered sequence of planned actions
- PolicyFinding      : severity-tagged violation tied to a resource
- ApplyResult        : outcome of a successful apply
- Environment        : named workspace with an immutable variable set
"""

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ActionKind = Literal["create", "update", "destroy"]
Severity = Literal["info", "warning", "blocking"]
PartialApplyStatus = Literal["in_progress", "failed", "cancelled"]

ACTION_CREATE: ActionKind = "create"
ACTION_UPDATE: ActionKind = "update"
ACTION_DESTROY: ActionKind = "destroy"

SEVERITY_INFO: Severity = "info"
SEVERITY_WARNING: Severity = "warning"
SEVERITY_BLOCKING: Severity = "blocking"

# Sort rank used when ordering findings: blocking first
SEVERITY_RANK: dict[str, int] = {SEVERITY_BLOCKING: 0, SEVERITY_WARNING: 1, SEVERITY_INFO: 2}


def resource_address(resource_type: str, name: str) -> str:
    """Build the canonical address of a resource.

    Args:
        resource_type: Resource type (e.g., instance, bucket).
        name: Resource name, unique within its type.

    Returns:
        Address string ``{type}.{name}``.
    """
    return f"{resource_type}.{name}"


def fingerprint_variables(variables: Mapping[str, Any]) -> str:
    """Compute a stable SHA-256 fingerprint of a variable set.

    Args:
        variables: The variable mapping.

    Returns:
        Hex-encoded SHA-256 digest of the canonical JSON encoding.
    """
    canonical = json.dumps(dict(variables), sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Desired and persisted resources
# ---------------------------------------------------------------------------


class ResourceDescriptor(BaseModel):
    """A declared desired resource.

    Attributes:
        type: Provider-neutral resource type (instance, bucket, vpc, ...).
        name: Resource name, unique within its type.
        attributes: Declared attribute mapping. String values may reference
            environment variables as ``${var.NAME}``.
        depends_on: Addresses of resources that must exist before this one.
    """

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., min_length=1, description="Provider-neutral resource type")
    name: str = Field(..., min_length=1, description="Resource name, unique within its type")
    attributes: dict[str, Any] = Field(default_factory=dict, description="Declared attributes")
    depends_on: tuple[str, ...] = Field(default=(), description="Addresses this resource depends on")

    @property
    def address(self) -> str:
        """Return the canonical ``{type}.{name}`` address."""
        return resource_address(self.type, self.name)


class ResourceRecord(BaseModel):
    """A resource as recorded in a state snapshot.

    ``attributes`` holds the declared attributes the resource was applied
    with and is what plans diff against. ``computed`` holds values reported
    back by the provider (ids, endpoints) and never participates in diffs.
    """

    model_config = ConfigDict(frozen=True)

    address: str
    type: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    computed: dict[str, Any] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    resource_id: str | None = None
    applied_at: datetime | None = None


class PartialApplyMarker(BaseModel):
    """Progress recorded by an apply that did not run to completion.

    Attributes:
        plan_id: The plan being applied.
        status: in_progress while checkpointing, failed or cancelled afterwards.
        completed_actions: Action keys (``create:instance.web``) already applied.
        failed_action: Key of the action that failed, if any.
        reason: Failure or cancellation reason.
        recorded_at: When the marker was written (UTC).
    """

    model_config = ConfigDict(frozen=True)

    plan_id: str
    status: PartialApplyStatus
    completed_actions: tuple[str, ...] = ()
    failed_action: str | None = None
    reason: str | None = None
    recorded_at: datetime


class StateSnapshot(BaseModel):
    """Persisted infrastructure state for one environment.

    Attributes:
        environment: Owning environment name.
        version: Monotonic version counter, incremented by every write.
        resources: Live resources keyed by address.
        deposed: Old instances of create-before-destroy replacements awaiting
            destroy, keyed by provider resource id.
        partial_apply: Marker left behind by an interrupted apply.
        updated_at: Time of the last write (UTC).
    """

    model_config = ConfigDict(frozen=True)

    environment: str
    version: int = 0
    resources: dict[str, ResourceRecord] = Field(default_factory=dict)
    deposed: dict[str, ResourceRecord] = Field(default_factory=dict)
    partial_apply: PartialApplyMarker | None = None
    updated_at: datetime | None = None

    @property
    def is_empty(self) -> bool:
        """Return True when no live or deposed resources are recorded."""
        return not self.resources and not self.deposed


class StateHandle(BaseModel):
    """Reference to one environment's persisted state.

    Invariant: at most one active lock owner at any time.
    """

    model_config = ConfigDict(frozen=True)

    environment: str
    location: str
    lock_owner: str | None = None
    version: int = 0


class LockToken(BaseModel):
    """Proof that the holder owns an environment's state lock.

    Attributes:
        token_id: Unique token identifier; writes must present it.
        environment: Locked environment.
        owner: Identity of the lock holder.
        acquired_at: When the lock was taken (UTC).
        expires_at: When the lock lapses unless renewed (UTC).
    """

    model_config = ConfigDict(frozen=True)

    token_id: str
    environment: str
    owner: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        """Return True when the lock has lapsed at ``now``."""
        return now >= self.expires_at


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlannedAction(BaseModel):
    """One resource action of a plan.

    Attributes:
        action: create | update | destroy.
        address: Resource address.
        resource_type: Resource type.
        name: Resource name.
        before: Declared attributes currently in state (None for creates).
        after: Declared attributes after the action (None for destroys).
        changed_attributes: Attribute keys that differ between before and after.
        depends_on: Dependencies the resource will have after the action.
        reason: Why the action was planned.
        replacement: True when the action is half of a destroy+create replacement.
        deposed: True for the destroy of an old create-before-destroy instance.
        resource_id: Provider id of the existing instance (updates and destroys).
    """

    model_config = ConfigDict(frozen=True)

    action: ActionKind
    address: str
    resource_type: str
    name: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    changed_attributes: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    reason: str = ""
    replacement: bool = False
    deposed: bool = False
    resource_id: str | None = None

    @property
    def key(self) -> str:
        """Return a unique key for this action within a plan."""
        if self.deposed:
            return f"{self.action}:{self.address}:deposed:{self.resource_id}"
        return f"{self.action}:{self.address}"


class PlanDiff(BaseModel):
    """Ordered sequence of planned resource actions for one environment.

    Generated per plan invocation and consumed by apply or discarded.
    """

    model_config = ConfigDict(frozen=True)

    plan_id: str
    environment: str
    base_version: int = Field(..., description="Snapshot version the plan was computed against")
    variables_fingerprint: str
    variables_revision: int
    actions: tuple[PlannedAction, ...] = ()
    created_at: datetime
    recovering_from: PartialApplyMarker | None = None

    @property
    def is_empty(self) -> bool:
        """Return True when the plan has no actions."""
        return not self.actions

    def summary(self) -> dict[str, int]:
        """Count actions by kind.

        Returns:
            Dict with create, update, destroy and replace counts.
        """
        counts = {"create": 0, "update": 0, "destroy": 0, "replace": 0}
        for action in self.actions:
            counts[action.action] += 1
            if action.replacement and action.action == ACTION_CREATE:
                counts["replace"] += 1
        return counts


class PolicyFinding(BaseModel):
    """Severity-tagged policy violation tied to a planned resource."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    severity: Severity
    address: str
    resource_type: str
    action: ActionKind
    message: str
    remediation: str = ""


class ApplyResult(BaseModel):
    """Outcome of a fully applied plan."""

    model_config = ConfigDict(frozen=True)

    plan_id: str
    environment: str
    applied_actions: tuple[str, ...] = ()
    state_version: int
    completed_at: datetime
    duration_ms: float


# ---------------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Environment:
    """A named workspace bound to an isolated state and variable set.

    The variable mapping is read-only. Changing variables produces a new
    Environment with a new revision and fingerprint.

    Attributes:
        name: Unique environment name.
        state: Handle to the environment's persisted state.
        variables: Immutable variable set.
        variables_revision: Incremented on every variable change.
        variables_fingerprint: SHA-256 fingerprint of the variable set.
        planned: True once a plan has been generated against this revision.
        created_at: Registration time (UTC).
    """

    name: str
    state: StateHandle
    variables: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    variables_revision: int = 1
    variables_fingerprint: str = ""
    planned: bool = False
    created_at: datetime | None = None

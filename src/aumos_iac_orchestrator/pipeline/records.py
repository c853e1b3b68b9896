"""Versioned change request records and their append-only history.

Every change request carries its own stage and version counter. Components
never flip shared flags: a transition produces a new record with
``version + 1`` that is saved only if the stored record still has the
expected version, and every saved transition appends a ChangeRequestEvent.

Stage machine:
    proposed -> planned -> policy_checked -> awaiting_approval -> applied
    any non-terminal stage -> rejected
    any non-terminal stage -> proposed (new commit, re-plan)
"""

from __future__ import annotations

import asyncio
import bisect
from datetime import datetime
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from aumos_iac_orchestrator.core.models import ApplyResult, PlanDiff, PolicyFinding
from aumos_iac_orchestrator.errors import (
    InvalidTransitionError,
    StaleRecordError,
    UnknownChangeRequestError,
)

Stage = Literal["proposed", "planned", "policy_checked", "awaiting_approval", "applied", "rejected"]

STAGE_PROPOSED: Stage = "proposed"
STAGE_PLANNED: Stage = "planned"
STAGE_POLICY_CHECKED: Stage = "policy_checked"
STAGE_AWAITING_APPROVAL: Stage = "awaiting_approval"
STAGE_APPLIED: Stage = "applied"
STAGE_REJECTED: Stage = "rejected"

TERMINAL_STAGES: frozenset[str] = frozenset({STAGE_APPLIED, STAGE_REJECTED})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STAGE_PROPOSED: frozenset({STAGE_PLANNED, STAGE_REJECTED}),
    STAGE_PLANNED: frozenset({STAGE_POLICY_CHECKED, STAGE_PROPOSED, STAGE_REJECTED}),
    STAGE_POLICY_CHECKED: frozenset({STAGE_AWAITING_APPROVAL, STAGE_PROPOSED, STAGE_REJECTED}),
    STAGE_AWAITING_APPROVAL: frozenset({STAGE_APPLIED, STAGE_PROPOSED, STAGE_REJECTED}),
    STAGE_APPLIED: frozenset(),
    STAGE_REJECTED: frozenset(),
}


class ApprovalRecord(BaseModel):
    """A recorded human approval event."""

    model_config = ConfigDict(frozen=True)

    approver: str
    comment: str = ""
    approved_at: datetime


class PolicyOverride(BaseModel):
    """An authorized override of blocking policy findings."""

    model_config = ConfigDict(frozen=True)

    actor: str
    reason: str
    rule_ids: tuple[str, ...] = ()
    overridden_at: datetime


class ChangeRequest(BaseModel):
    """Pipeline record of one proposed infrastructure change.

    Attributes:
        change_request_id: Identifier from the CI system (e.g., PR number).
        environment: Target environment.
        author: Who proposed the change; may not approve it.
        commit_sha: Commit the current plan was computed from.
        title: Free-form title.
        stage: Current pipeline stage.
        version: Optimistic concurrency counter, incremented per transition.
        plan: Latest plan, once planned.
        findings: Policy findings for the latest plan.
        approvals: Human approvals recorded for the latest plan.
        override: Authorized override of blocking findings, if any.
        apply_result: Outcome once applied.
        rejection_reason: Why the change request was rejected.
    """

    model_config = ConfigDict(frozen=True)

    change_request_id: str = Field(..., min_length=1)
    environment: str
    author: str
    commit_sha: str = ""
    title: str = ""
    stage: Stage = STAGE_PROPOSED
    version: int = 1
    plan: PlanDiff | None = None
    findings: tuple[PolicyFinding, ...] = ()
    approvals: tuple[ApprovalRecord, ...] = ()
    override: PolicyOverride | None = None
    apply_result: ApplyResult | None = None
    rejection_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def approvers(self) -> list[str]:
        return [approval.approver for approval in self.approvals]


class ChangeRequestEvent(BaseModel):
    """Immutable history entry for one saved change request transition.

    Attributes:
        event_id: UUID v4 string.
        change_request_id: The change request the event belongs to.
        event_type: What happened (opened, planned, approval, merged, ...).
        from_stage: Stage before the event. None for the opening event.
        to_stage: Stage after the event.
        record_version: Record version written by the event.
        actor: Who or what triggered the event.
        reason: Optional free-form reason.
        timestamp_ms: Unix epoch milliseconds (UTC).
    """

    model_config = ConfigDict(frozen=True)

    event_id: str
    change_request_id: str
    event_type: str
    from_stage: Stage | None = None
    to_stage: Stage
    record_version: int
    actor: str
    reason: str | None = None
    timestamp_ms: int


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class IChangeRequestStore(Protocol):
    """Storage contract for the latest version of each change request.

    ``save`` must compare the stored version and write in one atomic step.
    """

    async def create(self, record: ChangeRequest) -> ChangeRequest: ...

    async def get(self, change_request_id: str) -> ChangeRequest: ...

    async def save(self, record: ChangeRequest, expected_version: int) -> ChangeRequest: ...

    async def list_records(self, environment: str | None = None) -> list[ChangeRequest]: ...


class IChangeRequestHistory(Protocol):
    """Storage contract for the append-only change request history."""

    async def append(self, event: ChangeRequestEvent) -> None: ...

    async def query_range(self, change_request_id: str, start_ts: int, end_ts: int) -> list[ChangeRequestEvent]: ...

    async def get_all_events(self, change_request_id: str) -> list[ChangeRequestEvent]: ...


def check_transition(record: ChangeRequest, to_stage: str) -> None:
    """Raise InvalidTransitionError unless ``record`` may move to ``to_stage``."""
    if to_stage not in ALLOWED_TRANSITIONS[record.stage]:
        raise InvalidTransitionError(
            f"Change request cannot move from '{record.stage}' to '{to_stage}'",
            environment=record.environment,
            details={"change_request_id": record.change_request_id, "stage": record.stage},
        )


class ChangeRequestStore:
    """In-memory store of the latest version of each change request."""

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._records: dict[str, ChangeRequest] = {}
        self._mutex = asyncio.Lock()

    async def create(self, record: ChangeRequest) -> ChangeRequest:
        """Store a new change request.

        Raises:
            InvalidTransitionError: If the id already exists.
        """
        async with self._mutex:
            if record.change_request_id in self._records:
                raise InvalidTransitionError(
                    f"Change request '{record.change_request_id}' already exists",
                    environment=record.environment,
                    details={"change_request_id": record.change_request_id},
                )
            self._records[record.change_request_id] = record
            return record

    async def get(self, change_request_id: str) -> ChangeRequest:
        """Return the latest record.

        Raises:
            UnknownChangeRequestError: If the id does not exist.
        """
        record = self._records.get(change_request_id)
        if record is None:
            raise UnknownChangeRequestError(change_request_id)
        return record

    async def save(self, record: ChangeRequest, expected_version: int) -> ChangeRequest:
        """Replace a record if the stored version still equals ``expected_version``.

        Args:
            record: The new record (version already incremented).
            expected_version: Version the caller read.

        Returns:
            The saved record.

        Raises:
            UnknownChangeRequestError: If the id does not exist.
            StaleRecordError: If the stored record moved on.
        """
        async with self._mutex:
            current = self._records.get(record.change_request_id)
            if current is None:
                raise UnknownChangeRequestError(record.change_request_id)
            if current.version != expected_version:
                raise StaleRecordError(
                    f"Change request is at version {current.version}, expected {expected_version}",
                    environment=record.environment,
                    details={"change_request_id": record.change_request_id},
                )
            self._records[record.change_request_id] = record
            return record

    async def list_records(self, environment: str | None = None) -> list[ChangeRequest]:
        """Return change requests, optionally filtered by environment, oldest first."""
        records = [r for r in self._records.values() if environment is None or r.environment == environment]
        return sorted(records, key=lambda r: (r.created_at, r.change_request_id))


class ChangeRequestHistory:
    """Append-only store of ChangeRequestEvent instances.

    Keeps per-change-request event lists sorted by timestamp_ms. There are
    no update or delete operations.
    """

    def __init__(self) -> None:
        """Initialize an empty history."""
        # { change_request_id: list[ChangeRequestEvent] } sorted by timestamp_ms ascending
        self._events: dict[str, list[ChangeRequestEvent]] = {}
        # Parallel list of timestamp_ms ints for bisect operations
        self._timestamps: dict[str, list[int]] = {}

    async def append(self, event: ChangeRequestEvent) -> None:
        """Append an event at its sorted position by timestamp_ms."""
        events = self._events.setdefault(event.change_request_id, [])
        timestamps = self._timestamps.setdefault(event.change_request_id, [])
        index = bisect.bisect_right(timestamps, event.timestamp_ms)
        events.insert(index, event)
        timestamps.insert(index, event.timestamp_ms)

    async def query_range(self, change_request_id: str, start_ts: int, end_ts: int) -> list[ChangeRequestEvent]:
        """Return events within [start_ts, end_ts] (inclusive), oldest first."""
        timestamps = self._timestamps.get(change_request_id)
        if timestamps is None:
            return []
        low = bisect.bisect_left(timestamps, start_ts)
        high = bisect.bisect_right(timestamps, end_ts)
        return self._events[change_request_id][low:high]

    async def get_all_events(self, change_request_id: str) -> list[ChangeRequestEvent]:
        return list(self._events.get(change_request_id, []))

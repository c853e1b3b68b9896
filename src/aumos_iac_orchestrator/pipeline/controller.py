"""Pipeline Controller: drives change requests through the gated workflow.

CI events enter here:

- on_pull_request_opened  -> plan + policy gate (proposed -> planned -> policy_checked
                              -> awaiting_approval when nothing blocks)
- replan                  -> new commit on an open change request
- record_approval         -> explicit human approval event
- record_override         -> authorized override of blocking findings
- veto                    -> explicit rejection
- on_merge_to_main        -> gated apply (awaiting_approval -> applied)

Lock contention never changes a change request's stage: the error surfaces
to the caller, who retries. Plan failures and apply conflicts or failures
reject the change request with the reason.
"""

import asyncio
import sys
import uuid
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

from aumos_iac_orchestrator.core.interfaces import INotifier
from aumos_iac_orchestrator.core.models import ResourceDescriptor
from aumos_iac_orchestrator.engine.service import PlanApplyEngine
from aumos_iac_orchestrator.errors import (
    ApplyConflictError,
    ApplyFailedError,
    ApprovalError,
    InvalidTransitionError,
    LockContentionError,
    NotifierError,
    PlanValidationError,
    PolicyBlockedError,
    StaleLockError,
    UnknownEnvironmentError,
)
from aumos_iac_orchestrator.observability import get_logger
from aumos_iac_orchestrator.pipeline.records import (
    STAGE_APPLIED,
    STAGE_AWAITING_APPROVAL,
    STAGE_PLANNED,
    STAGE_POLICY_CHECKED,
    STAGE_PROPOSED,
    STAGE_REJECTED,
    ApprovalRecord,
    ChangeRequest,
    ChangeRequestEvent,
    IChangeRequestHistory,
    IChangeRequestStore,
    PolicyOverride,
    Stage,
    check_transition,
)
from aumos_iac_orchestrator.policy.gate import PolicyGate, blocking_findings, has_blocking

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PipelineController:
    """Gated plan/apply workflow over versioned change request records.

    Args:
        engine: The Plan/Apply Engine.
        gate: The Policy Gate.
        notifier: External collaborator for summaries and approval requests.
        store: Change request record store.
        history: Append-only transition history.
        required_approvals: Distinct approvals needed before a gated apply.
        authorized_approvers: Actors allowed to approve. Empty allows anyone
            except the change author.
        override_actors: Actors allowed to override blocking findings.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        engine: PlanApplyEngine,
        gate: PolicyGate,
        notifier: INotifier,
        store: IChangeRequestStore,
        history: IChangeRequestHistory,
        required_approvals: int = 1,
        authorized_approvers: Iterable[str] = (),
        override_actors: Iterable[str] = (),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize PipelineController.

        Args:
            engine: The Plan/Apply Engine.
            gate: The Policy Gate.
            notifier: The notifier adapter.
            store: Change request store.
            history: Change request history.
            required_approvals: Number of approvals required.
            authorized_approvers: Allowed approvers (empty = anyone but the author).
            override_actors: Actors allowed to override blocking findings.
            clock: Source of the current UTC time.
        """
        self._engine = engine
        self._gate = gate
        self._notifier = notifier
        self._store = store
        self._history = history
        self._required_approvals = required_approvals
        self._authorized_approvers = frozenset(authorized_approvers)
        self._override_actors = frozenset(override_actors)
        self._clock = clock
        # One mutex per change request serializes its CI events
        self._request_locks: dict[str, asyncio.Lock] = {}

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get(self, change_request_id: str) -> ChangeRequest:
        return await self._store.get(change_request_id)

    async def list_change_requests(self, environment: str | None = None) -> list[ChangeRequest]:
        return await self._store.list_records(environment)

    async def history(
        self,
        change_request_id: str,
        since_ms: int | None = None,
        until_ms: int | None = None,
    ) -> list[ChangeRequestEvent]:
        """Return the transition history of a change request, oldest first.

        Args:
            change_request_id: The change request.
            since_ms: Earliest event timestamp to include (epoch ms, inclusive).
            until_ms: Latest event timestamp to include (epoch ms, inclusive).

        Raises:
            UnknownChangeRequestError: If the id does not exist.
        """
        await self._store.get(change_request_id)
        if since_ms is None and until_ms is None:
            return await self._history.get_all_events(change_request_id)
        return await self._history.query_range(
            change_request_id,
            since_ms if since_ms is not None else 0,
            until_ms if until_ms is not None else sys.maxsize,
        )

    # -------------------------------------------------------------------------
    # CI events
    # -------------------------------------------------------------------------

    async def on_pull_request_opened(
        self,
        change_request_id: str,
        environment: str,
        desired_resources: Sequence[ResourceDescriptor],
        author: str,
        commit_sha: str = "",
        title: str = "",
    ) -> ChangeRequest:
        """Open a change request and run plan and policy gate.

        Args:
            change_request_id: Identifier from the CI system.
            environment: Target environment.
            desired_resources: The full desired resource set of the commit.
            author: Change author.
            commit_sha: Commit being planned.
            title: Change request title.

        Returns:
            The change request in policy_checked (blocked), awaiting_approval
            or rejected (plan failed).

        Raises:
            InvalidTransitionError: If the id already exists.
            LockContentionError: If the environment is locked; the change
                request stays proposed and is retried with replan.
        """
        async with self._request_lock(change_request_id):
            now = self._clock()
            record = await self._store.create(
                ChangeRequest(
                    change_request_id=change_request_id,
                    environment=environment,
                    author=author,
                    commit_sha=commit_sha,
                    title=title,
                    created_at=now,
                    updated_at=now,
                )
            )
            await self._append_event(record, "opened", None, actor=author)
            logger.info(
                "Change request opened",
                change_request_id=change_request_id,
                environment=environment,
                author=author,
                commit_sha=commit_sha,
            )
            return await self._plan_and_gate(record, desired_resources, actor=author)

    async def replan(
        self,
        change_request_id: str,
        desired_resources: Sequence[ResourceDescriptor],
        actor: str,
        commit_sha: str = "",
    ) -> ChangeRequest:
        """Re-plan an open change request after a new commit.

        Previous approvals and overrides are discarded: they applied to the
        old plan.

        Raises:
            InvalidTransitionError: If the change request is applied or rejected.
            LockContentionError: If the environment is locked.
        """
        async with self._request_lock(change_request_id):
            record = await self._store.get(change_request_id)
            if record.stage != STAGE_PROPOSED:
                record = await self._transition(
                    record,
                    STAGE_PROPOSED,
                    "new-commit",
                    actor=actor,
                    commit_sha=commit_sha or record.commit_sha,
                    plan=None,
                    findings=(),
                    approvals=(),
                    override=None,
                )
            return await self._plan_and_gate(record, desired_resources, actor=actor)

    async def record_approval(self, change_request_id: str, approver: str, comment: str = "") -> ChangeRequest:
        """Record a human approval event.

        Args:
            change_request_id: The change request.
            approver: Who approves.
            comment: Optional comment.

        Returns:
            The updated change request (unchanged if the approver already approved).

        Raises:
            InvalidTransitionError: If the change request is not awaiting approval.
            ApprovalError: If the approver is the author or is not authorized.
        """
        async with self._request_lock(change_request_id):
            record = await self._store.get(change_request_id)
            if record.stage != STAGE_AWAITING_APPROVAL:
                raise InvalidTransitionError(
                    f"Approvals are only accepted in '{STAGE_AWAITING_APPROVAL}', not '{record.stage}'",
                    environment=record.environment,
                    details={"change_request_id": change_request_id, "stage": record.stage},
                )
            if approver == record.author:
                raise ApprovalError(
                    "Authors cannot approve their own change request",
                    environment=record.environment,
                    details={"change_request_id": change_request_id, "approver": approver},
                )
            if self._authorized_approvers and approver not in self._authorized_approvers:
                raise ApprovalError(
                    f"'{approver}' is not an authorized approver",
                    environment=record.environment,
                    details={"change_request_id": change_request_id, "approver": approver},
                )
            if approver in record.approvers:
                return record

            approval = ApprovalRecord(approver=approver, comment=comment, approved_at=self._clock())
            record = await self._save(
                record,
                None,
                "approval",
                actor=approver,
                reason=comment or None,
                approvals=(*record.approvals, approval),
            )
            logger.info(
                "Approval recorded",
                change_request_id=change_request_id,
                approver=approver,
                approvals=len(record.approvals),
                required=self._required_approvals,
            )
            return record

    async def record_override(self, change_request_id: str, actor: str, reason: str) -> ChangeRequest:
        """Override blocking findings and move the change request to approval.

        Raises:
            InvalidTransitionError: If the change request is not policy_checked
                with blocking findings.
            ApprovalError: If the actor may not override.
        """
        async with self._request_lock(change_request_id):
            record = await self._store.get(change_request_id)
            if record.stage != STAGE_POLICY_CHECKED or not has_blocking(record.findings):
                raise InvalidTransitionError(
                    "Only change requests blocked by policy can be overridden",
                    environment=record.environment,
                    details={"change_request_id": change_request_id, "stage": record.stage},
                )
            if actor not in self._override_actors:
                raise ApprovalError(
                    f"'{actor}' is not allowed to override policy findings",
                    environment=record.environment,
                    details={"change_request_id": change_request_id, "actor": actor},
                )

            rule_ids = tuple(sorted({finding.rule_id for finding in blocking_findings(record.findings)}))
            override = PolicyOverride(actor=actor, reason=reason, rule_ids=rule_ids, overridden_at=self._clock())
            logger.warning(
                "Blocking policy findings overridden",
                change_request_id=change_request_id,
                actor=actor,
                rule_ids=list(rule_ids),
                reason=reason,
            )
            return await self._request_approval(record, actor=actor, reason=reason, override=override)

    async def veto(self, change_request_id: str, actor: str, reason: str) -> ChangeRequest:
        """Explicitly reject a non-terminal change request.

        Raises:
            InvalidTransitionError: If the change request is already terminal.
        """
        async with self._request_lock(change_request_id):
            record = await self._store.get(change_request_id)
            return await self._reject(record, f"vetoed by {actor}: {reason}", actor=actor, event_type="veto")

    async def on_merge_to_main(self, change_request_id: str, actor: str) -> ChangeRequest:
        """Run the gated apply for a merged change request.

        Args:
            change_request_id: The change request.
            actor: Identity of the merge event source.

        Returns:
            The change request, applied or rejected.

        Raises:
            InvalidTransitionError: If the change request is not awaiting approval.
            ApprovalError: If it lacks the required approvals (stage unchanged).
            LockContentionError: If the environment is locked (stage unchanged).
        """
        async with self._request_lock(change_request_id):
            record = await self._store.get(change_request_id)
            if record.stage != STAGE_AWAITING_APPROVAL or record.plan is None:
                raise InvalidTransitionError(
                    f"Change request in '{record.stage}' cannot be applied",
                    environment=record.environment,
                    details={"change_request_id": change_request_id},
                )
            if len(record.approvals) < self._required_approvals:
                raise ApprovalError(
                    f"{len(record.approvals)} of {self._required_approvals} required approvals recorded",
                    environment=record.environment,
                    details={"change_request_id": change_request_id, "approvers": record.approvers},
                )
            if has_blocking(record.findings) and record.override is None:
                blocking = blocking_findings(record.findings)
                raise PolicyBlockedError(
                    record.environment,
                    rule_ids=sorted({f.rule_id for f in blocking}),
                    addresses=sorted({f.address for f in blocking}),
                )

            try:
                result = await self._engine.apply(record.plan, record.environment, owner=f"pipeline:{change_request_id}")
            except LockContentionError:
                logger.info("Apply deferred by lock contention", change_request_id=change_request_id)
                raise
            except (ApplyConflictError, StaleLockError, ApplyFailedError, UnknownEnvironmentError) as exc:
                rejected = await self._reject(record, str(exc), actor=actor, event_type="apply-failed")
                await self._notify(
                    self._notifier.send_apply_result(
                        change_request_id, record.environment, STAGE_REJECTED, exc.to_dict()
                    )
                )
                return rejected

            record = await self._transition(record, STAGE_APPLIED, "merged", actor=actor, apply_result=result)
            await self._notify(
                self._notifier.send_apply_result(
                    change_request_id,
                    record.environment,
                    STAGE_APPLIED,
                    result.model_dump(mode="json"),
                )
            )
            return record

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _request_lock(self, change_request_id: str) -> asyncio.Lock:
        return self._request_locks.setdefault(change_request_id, asyncio.Lock())

    async def _plan_and_gate(
        self,
        record: ChangeRequest,
        desired_resources: Sequence[ResourceDescriptor],
        actor: str,
    ) -> ChangeRequest:
        try:
            plan = await self._engine.plan(record.environment, desired_resources)
        except LockContentionError:
            logger.info("Plan deferred by lock contention", change_request_id=record.change_request_id)
            raise
        except (PlanValidationError, UnknownEnvironmentError) as exc:
            return await self._reject(record, str(exc), actor=actor, event_type="plan-failed")

        record = await self._transition(record, STAGE_PLANNED, "planned", actor=actor, plan=plan)

        findings = self._gate.evaluate(plan)
        record = await self._transition(
            record, STAGE_POLICY_CHECKED, "policy-checked", actor="policy-gate", findings=tuple(findings)
        )
        await self._notify(self._notifier.send_plan_summary(record.change_request_id, plan, findings))

        if has_blocking(findings):
            logger.warning(
                "Change request blocked by policy",
                change_request_id=record.change_request_id,
                rule_ids=sorted({f.rule_id for f in blocking_findings(findings)}),
            )
            return record
        return await self._request_approval(record, actor="policy-gate")

    async def _request_approval(self, record: ChangeRequest, actor: str, **changes: Any) -> ChangeRequest:
        reason = changes.pop("reason", None)
        record = await self._transition(
            record, STAGE_AWAITING_APPROVAL, "approval-requested", actor=actor, reason=reason, **changes
        )
        if record.plan is not None:
            await self._notify(
                self._notifier.request_approval(
                    record.change_request_id, record.environment, record.plan, self._required_approvals
                )
            )
        return record

    async def _reject(self, record: ChangeRequest, reason: str, actor: str, event_type: str) -> ChangeRequest:
        record = await self._transition(
            record, STAGE_REJECTED, event_type, actor=actor, reason=reason, rejection_reason=reason
        )
        logger.warning(
            "Change request rejected",
            change_request_id=record.change_request_id,
            environment=record.environment,
            reason=reason,
        )
        return record

    async def _transition(
        self,
        record: ChangeRequest,
        to_stage: Stage,
        event_type: str,
        actor: str,
        reason: str | None = None,
        **changes: Any,
    ) -> ChangeRequest:
        check_transition(record, to_stage)
        return await self._save(record, to_stage, event_type, actor=actor, reason=reason, **changes)

    async def _save(
        self,
        record: ChangeRequest,
        to_stage: Stage | None,
        event_type: str,
        actor: str,
        reason: str | None = None,
        **changes: Any,
    ) -> ChangeRequest:
        """Save ``record`` with ``changes`` as version + 1 and append a history event."""
        from_stage = record.stage
        updated = record.model_copy(
            update={
                **changes,
                "stage": to_stage or record.stage,
                "version": record.version + 1,
                "updated_at": self._clock(),
            }
        )
        saved = await self._store.save(updated, expected_version=record.version)
        await self._append_event(saved, event_type, from_stage, actor=actor, reason=reason)
        if saved.is_terminal:
            # Terminal records take no further events
            self._request_locks.pop(saved.change_request_id, None)
        logger.info(
            "Change request transition",
            change_request_id=saved.change_request_id,
            event_type=event_type,
            from_stage=from_stage,
            to_stage=saved.stage,
            version=saved.version,
        )
        return saved

    async def _append_event(
        self,
        record: ChangeRequest,
        event_type: str,
        from_stage: Stage | None,
        actor: str,
        reason: str | None = None,
    ) -> None:
        await self._history.append(
            ChangeRequestEvent(
                event_id=str(uuid.uuid4()),
                change_request_id=record.change_request_id,
                event_type=event_type,
                from_stage=from_stage,
                to_stage=record.stage,
                record_version=record.version,
                actor=actor,
                reason=reason,
                timestamp_ms=int(self._clock().timestamp() * 1000),
            )
        )

    async def _notify(self, delivery: Any) -> None:
        """Await a notifier call; delivery failures are logged and do not undo transitions."""
        try:
            await delivery
        except NotifierError as exc:
            logger.warning("Notifier delivery failed", error=exc.message, status_code=exc.status_code)


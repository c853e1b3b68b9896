"""Plan/Apply Engine.

plan(environment, desired_resources) -> PlanDiff
    Reads the environment's snapshot under its lock, resolves variables,
    validates the dependency graph and diffs desired against recorded state.

apply(plan_diff, environment) -> ApplyResult
    Re-checks that the plan still matches the environment (snapshot version,
    variable fingerprint), then runs each action through the provider under
    the lock, checkpointing state after every action. Failures and
    cancellation leave the completed actions and a partial-apply marker in
    state before the error propagates.
"""

import asyncio
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from aumos_iac_orchestrator.core.interfaces import IInfraProvider
from aumos_iac_orchestrator.core.models import (
    ACTION_CREATE,
    ACTION_DESTROY,
    ApplyResult,
    LockToken,
    PartialApplyMarker,
    PartialApplyStatus,
    PlanDiff,
    PlannedAction,
    ResourceDescriptor,
    ResourceRecord,
    StateSnapshot,
)
from aumos_iac_orchestrator.engine.diff import compute_actions, resolve_descriptors, validate_desired
from aumos_iac_orchestrator.errors import ApplyConflictError, ApplyFailedError, ProviderError
from aumos_iac_orchestrator.observability import get_logger
from aumos_iac_orchestrator.state_backend.manager import StateBackendManager
from aumos_iac_orchestrator.workspace.registry import WorkspaceRegistry

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _ApplyProgress:
    """Mutable working copy of a snapshot during one apply."""

    def __init__(self, snapshot: StateSnapshot) -> None:
        self.persisted = snapshot
        self.resources: dict[str, ResourceRecord] = dict(snapshot.resources)
        self.deposed: dict[str, ResourceRecord] = dict(snapshot.deposed)
        self.completed: list[str] = []

    def to_snapshot(self, marker: PartialApplyMarker | None) -> StateSnapshot:
        return self.persisted.model_copy(
            update={
                "resources": dict(self.resources),
                "deposed": dict(self.deposed),
                "partial_apply": marker,
            }
        )


class PlanApplyEngine:
    """Computes plans and applies them against an environment's state.

    Args:
        state_backend: Owner of snapshots and locks.
        registry: Workspace registry resolving environments and variables.
        provider: Provider capability performing resource actions.
        lock_owner: Default identity recorded on locks.
        checkpoint_each_action: Persist state after every completed action.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        state_backend: StateBackendManager,
        registry: WorkspaceRegistry,
        provider: IInfraProvider,
        lock_owner: str,
        checkpoint_each_action: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize PlanApplyEngine.

        Args:
            state_backend: The State Backend Manager.
            registry: The Workspace Registry.
            provider: The configured provider.
            lock_owner: Default lock owner identity.
            checkpoint_each_action: Whether to write state after each action.
            clock: Source of the current UTC time.
        """
        self._state_backend = state_backend
        self._registry = registry
        self._provider = provider
        self._lock_owner = lock_owner
        self._checkpoint_each_action = checkpoint_each_action
        self._clock = clock

    # -------------------------------------------------------------------------
    # Plan
    # -------------------------------------------------------------------------

    async def plan(
        self,
        environment: str,
        desired_resources: Sequence[ResourceDescriptor],
        owner: str | None = None,
    ) -> PlanDiff:
        """Compute the ordered actions that converge state to the desired set.

        Args:
            environment: Target environment name.
            desired_resources: The full desired resource set.
            owner: Lock owner identity; defaults to the engine's.

        Returns:
            The PlanDiff, pinned to the snapshot version and variable fingerprint.

        Raises:
            UnknownEnvironmentError: If the environment is not registered.
            PlanValidationError: On invalid desired configuration.
            LockContentionError: If the environment is locked by an apply.
        """
        env = await self._registry.resolve(environment)
        resolved = resolve_descriptors(desired_resources, env.variables)
        desired = validate_desired(resolved)

        async with self._state_backend.locked(environment, owner or self._lock_owner):
            snapshot = await self._state_backend.read_state(environment)

        actions = compute_actions(desired, snapshot, self._provider)
        plan = PlanDiff(
            plan_id=str(uuid.uuid4()),
            environment=environment,
            base_version=snapshot.version,
            variables_fingerprint=env.variables_fingerprint,
            variables_revision=env.variables_revision,
            actions=tuple(actions),
            created_at=self._clock(),
            recovering_from=snapshot.partial_apply,
        )
        await self._registry.mark_planned(environment, env.variables_fingerprint)

        logger.info(
            "Plan computed",
            environment=environment,
            plan_id=plan.plan_id,
            base_version=plan.base_version,
            recovering=snapshot.partial_apply is not None,
            **plan.summary(),
        )
        return plan

    async def plan_destroy(self, environment: str, owner: str | None = None) -> PlanDiff:
        """Plan the destruction of every resource recorded for an environment."""
        return await self.plan(environment, [], owner=owner)

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    async def apply(self, plan_diff: PlanDiff, environment: str, owner: str | None = None) -> ApplyResult:
        """Apply a plan to its environment.

        Args:
            plan_diff: The plan to apply.
            environment: The environment the caller intends to change.
            owner: Lock owner identity; defaults to the engine's.

        Returns:
            ApplyResult with the applied action keys and the new state version.

        Raises:
            ApplyConflictError: If the plan targets another environment, the
                snapshot changed since planning, or the variables changed.
            LockContentionError: If the environment is locked.
            ApplyFailedError: If a resource action fails. Completed actions and
                a partial-apply marker are already recorded in state.
            asyncio.CancelledError: If cancelled. Progress is recorded first.
        """
        started = time.monotonic()
        if plan_diff.environment != environment:
            raise ApplyConflictError(
                f"Plan was computed for environment '{plan_diff.environment}'",
                environment=environment,
                details={"plan_environment": plan_diff.environment},
            )

        env = await self._registry.resolve(environment)
        if env.variables_fingerprint != plan_diff.variables_fingerprint:
            raise ApplyConflictError(
                "Environment variables changed since the plan was computed; re-plan",
                environment=environment,
                details={
                    "plan_revision": plan_diff.variables_revision,
                    "current_revision": env.variables_revision,
                },
            )

        async with self._state_backend.locked(environment, owner or self._lock_owner) as token:
            snapshot = await self._state_backend.read_state(environment)
            if snapshot.version != plan_diff.base_version:
                raise ApplyConflictError(
                    f"State moved from version {plan_diff.base_version} to {snapshot.version} "
                    "since the plan was computed; re-plan",
                    environment=environment,
                    details={"plan_version": plan_diff.base_version, "current_version": snapshot.version},
                )
            final = await self._run_actions(plan_diff, snapshot, token)

        result = ApplyResult(
            plan_id=plan_diff.plan_id,
            environment=environment,
            applied_actions=tuple(action.key for action in plan_diff.actions),
            state_version=final.version,
            completed_at=self._clock(),
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        logger.info(
            "Apply completed",
            environment=environment,
            plan_id=plan_diff.plan_id,
            actions=len(result.applied_actions),
            state_version=result.state_version,
            duration_ms=result.duration_ms,
        )
        return result

    async def _run_actions(
        self,
        plan_diff: PlanDiff,
        snapshot: StateSnapshot,
        token: LockToken,
    ) -> StateSnapshot:
        """Execute the plan's actions under a held lock and persist the result."""
        progress = _ApplyProgress(snapshot)
        if plan_diff.is_empty:
            if snapshot.partial_apply is None:
                return snapshot
            return await self._state_backend.write_state(plan_diff.environment, progress.to_snapshot(None), token)

        current_action: PlannedAction | None = None
        try:
            for index, action in enumerate(plan_diff.actions):
                current_action = action
                await self._apply_one(plan_diff.environment, action, progress)
                progress.completed.append(action.key)
                current_action = None

                if self._checkpoint_each_action:
                    is_last = index == len(plan_diff.actions) - 1
                    marker = None if is_last else self._marker(plan_diff, progress, "in_progress")
                    progress.persisted = await self._state_backend.write_state(
                        plan_diff.environment, progress.to_snapshot(marker), token
                    )
                    if not is_last:
                        token = await self._state_backend.renew_lock(token)

            if not self._checkpoint_each_action:
                progress.persisted = await self._state_backend.write_state(
                    plan_diff.environment, progress.to_snapshot(None), token
                )
            return progress.persisted

        except ProviderError as exc:
            failed_key = current_action.key if current_action is not None else None
            persisted = await self._record_partial(plan_diff, progress, token, "failed", str(exc), failed_key)
            logger.error(
                "Apply failed",
                environment=plan_diff.environment,
                plan_id=plan_diff.plan_id,
                failed_action=failed_key,
                completed=len(progress.completed),
                error=exc.message,
            )
            raise ApplyFailedError(
                exc.message,
                environment=plan_diff.environment,
                resource=current_action.address if current_action is not None else "",
                completed_actions=list(progress.completed),
                state_version=persisted.version,
            ) from exc

        except asyncio.CancelledError:
            failed_key = current_action.key if current_action is not None else None
            await self._record_partial(plan_diff, progress, token, "cancelled", "apply cancelled", failed_key)
            logger.warning(
                "Apply cancelled",
                environment=plan_diff.environment,
                plan_id=plan_diff.plan_id,
                completed=len(progress.completed),
            )
            raise

    async def _apply_one(self, environment: str, action: PlannedAction, progress: _ApplyProgress) -> None:
        """Run one action through the provider and fold the result into progress."""
        now = self._clock()

        if action.action == ACTION_DESTROY:
            if action.deposed:
                await self._provider.apply_action(environment, action, action.resource_id)
                progress.deposed.pop(action.resource_id or "", None)
                return
            record = progress.resources[action.address]
            await self._provider.apply_action(environment, action, record.resource_id)
            del progress.resources[action.address]
            return

        if action.action == ACTION_CREATE:
            computed = await self._provider.apply_action(environment, action, None)
            existing = progress.resources.get(action.address)
            if existing is not None and existing.resource_id is not None:
                # Create-before-destroy: keep the old instance until its destroy runs
                progress.deposed[existing.resource_id] = existing
            progress.resources[action.address] = ResourceRecord(
                address=action.address,
                type=action.resource_type,
                name=action.name,
                attributes=dict(action.after or {}),
                computed=computed,
                depends_on=action.depends_on,
                resource_id=str(computed["id"]),
                applied_at=now,
            )
            return

        record = progress.resources[action.address]
        computed = await self._provider.apply_action(environment, action, record.resource_id)
        progress.resources[action.address] = record.model_copy(
            update={
                "attributes": dict(action.after or {}),
                "computed": {**record.computed, **computed},
                "depends_on": action.depends_on,
                "applied_at": now,
            }
        )

    def _marker(
        self,
        plan_diff: PlanDiff,
        progress: _ApplyProgress,
        status: PartialApplyStatus,
        reason: str | None = None,
        failed_action: str | None = None,
    ) -> PartialApplyMarker:
        return PartialApplyMarker(
            plan_id=plan_diff.plan_id,
            status=status,
            completed_actions=tuple(progress.completed),
            failed_action=failed_action,
            reason=reason,
            recorded_at=self._clock(),
        )

    async def _record_partial(
        self,
        plan_diff: PlanDiff,
        progress: _ApplyProgress,
        token: LockToken,
        status: PartialApplyStatus,
        reason: str,
        failed_action: str | None,
    ) -> StateSnapshot:
        """Persist completed actions plus a partial-apply marker."""
        marker = self._marker(plan_diff, progress, status, reason=reason, failed_action=failed_action)
        persisted = await self._state_backend.write_state(plan_diff.environment, progress.to_snapshot(marker), token)
        progress.persisted = persisted
        return persisted

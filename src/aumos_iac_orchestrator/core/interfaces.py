"""Abstract interfaces (Protocol classes) for the orchestration engine.

Defines the contracts between the service layer and the adapter layer using
typing.Protocol. Services depend on these protocols, never on concrete
adapters, so tests can substitute in-memory stores and mocks.

Protocols defined:
- IStateStore         : persistence primitives behind the State Backend Manager
- IResourceExecutor   : performs individual resource actions
- IInfraProvider      : provider capability {describe, plan-diff, apply}
- INotifier           : external collaborator for pipeline notifications
"""

from collections.abc import Iterable
from typing import Any, Protocol

from aumos_iac_orchestrator.core.models import (
    LockToken,
    PlanDiff,
    PlannedAction,
    PolicyFinding,
    ResourceDescriptor,
    StateSnapshot,
)


class IStateStore(Protocol):
    """Storage contract for environment snapshots and lock records.

    Implementations must make ``try_acquire_lock`` and ``swap_snapshot``
    atomic with respect to concurrent callers.
    """

    @property
    def location(self) -> str:
        """Human-readable storage location (URL with credentials removed)."""
        ...

    async def bootstrap(self) -> None:
        """Create the underlying storage (tables, buckets) if missing."""
        ...

    async def create_snapshot(self, snapshot: StateSnapshot) -> bool:
        """Persist an initial snapshot if none exists for the environment.

        Args:
            snapshot: The initial (version 0) snapshot.

        Returns:
            True if created, False if a snapshot already existed.
        """
        ...

    async def load_snapshot(self, environment: str) -> StateSnapshot | None:
        """Return the current snapshot for an environment, or None."""
        ...

    async def swap_snapshot(
        self,
        snapshot: StateSnapshot,
        expected_version: int,
        token_id: str,
        now_ms: int,
    ) -> bool:
        """Atomically replace the snapshot if version and lock still match.

        Args:
            snapshot: The new snapshot (version already incremented).
            expected_version: Version currently stored.
            token_id: Lock token id the caller holds.
            now_ms: Current time in epoch milliseconds, for expiry checks.

        Returns:
            True if written, False if the version moved or the lock was lost.
        """
        ...

    async def list_environments(self) -> list[str]:
        """Return the names of all environments with a snapshot."""
        ...

    async def delete_environment(self, environment: str) -> None:
        """Remove the snapshot and lock record of an environment."""
        ...

    async def try_acquire_lock(self, token: LockToken) -> LockToken:
        """Take the environment lock unless an unexpired lock exists.

        Args:
            token: The candidate lock.

        Returns:
            The lock now held for the environment: ``token`` on success,
            the existing holder's lock otherwise.
        """
        ...

    async def get_lock(self, environment: str) -> LockToken | None:
        """Return the current lock record, expired or not."""
        ...

    async def refresh_lock(self, token: LockToken) -> bool:
        """Extend a held lock to ``token.expires_at``.

        Returns:
            True if the caller still held the lock, False otherwise.
        """
        ...

    async def release_lock(self, environment: str, token_id: str | None) -> bool:
        """Delete the lock record.

        Args:
            environment: The locked environment.
            token_id: Only release if the stored lock has this id. None forces release.

        Returns:
            True if a lock record was deleted.
        """
        ...


class IResourceExecutor(Protocol):
    """Performs one provider-native resource action."""

    async def execute(
        self,
        environment: str,
        native_type: str,
        action: PlannedAction,
        resource_id: str | None,
    ) -> dict[str, Any]:
        """Execute a resource action.

        Args:
            environment: Environment being applied.
            native_type: Provider-native resource type (e.g., aws_instance).
            action: The planned action.
            resource_id: Existing resource id for updates and destroys.

        Returns:
            Computed attributes reported by the provider. Must include ``id``
            for creates.

        Raises:
            ProviderError: If the action fails.
        """
        ...


class IInfraProvider(Protocol):
    """Provider capability {describe, plan-diff, apply}."""

    @property
    def name(self) -> str:
        """Provider profile name (aws, azure, gcp)."""
        ...

    def describe(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        """Normalize a descriptor's declared attributes for diffing."""
        ...

    def requires_replacement(self, resource_type: str, changed_attributes: Iterable[str]) -> bool:
        """Return True if any changed attribute cannot be updated in place."""
        ...

    async def apply_action(
        self,
        environment: str,
        action: PlannedAction,
        resource_id: str | None,
    ) -> dict[str, Any]:
        """Apply one planned action and return computed attributes."""
        ...


class INotifier(Protocol):
    """External collaborator receiving pipeline notifications."""

    async def send_plan_summary(
        self,
        change_request_id: str,
        plan: PlanDiff,
        findings: list[PolicyFinding],
    ) -> None:
        """Publish a plan summary with its policy findings."""
        ...

    async def request_approval(
        self,
        change_request_id: str,
        environment: str,
        plan: PlanDiff,
        required_approvals: int,
    ) -> None:
        """Ask human approvers to review a change request."""
        ...

    async def send_apply_result(
        self,
        change_request_id: str,
        environment: str,
        outcome: str,
        details: dict[str, Any],
    ) -> None:
        """Publish the outcome of a gated apply."""
        ...

"""State Backend Manager: remote, locked state for every environment.

The manager is the only component that touches persisted state. Every other
component reads and writes snapshots through it:

- acquire_lock(environment, owner)          -> LockToken | LockContentionError
- read_state(environment)                   -> StateSnapshot | UnknownEnvironmentError
- write_state(environment, snapshot, token) -> StateSnapshot | StaleLockError

Writes succeed only while the caller holds a valid, unexpired lock and the
snapshot being written was derived from the currently stored version. Each
successful write increments the version counter by one.
"""

import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from aumos_iac_orchestrator.core.interfaces import IStateStore
from aumos_iac_orchestrator.core.models import LockToken, StateHandle, StateSnapshot
from aumos_iac_orchestrator.errors import (
    LockContentionError,
    StaleLockError,
    UnknownEnvironmentError,
)
from aumos_iac_orchestrator.observability import get_logger

logger = get_logger(__name__)

# Default lock lifetime: overridden by AUMOS_IAC_LOCK_TTL_SECONDS
_DEFAULT_LOCK_TTL_SECONDS = 900


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StateBackendManager:
    """Bootstraps and manages remote, locked state storage.

    Args:
        store: Storage implementation (in-memory or SQL).
        lock_ttl_seconds: Lifetime of a lock before it may be taken over.
        clock: Callable returning the current UTC time. Injected by tests.
    """

    def __init__(
        self,
        store: IStateStore,
        lock_ttl_seconds: int = _DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize StateBackendManager.

        Args:
            store: Storage implementing IStateStore.
            lock_ttl_seconds: Lock lifetime in seconds.
            clock: Source of the current UTC time.
        """
        self._store = store
        self._lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self._clock = clock

    @property
    def location(self) -> str:
        """Storage location of the backend."""
        return self._store.location

    async def bootstrap(self) -> None:
        """Create the backing storage. Safe to call repeatedly."""
        logger.info("Bootstrapping state backend", location=self.location)
        await self._store.bootstrap()

    async def initialize_environment(self, environment: str) -> StateHandle:
        """Create an empty version-0 snapshot for an environment if none exists.

        Args:
            environment: The environment name.

        Returns:
            The environment's StateHandle.
        """
        created = await self._store.create_snapshot(
            StateSnapshot(environment=environment, version=0, updated_at=self._clock())
        )
        if created:
            logger.info("Initialized environment state", environment=environment)
        return await self.describe(environment)

    async def describe(self, environment: str) -> StateHandle:
        """Return the StateHandle of an environment.

        Args:
            environment: The environment name.

        Returns:
            StateHandle with current version and active lock owner.

        Raises:
            UnknownEnvironmentError: If no state exists for the environment.
        """
        snapshot = await self._store.load_snapshot(environment)
        if snapshot is None:
            raise UnknownEnvironmentError(environment)
        lock = await self._store.get_lock(environment)
        lock_owner = lock.owner if lock is not None and not lock.is_expired(self._clock()) else None
        return StateHandle(
            environment=environment,
            location=f"{self.location}#{environment}",
            lock_owner=lock_owner,
            version=snapshot.version,
        )

    async def list_environments(self) -> list[str]:
        """Return the names of all environments with persisted state."""
        return await self._store.list_environments()

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    async def acquire_lock(self, environment: str, owner: str) -> LockToken:
        """Acquire the environment's state lock.

        Never retries: a held lock fails immediately with LockContentionError
        and the caller decides whether to re-acquire.

        Args:
            environment: The environment to lock.
            owner: Identity of the caller (recorded on the lock).

        Returns:
            The LockToken to present on writes and release.

        Raises:
            UnknownEnvironmentError: If the environment has no state.
            LockContentionError: If another unexpired lock exists.
        """
        if await self._store.load_snapshot(environment) is None:
            raise UnknownEnvironmentError(environment)

        now = self._clock()
        candidate = LockToken(
            token_id=str(uuid.uuid4()),
            environment=environment,
            owner=owner,
            acquired_at=now,
            expires_at=now + self._lock_ttl,
        )
        held = await self._store.try_acquire_lock(candidate)
        if held.token_id != candidate.token_id:
            logger.info(
                "Lock contention",
                environment=environment,
                requested_by=owner,
                holder=held.owner,
            )
            raise LockContentionError(environment, holder=held.owner, expires_at=held.expires_at)

        logger.info("Lock acquired", environment=environment, owner=owner, token_id=held.token_id)
        return held

    async def renew_lock(self, token: LockToken) -> LockToken:
        """Extend a held lock by a full TTL from now.

        Args:
            token: The currently held token.

        Returns:
            A new token with the extended expiry.

        Raises:
            StaleLockError: If the lock expired or is held by someone else.
        """
        now = self._clock()
        if token.is_expired(now):
            raise StaleLockError("State lock expired before renewal", environment=token.environment)
        renewed = token.model_copy(update={"expires_at": now + self._lock_ttl})
        if not await self._store.refresh_lock(renewed):
            raise StaleLockError("State lock is no longer held", environment=token.environment)
        return renewed

    async def release_lock(self, token: LockToken) -> None:
        """Release a held lock. Releasing a lock already lost is logged, not raised."""
        released = await self._store.release_lock(token.environment, token.token_id)
        if released:
            logger.info("Lock released", environment=token.environment, owner=token.owner)
        else:
            logger.warning(
                "Lock was not held at release time",
                environment=token.environment,
                owner=token.owner,
                token_id=token.token_id,
            )

    async def force_unlock(self, environment: str, actor: str) -> bool:
        """Remove any lock on an environment regardless of owner.

        Operator break-glass for locks left behind by crashed processes.

        Args:
            environment: The environment to unlock.
            actor: Who forced the unlock (logged).

        Returns:
            True if a lock was removed.
        """
        removed = await self._store.release_lock(environment, None)
        logger.warning("Lock force-released", environment=environment, actor=actor, removed=removed)
        return removed

    @asynccontextmanager
    async def locked(self, environment: str, owner: str) -> AsyncIterator[LockToken]:
        """Hold the environment lock for the duration of a ``with`` block.

        Args:
            environment: The environment to lock.
            owner: Identity of the caller.

        Yields:
            The LockToken.
        """
        token = await self.acquire_lock(environment, owner)
        try:
            yield token
        finally:
            await self.release_lock(token)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def read_state(self, environment: str) -> StateSnapshot:
        """Return the current snapshot of an environment.

        Args:
            environment: The environment name.

        Returns:
            The StateSnapshot.

        Raises:
            UnknownEnvironmentError: If the environment has no state.
        """
        snapshot = await self._store.load_snapshot(environment)
        if snapshot is None:
            raise UnknownEnvironmentError(environment)
        return snapshot

    async def write_state(
        self,
        environment: str,
        snapshot: StateSnapshot,
        token: LockToken,
    ) -> StateSnapshot:
        """Persist a new snapshot under lock.

        ``snapshot.version`` must equal the version currently stored: it names
        the state the new snapshot was derived from. The persisted snapshot
        carries ``version + 1``.

        Args:
            environment: The environment name.
            snapshot: The snapshot to persist.
            token: The lock token held by the caller.

        Returns:
            The persisted snapshot with its new version.

        Raises:
            StaleLockError: If the lock is missing, expired, owned by someone
                else, or the stored version moved.
            UnknownEnvironmentError: If the environment has no state.
        """
        if snapshot.environment != environment or token.environment != environment:
            raise StaleLockError(
                "Snapshot or lock token belongs to a different environment",
                environment=environment,
            )

        now = self._clock()
        held = await self._store.get_lock(environment)
        if held is None or held.token_id != token.token_id:
            raise StaleLockError("State lock is not held by the writer", environment=environment)
        if held.is_expired(now):
            raise StaleLockError("State lock expired", environment=environment)

        current = await self.read_state(environment)
        if current.version != snapshot.version:
            raise StaleLockError(
                f"State version moved from {snapshot.version} to {current.version}",
                environment=environment,
                details={"expected_version": snapshot.version, "current_version": current.version},
            )

        persisted = snapshot.model_copy(update={"version": current.version + 1, "updated_at": now})
        written = await self._store.swap_snapshot(
            persisted,
            expected_version=current.version,
            token_id=token.token_id,
            now_ms=int(now.timestamp() * 1000),
        )
        if not written:
            raise StaleLockError("State changed or lock lost during write", environment=environment)

        logger.info(
            "State written",
            environment=environment,
            version=persisted.version,
            resources=len(persisted.resources),
        )
        return persisted

    async def delete_environment(self, environment: str, token: LockToken) -> None:
        """Delete an environment's snapshot and lock.

        Args:
            environment: The environment name.
            token: Lock token held by the caller.

        Raises:
            StaleLockError: If the caller does not hold the lock.
        """
        held = await self._store.get_lock(environment)
        if held is None or held.token_id != token.token_id or held.is_expired(self._clock()):
            raise StaleLockError("State lock is not held by the caller", environment=environment)
        await self._store.delete_environment(environment)
        logger.info("Environment state deleted", environment=environment)

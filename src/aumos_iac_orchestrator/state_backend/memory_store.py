"""In-memory state store.

Keeps snapshots and lock records in process-local dicts guarded by an
asyncio mutex. Used by tests and by ``memory://`` backend URLs; state does
not survive the process.
"""

import asyncio

from aumos_iac_orchestrator.core.models import LockToken, StateSnapshot


def _ms(token: LockToken) -> int:
    return int(token.expires_at.timestamp() * 1000)


class MemoryStateStore:
    """Process-local implementation of IStateStore."""

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._snapshots: dict[str, StateSnapshot] = {}
        self._locks: dict[str, LockToken] = {}
        self._mutex = asyncio.Lock()

    @property
    def location(self) -> str:
        return "memory://"

    async def bootstrap(self) -> None:
        # Nothing to create for dict-backed storage
        return None

    async def create_snapshot(self, snapshot: StateSnapshot) -> bool:
        async with self._mutex:
            if snapshot.environment in self._snapshots:
                return False
            self._snapshots[snapshot.environment] = snapshot
            return True

    async def load_snapshot(self, environment: str) -> StateSnapshot | None:
        return self._snapshots.get(environment)

    async def swap_snapshot(
        self,
        snapshot: StateSnapshot,
        expected_version: int,
        token_id: str,
        now_ms: int,
    ) -> bool:
        async with self._mutex:
            lock = self._locks.get(snapshot.environment)
            if lock is None or lock.token_id != token_id or _ms(lock) <= now_ms:
                return False
            current = self._snapshots.get(snapshot.environment)
            if current is None or current.version != expected_version:
                return False
            self._snapshots[snapshot.environment] = snapshot
            return True

    async def list_environments(self) -> list[str]:
        return sorted(self._snapshots)

    async def delete_environment(self, environment: str) -> None:
        async with self._mutex:
            self._snapshots.pop(environment, None)
            self._locks.pop(environment, None)

    async def try_acquire_lock(self, token: LockToken) -> LockToken:
        async with self._mutex:
            existing = self._locks.get(token.environment)
            if existing is not None and not existing.is_expired(token.acquired_at):
                return existing
            self._locks[token.environment] = token
            return token

    async def get_lock(self, environment: str) -> LockToken | None:
        return self._locks.get(environment)

    async def refresh_lock(self, token: LockToken) -> bool:
        async with self._mutex:
            existing = self._locks.get(token.environment)
            if existing is None or existing.token_id != token.token_id:
                return False
            self._locks[token.environment] = token
            return True

    async def release_lock(self, environment: str, token_id: str | None) -> bool:
        async with self._mutex:
            existing = self._locks.get(environment)
            if existing is None:
                return False
            if token_id is not None and existing.token_id != token_id:
                return False
            del self._locks[environment]
            return True

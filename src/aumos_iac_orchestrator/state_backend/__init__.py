"""State Backend Manager: remote state with per-environment locking.

Owns snapshot persistence and locking. Storage is pluggable: an in-memory
store for tests and ``memory://`` URLs, and a SQLAlchemy store for SQLite or
PostgreSQL deployments.
"""

from aumos_iac_orchestrator.core.interfaces import IStateStore
from aumos_iac_orchestrator.state_backend.manager import StateBackendManager
from aumos_iac_orchestrator.state_backend.memory_store import MemoryStateStore
from aumos_iac_orchestrator.state_backend.sql_store import SqlStateStore, init_state_engine

MEMORY_BACKEND_URL = "memory://"


def create_state_store(
    url: str,
    pool_size: int = 5,
    max_overflow: int = 2,
    pool_timeout: int = 30,
) -> IStateStore:
    """Build the state store for a backend URL.

    Args:
        url: ``memory://`` or a SQLAlchemy async URL.
        pool_size: Connection pool size for SQL backends.
        max_overflow: Max overflow connections for SQL backends.
        pool_timeout: Connection wait timeout for SQL backends.

    Returns:
        The store implementation.
    """
    if url == MEMORY_BACKEND_URL:
        return MemoryStateStore()
    engine = init_state_engine(url, pool_size=pool_size, max_overflow=max_overflow, pool_timeout=pool_timeout)
    return SqlStateStore(engine)


__all__ = [
    "MEMORY_BACKEND_URL",
    "MemoryStateStore",
    "SqlStateStore",
    "StateBackendManager",
    "create_state_store",
    "init_state_engine",
]

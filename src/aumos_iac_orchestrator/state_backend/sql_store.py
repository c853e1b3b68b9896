"""SQLAlchemy-backed remote state store.

Persists one snapshot row and at most one lock row per environment:

- iac_state_snapshots: environment (PK), version, JSON payload
- iac_state_locks    : environment (PK), token id, owner, acquire/expiry times

Lock exclusivity comes from the primary key on iac_state_locks: acquiring
deletes an expired row and inserts a new one in the same transaction, so two
concurrent acquirers cannot both succeed. Snapshot writes are a conditional
UPDATE on (version, live lock token).

Timestamps are stored as epoch milliseconds so comparisons behave the same
on SQLite and PostgreSQL.

Key exports:
- init_state_engine(...) : build the async engine for a backend URL
- SqlStateStore          : IStateStore implementation
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Integer, String, delete, exists, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from aumos_iac_orchestrator.core.models import LockToken, StateSnapshot
from aumos_iac_orchestrator.observability import get_logger

logger = get_logger(__name__)


def _to_ms(value: datetime) -> int:
    """Convert a datetime to Unix epoch milliseconds (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


class StateBase(DeclarativeBase):
    """Declarative base for state backend tables."""


class StateSnapshotRow(StateBase):
    """One row per environment holding the serialized StateSnapshot."""

    __tablename__ = "iac_state_snapshots"

    environment: Mapped[str] = mapped_column(
        String(63),
        primary_key=True,
        comment="Environment name; one snapshot per environment",
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Optimistic concurrency counter, incremented by every write",
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="StateSnapshot serialized with model_dump(mode='json')",
    )
    updated_at_ms: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Epoch milliseconds of the last write (UTC)",
    )


class StateLockRow(StateBase):
    """At most one row per environment: the current lock holder."""

    __tablename__ = "iac_state_locks"

    environment: Mapped[str] = mapped_column(String(63), primary_key=True)
    token_id: Mapped[str] = mapped_column(String(36), nullable=False)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    def to_token(self) -> LockToken:
        """Convert the row to a LockToken."""
        return LockToken(
            token_id=self.token_id,
            environment=self.environment,
            owner=self.owner,
            acquired_at=_from_ms(self.acquired_at_ms),
            expires_at=_from_ms(self.expires_at_ms),
        )


def init_state_engine(
    url: str,
    pool_size: int = 5,
    max_overflow: int = 2,
    pool_timeout: int = 30,
) -> AsyncEngine:
    """Create the async engine for the state database.

    Args:
        url: SQLAlchemy async URL (sqlite+aiosqlite://..., postgresql+asyncpg://...).
        pool_size: Connection pool size (ignored for SQLite).
        max_overflow: Max overflow connections above pool_size (ignored for SQLite).
        pool_timeout: Seconds to wait for a connection (ignored for SQLite).

    Returns:
        The configured AsyncEngine.
    """
    engine_kwargs: dict[str, Any] = {"echo": False}
    if not make_url(url).get_backend_name().startswith("sqlite"):
        engine_kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_pre_ping=True,
        )

    logger.info("Initializing state backend engine", backend=make_url(url).get_backend_name())
    return create_async_engine(url, **engine_kwargs)


class SqlStateStore:
    """IStateStore implementation over a SQLAlchemy async engine.

    Args:
        engine: The async engine for the state database.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        """Initialize SqlStateStore with an engine.

        Args:
            engine: The SQLAlchemy async engine.
        """
        self._engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def location(self) -> str:
        return self._engine.url.render_as_string(hide_password=True)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def bootstrap(self) -> None:
        """Create every table registered on StateBase if it does not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(StateBase.metadata.create_all)
        logger.info("State backend tables ensured", location=self.location)

    async def dispose(self) -> None:
        """Dispose the underlying engine."""
        await self._engine.dispose()

    async def create_snapshot(self, snapshot: StateSnapshot) -> bool:
        row = StateSnapshotRow(
            environment=snapshot.environment,
            version=snapshot.version,
            payload=snapshot.model_dump(mode="json"),
            updated_at_ms=_to_ms(snapshot.updated_at or datetime.now(UTC)),
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(row)
        except IntegrityError:
            return False
        return True

    async def load_snapshot(self, environment: str) -> StateSnapshot | None:
        async with self._session_factory() as session:
            row = await session.get(StateSnapshotRow, environment)
            if row is None:
                return None
            return StateSnapshot.model_validate(row.payload)

    async def swap_snapshot(
        self,
        snapshot: StateSnapshot,
        expected_version: int,
        token_id: str,
        now_ms: int,
    ) -> bool:
        lock_is_live = exists().where(
            StateLockRow.environment == snapshot.environment,
            StateLockRow.token_id == token_id,
            StateLockRow.expires_at_ms > now_ms,
        )
        stmt = (
            update(StateSnapshotRow)
            .where(
                StateSnapshotRow.environment == snapshot.environment,
                StateSnapshotRow.version == expected_version,
                lock_is_live,
            )
            .values(
                version=snapshot.version,
                payload=snapshot.model_dump(mode="json"),
                updated_at_ms=now_ms,
            )
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def list_environments(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(StateSnapshotRow.environment).order_by(StateSnapshotRow.environment)
            )
            return list(result.scalars().all())

    async def delete_environment(self, environment: str) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(delete(StateLockRow).where(StateLockRow.environment == environment))
            await session.execute(
                delete(StateSnapshotRow).where(StateSnapshotRow.environment == environment)
            )

    async def try_acquire_lock(self, token: LockToken) -> LockToken:
        now_ms = _to_ms(token.acquired_at)
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(
                    delete(StateLockRow).where(
                        StateLockRow.environment == token.environment,
                        StateLockRow.expires_at_ms <= now_ms,
                    )
                )
                session.add(
                    StateLockRow(
                        environment=token.environment,
                        token_id=token.token_id,
                        owner=token.owner,
                        acquired_at_ms=now_ms,
                        expires_at_ms=_to_ms(token.expires_at),
                    )
                )
        except IntegrityError:
            existing = await self.get_lock(token.environment)
            if existing is None:
                # Holder released between our insert and read; report contention anyway
                return token.model_copy(update={"token_id": "", "owner": "unknown"})
            return existing
        return token

    async def get_lock(self, environment: str) -> LockToken | None:
        async with self._session_factory() as session:
            row = await session.get(StateLockRow, environment)
            return row.to_token() if row is not None else None

    async def refresh_lock(self, token: LockToken) -> bool:
        stmt = (
            update(StateLockRow)
            .where(
                StateLockRow.environment == token.environment,
                StateLockRow.token_id == token.token_id,
            )
            .values(expires_at_ms=_to_ms(token.expires_at))
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def release_lock(self, environment: str, token_id: str | None) -> bool:
        stmt = delete(StateLockRow).where(StateLockRow.environment == environment)
        if token_id is not None:
            stmt = stmt.where(StateLockRow.token_id == token_id)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount > 0

"""SQLAlchemy-backed change request records and history.

Shares the state backend's engine and declarative metadata, so
``SqlStateStore.bootstrap`` creates these tables alongside the snapshot and
lock tables:

- iac_change_requests       : change_request_id (PK), version, JSON payload
- iac_change_request_events : event_id (PK), change_request_id, JSON payload

Saves are a conditional UPDATE on the stored version, the same optimistic
check the state backend applies to snapshots. Events are insert-only.
"""

from typing import Any

from sqlalchemy import JSON, BigInteger, Integer, String, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from aumos_iac_orchestrator.errors import (
    InvalidTransitionError,
    StaleRecordError,
    UnknownChangeRequestError,
)
from aumos_iac_orchestrator.observability import get_logger
from aumos_iac_orchestrator.pipeline.records import ChangeRequest, ChangeRequestEvent
from aumos_iac_orchestrator.state_backend.sql_store import StateBase, _to_ms

logger = get_logger(__name__)


class ChangeRequestRow(StateBase):
    """Latest version of one change request."""

    __tablename__ = "iac_change_requests"

    change_request_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    environment: Mapped[str] = mapped_column(String(63), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Optimistic concurrency counter, incremented by every transition",
    )
    created_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="ChangeRequest serialized with model_dump(mode='json')",
    )


class ChangeRequestEventRow(StateBase):
    """One immutable history event."""

    __tablename__ = "iac_change_request_events"

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    change_request_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    record_version: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


def _session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


class SqlChangeRequestStore:
    """Change request store over the state backend's async engine.

    Args:
        engine: The async engine for the state database.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._session_factory = _session_factory(engine)

    async def create(self, record: ChangeRequest) -> ChangeRequest:
        """Insert a new change request.

        Raises:
            InvalidTransitionError: If the id already exists.
        """
        row = ChangeRequestRow(
            change_request_id=record.change_request_id,
            environment=record.environment,
            stage=record.stage,
            version=record.version,
            created_at_ms=_to_ms(record.created_at),
            payload=record.model_dump(mode="json"),
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(row)
        except IntegrityError as exc:
            raise InvalidTransitionError(
                f"Change request '{record.change_request_id}' already exists",
                environment=record.environment,
                details={"change_request_id": record.change_request_id},
            ) from exc
        return record

    async def get(self, change_request_id: str) -> ChangeRequest:
        """Return the latest record.

        Raises:
            UnknownChangeRequestError: If the id does not exist.
        """
        async with self._session_factory() as session:
            row = await session.get(ChangeRequestRow, change_request_id)
            if row is None:
                raise UnknownChangeRequestError(change_request_id)
            return ChangeRequest.model_validate(row.payload)

    async def save(self, record: ChangeRequest, expected_version: int) -> ChangeRequest:
        """Replace a record if the stored version still equals ``expected_version``.

        Raises:
            UnknownChangeRequestError: If the id does not exist.
            StaleRecordError: If the stored record moved on.
        """
        stmt = (
            update(ChangeRequestRow)
            .where(
                ChangeRequestRow.change_request_id == record.change_request_id,
                ChangeRequestRow.version == expected_version,
            )
            .values(
                stage=record.stage,
                version=record.version,
                payload=record.model_dump(mode="json"),
            )
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            if result.rowcount == 1:
                return record
            stored_version = await session.scalar(
                select(ChangeRequestRow.version).where(
                    ChangeRequestRow.change_request_id == record.change_request_id
                )
            )

        if stored_version is None:
            raise UnknownChangeRequestError(record.change_request_id)
        logger.warning(
            "Change request save lost a version race",
            change_request_id=record.change_request_id,
            stored_version=stored_version,
            expected_version=expected_version,
        )
        raise StaleRecordError(
            f"Change request is at version {stored_version}, expected {expected_version}",
            environment=record.environment,
            details={"change_request_id": record.change_request_id},
        )

    async def list_records(self, environment: str | None = None) -> list[ChangeRequest]:
        """Return change requests, optionally filtered by environment, oldest first."""
        stmt = select(ChangeRequestRow.payload).order_by(
            ChangeRequestRow.created_at_ms, ChangeRequestRow.change_request_id
        )
        if environment is not None:
            stmt = stmt.where(ChangeRequestRow.environment == environment)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [ChangeRequest.model_validate(payload) for payload in result.scalars().all()]


class SqlChangeRequestHistory:
    """Insert-only change request history over the state backend's async engine.

    Args:
        engine: The async engine for the state database.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._session_factory = _session_factory(engine)

    async def append(self, event: ChangeRequestEvent) -> None:
        async with self._session_factory() as session, session.begin():
            session.add(
                ChangeRequestEventRow(
                    event_id=event.event_id,
                    change_request_id=event.change_request_id,
                    record_version=event.record_version,
                    timestamp_ms=event.timestamp_ms,
                    payload=event.model_dump(mode="json"),
                )
            )

    async def query_range(self, change_request_id: str, start_ts: int, end_ts: int) -> list[ChangeRequestEvent]:
        """Return events within [start_ts, end_ts] (inclusive), oldest first."""
        return await self._select(
            change_request_id,
            ChangeRequestEventRow.timestamp_ms >= start_ts,
            ChangeRequestEventRow.timestamp_ms <= end_ts,
        )

    async def get_all_events(self, change_request_id: str) -> list[ChangeRequestEvent]:
        return await self._select(change_request_id)

    async def _select(self, change_request_id: str, *criteria: Any) -> list[ChangeRequestEvent]:
        stmt = (
            select(ChangeRequestEventRow.payload)
            .where(ChangeRequestEventRow.change_request_id == change_request_id, *criteria)
            .order_by(ChangeRequestEventRow.timestamp_ms, ChangeRequestEventRow.record_version)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [ChangeRequestEvent.model_validate(payload) for payload in result.scalars().all()]

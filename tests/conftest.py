"""Test fixtures for aumos-iac-orchestrator.

Provides:
- settings: Settings using the in-memory state backend
- store / state_backend: MemoryStateStore behind a StateBackendManager
- registry: WorkspaceRegistry over the state backend
- executor / provider: SimulatedExecutor behind the AWS CloudProvider
- engine: PlanApplyEngine wired to the above
- gate: PolicyGate with the built-in rules
- notifier: AsyncMock INotifier capturing calls
- pipeline: PipelineController requiring one approval
- dev_env: a registered "dev" environment

Helpers (importable from tests.conftest):
- make_resource / make_action / make_plan: domain record builders
- FakeClock: controllable UTC clock for lock expiry tests
"""

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from aumos_iac_orchestrator.core.models import (
    ActionKind,
    Environment,
    PlanDiff,
    PlannedAction,
    ResourceDescriptor,
)
from aumos_iac_orchestrator.engine.service import PlanApplyEngine
from aumos_iac_orchestrator.pipeline.controller import PipelineController
from aumos_iac_orchestrator.pipeline.records import ChangeRequestHistory, ChangeRequestStore
from aumos_iac_orchestrator.policy.gate import PolicyGate
from aumos_iac_orchestrator.providers.cloud import CloudProvider
from aumos_iac_orchestrator.providers.profiles import AWS_PROFILE
from aumos_iac_orchestrator.providers.simulated import SimulatedExecutor
from aumos_iac_orchestrator.settings import Settings
from aumos_iac_orchestrator.state_backend.manager import StateBackendManager
from aumos_iac_orchestrator.state_backend.memory_store import MemoryStateStore
from aumos_iac_orchestrator.workspace.registry import WorkspaceRegistry

TEST_OWNER = "test-runner"


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_resource(
    resource_type: str = "instance",
    name: str = "web",
    depends_on: Sequence[str] = (),
    **attributes: Any,
) -> ResourceDescriptor:
    """Create a ResourceDescriptor for tests.

    Args:
        resource_type: Resource type.
        name: Resource name.
        depends_on: Dependency addresses.
        **attributes: Declared attributes.

    Returns:
        The descriptor.
    """
    return ResourceDescriptor(
        type=resource_type,
        name=name,
        attributes=attributes,
        depends_on=tuple(depends_on),
    )


def make_action(
    action: ActionKind = "create",
    resource_type: str = "instance",
    name: str = "web",
    after: dict[str, Any] | None = None,
    **fields: Any,
) -> PlannedAction:
    """Create a PlannedAction for policy and notifier tests."""
    return PlannedAction(
        action=action,
        address=f"{resource_type}.{name}",
        resource_type=resource_type,
        name=name,
        after=after if action != "destroy" else None,
        **fields,
    )


def make_plan(actions: Sequence[PlannedAction] = (), environment: str = "dev") -> PlanDiff:
    """Create a PlanDiff around the given actions."""
    return PlanDiff(
        plan_id="plan-test-1",
        environment=environment,
        base_version=0,
        variables_fingerprint="f" * 64,
        variables_revision=1,
        actions=tuple(actions),
        created_at=datetime(2026, 1, 15, 12, 0, tzinfo=UTC),
    )


@pytest.fixture()
def settings() -> Settings:
    """Return Settings using the in-memory backend and plain-text logs."""
    return Settings(
        state_backend_url="memory://",
        lock_owner=TEST_OWNER,
        log_json=False,
        policy_override_actors=["security-lead"],
    )


@pytest.fixture()
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture()
def state_backend(store: MemoryStateStore) -> StateBackendManager:
    """Return a StateBackendManager with a 60 second lock TTL."""
    return StateBackendManager(store, lock_ttl_seconds=60)


@pytest.fixture()
def registry(state_backend: StateBackendManager) -> WorkspaceRegistry:
    return WorkspaceRegistry(state_backend)


@pytest.fixture()
def executor() -> SimulatedExecutor:
    return SimulatedExecutor(AWS_PROFILE)


@pytest.fixture()
def provider(executor: SimulatedExecutor) -> CloudProvider:
    return CloudProvider(AWS_PROFILE, executor)


@pytest.fixture()
def engine(
    state_backend: StateBackendManager,
    registry: WorkspaceRegistry,
    provider: CloudProvider,
) -> PlanApplyEngine:
    """Return a PlanApplyEngine over the in-memory backend and simulated provider."""
    return PlanApplyEngine(state_backend, registry, provider, lock_owner=TEST_OWNER)


@pytest.fixture()
def gate() -> PolicyGate:
    return PolicyGate()


@pytest.fixture()
def notifier() -> AsyncMock:
    """Create a mock INotifier that captures all calls.

    Returns:
        AsyncMock with every notification method returning None.
    """
    mock = AsyncMock()
    mock.send_plan_summary.return_value = None
    mock.request_approval.return_value = None
    mock.send_apply_result.return_value = None
    return mock


@pytest.fixture()
def pipeline(engine: PlanApplyEngine, gate: PolicyGate, notifier: AsyncMock) -> PipelineController:
    """Return a PipelineController requiring one approval, with one override actor."""
    return PipelineController(
        engine,
        gate,
        notifier,
        ChangeRequestStore(),
        ChangeRequestHistory(),
        required_approvals=1,
        override_actors=["security-lead"],
    )


@pytest.fixture()
async def dev_env(registry: WorkspaceRegistry) -> Environment:
    """Register the "dev" environment with a small instance size."""
    return await registry.register("dev", {"instance_size": "small"})

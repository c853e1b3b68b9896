"""Tests for the Plan/Apply Engine against the in-memory state backend.

Covers the plan -> apply round trip, idempotence, stale plan detection,
partial-apply recovery after a provider failure, cancellation, replacement
with create-before-destroy, and serialization of concurrent applies.
"""

import asyncio
from typing import Any

import pytest

from aumos_iac_orchestrator.core.models import Environment, PlannedAction
from aumos_iac_orchestrator.engine.service import PlanApplyEngine
from aumos_iac_orchestrator.errors import (
    ApplyConflictError,
    ApplyFailedError,
    LockContentionError,
    PlanValidationError,
    UnknownEnvironmentError,
)
from aumos_iac_orchestrator.providers.cloud import CloudProvider
from aumos_iac_orchestrator.providers.profiles import AWS_PROFILE
from aumos_iac_orchestrator.providers.simulated import SimulatedExecutor
from aumos_iac_orchestrator.state_backend.manager import StateBackendManager
from aumos_iac_orchestrator.workspace.registry import WorkspaceRegistry
from tests.conftest import TEST_OWNER, make_resource

NETWORK = [
    make_resource("vpc", "main", cidr_block="10.0.0.0/16"),
    make_resource("subnet", "private", depends_on=["vpc.main"], cidr_block="10.0.1.0/24", vpc="main"),
    make_resource("instance", "web", depends_on=["subnet.private"], size="${var.instance_size}"),
]


class BlockingExecutor:
    """Executor that never finishes the action for one address."""

    def __init__(self, inner: SimulatedExecutor, block_on: str) -> None:
        self._inner = inner
        self._block_on = block_on
        self.reached = asyncio.Event()

    async def execute(
        self,
        environment: str,
        native_type: str,
        action: PlannedAction,
        resource_id: str | None,
    ) -> dict[str, Any]:
        if action.address == self._block_on:
            self.reached.set()
            await asyncio.Event().wait()
        return await self._inner.execute(environment, native_type, action, resource_id)


# ---------------------------------------------------------------------------
# Test 1: dev/web scenario, one create, then an empty plan
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_dev_web_scenario(
    engine: PlanApplyEngine,
    state_backend: StateBackendManager,
    dev_env: Environment,
) -> None:
    desired = [make_resource("instance", "web", size="small")]

    first = await engine.plan("dev", desired)
    assert [action.key for action in first.actions] == ["create:instance.web"]
    assert first.base_version == 0

    result = await engine.apply(first, "dev")
    assert result.applied_actions == ("create:instance.web",)

    snapshot = await state_backend.read_state("dev")
    record = snapshot.resources["instance.web"]
    assert record.attributes == {"size": "small"}
    assert record.resource_id is not None and record.resource_id.startswith("i-")
    assert record.computed["native_type"] == "aws_instance"
    assert snapshot.partial_apply is None

    second = await engine.plan("dev", desired)
    assert second.is_empty
    assert second.base_version == result.state_version


# ---------------------------------------------------------------------------
# Test 2: round trip, plan immediately followed by apply never conflicts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_plan_then_apply_round_trip(
    engine: PlanApplyEngine,
    registry: WorkspaceRegistry,
    dev_env: Environment,
) -> None:
    for size in ("small", "medium", "large"):
        await registry.update_variables("dev", {"instance_size": size})
        plan = await engine.plan("dev", NETWORK)
        await engine.apply(plan, "dev")

    final = await engine.plan("dev", NETWORK)
    assert final.is_empty


# ---------------------------------------------------------------------------
# Test 3: idempotence, reapplying a consumed plan conflicts, state converged
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_reapplying_a_plan_conflicts_and_state_is_converged(
    engine: PlanApplyEngine,
    dev_env: Environment,
) -> None:
    plan = await engine.plan("dev", NETWORK)
    await engine.apply(plan, "dev")

    with pytest.raises(ApplyConflictError):
        await engine.apply(plan, "dev")

    assert (await engine.plan("dev", NETWORK)).is_empty


# ---------------------------------------------------------------------------
# Test 4: stale plan, state moved since planning
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_stale_plan_raises_apply_conflict(
    engine: PlanApplyEngine,
    state_backend: StateBackendManager,
    dev_env: Environment,
) -> None:
    stale = await engine.plan("dev", NETWORK)
    fresh = await engine.plan("dev", [make_resource("bucket", "assets", acl="private")])
    await engine.apply(fresh, "dev")

    with pytest.raises(ApplyConflictError) as exc_info:
        await engine.apply(stale, "dev")

    assert exc_info.value.exit_code == 3
    assert exc_info.value.details == {"plan_version": 0, "current_version": 1}
    assert set((await state_backend.read_state("dev")).resources) == {"bucket.assets"}


# ---------------------------------------------------------------------------
# Test 5: stale plan, variables changed since planning
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_variable_change_invalidates_plan(
    engine: PlanApplyEngine,
    registry: WorkspaceRegistry,
    dev_env: Environment,
) -> None:
    plan = await engine.plan("dev", NETWORK)
    await registry.update_variables("dev", {"instance_size": "large"})

    with pytest.raises(ApplyConflictError, match="variables changed"):
        await engine.apply(plan, "dev")


# ---------------------------------------------------------------------------
# Test 6: a plan cannot be applied to another environment
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_plan_for_other_environment_conflicts(
    engine: PlanApplyEngine,
    registry: WorkspaceRegistry,
    dev_env: Environment,
) -> None:
    await registry.register("prod", {"instance_size": "small"})
    plan = await engine.plan("dev", NETWORK)

    with pytest.raises(ApplyConflictError):
        await engine.apply(plan, "prod")


# ---------------------------------------------------------------------------
# Test 7: plan errors
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_plan_errors(engine: PlanApplyEngine, dev_env: Environment) -> None:
    with pytest.raises(UnknownEnvironmentError):
        await engine.plan("stage", NETWORK)
    with pytest.raises(PlanValidationError):
        await engine.plan("dev", [make_resource(size="${var.undefined}")])


# ---------------------------------------------------------------------------
# Test 8: plan waits for nobody, a held lock fails immediately
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_plan_on_locked_environment_raises(
    engine: PlanApplyEngine,
    state_backend: StateBackendManager,
    dev_env: Environment,
) -> None:
    await state_backend.acquire_lock("dev", "someone-else")

    with pytest.raises(LockContentionError):
        await engine.plan("dev", NETWORK)


# ---------------------------------------------------------------------------
# Test 9: checkpointing writes one version per action
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_checkpoint_each_action(engine: PlanApplyEngine, dev_env: Environment) -> None:
    plan = await engine.plan("dev", NETWORK)

    result = await engine.apply(plan, "dev")

    assert result.state_version == 3


@pytest.mark.asyncio()
async def test_single_write_without_checkpointing(
    state_backend: StateBackendManager,
    registry: WorkspaceRegistry,
    provider: CloudProvider,
    dev_env: Environment,
) -> None:
    engine = PlanApplyEngine(state_backend, registry, provider, lock_owner=TEST_OWNER, checkpoint_each_action=False)
    plan = await engine.plan("dev", NETWORK)

    result = await engine.apply(plan, "dev")

    assert result.state_version == 1


# ---------------------------------------------------------------------------
# Test 10: provider failure leaves completed actions and a marker
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_partial_failure_records_progress_and_recovers(
    engine: PlanApplyEngine,
    executor: SimulatedExecutor,
    state_backend: StateBackendManager,
    dev_env: Environment,
) -> None:
    executor.fail_on = {"instance.web"}
    plan = await engine.plan("dev", NETWORK)

    with pytest.raises(ApplyFailedError) as exc_info:
        await engine.apply(plan, "dev")

    error = exc_info.value
    assert error.resource == "instance.web"
    assert error.completed_actions == ["create:vpc.main", "create:subnet.private"]

    snapshot = await state_backend.read_state("dev")
    assert set(snapshot.resources) == {"vpc.main", "subnet.private"}
    assert snapshot.version == error.state_version
    marker = snapshot.partial_apply
    assert marker is not None
    assert marker.status == "failed"
    assert marker.plan_id == plan.plan_id
    assert marker.failed_action == "create:instance.web"
    assert marker.completed_actions == ("create:vpc.main", "create:subnet.private")
    assert (await state_backend.describe("dev")).lock_owner is None

    executor.fail_on.clear()
    recovery = await engine.plan("dev", NETWORK)
    assert [action.key for action in recovery.actions] == ["create:instance.web"]
    assert recovery.recovering_from == marker

    await engine.apply(recovery, "dev")
    assert (await state_backend.read_state("dev")).partial_apply is None


# ---------------------------------------------------------------------------
# Test 11: an empty plan clears a leftover partial-apply marker
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_empty_plan_clears_marker(
    engine: PlanApplyEngine,
    executor: SimulatedExecutor,
    state_backend: StateBackendManager,
    dev_env: Environment,
) -> None:
    executor.fail_on = {"instance.web"}
    with pytest.raises(ApplyFailedError):
        await engine.apply(await engine.plan("dev", NETWORK), "dev")

    converged = await engine.plan("dev", NETWORK[:2])
    assert converged.is_empty
    await engine.apply(converged, "dev")

    assert (await state_backend.read_state("dev")).partial_apply is None


# ---------------------------------------------------------------------------
# Test 12: cancellation records progress and releases the lock
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_cancelled_apply_leaves_consistent_state(
    state_backend: StateBackendManager,
    registry: WorkspaceRegistry,
    dev_env: Environment,
) -> None:
    blocking = BlockingExecutor(SimulatedExecutor(AWS_PROFILE), block_on="instance.web")
    engine = PlanApplyEngine(state_backend, registry, CloudProvider(AWS_PROFILE, blocking), lock_owner=TEST_OWNER)
    plan = await engine.plan("dev", NETWORK)

    task = asyncio.create_task(engine.apply(plan, "dev"))
    await blocking.reached.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    snapshot = await state_backend.read_state("dev")
    assert set(snapshot.resources) == {"vpc.main", "subnet.private"}
    assert snapshot.partial_apply is not None
    assert snapshot.partial_apply.status == "cancelled"
    assert snapshot.partial_apply.failed_action == "create:instance.web"
    assert (await state_backend.describe("dev")).lock_owner is None


# ---------------------------------------------------------------------------
# Test 13: concurrent applies on one environment are serialized
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_concurrent_applies_are_serialized(
    engine: PlanApplyEngine,
    state_backend: StateBackendManager,
    dev_env: Environment,
) -> None:
    first = await engine.plan("dev", [make_resource("instance", "web", size="small")])
    second = await engine.plan("dev", [make_resource("instance", "api", size="small")])

    outcomes = await asyncio.gather(engine.apply(first, "dev"), engine.apply(second, "dev"), return_exceptions=True)

    errors = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], (LockContentionError, ApplyConflictError))

    snapshot = await state_backend.read_state("dev")
    assert len(snapshot.resources) == 1
    assert snapshot.version == 1


@pytest.mark.asyncio()
async def test_environments_apply_independently(
    engine: PlanApplyEngine,
    registry: WorkspaceRegistry,
    dev_env: Environment,
) -> None:
    await registry.register("prod", {"instance_size": "large"})
    dev_plan = await engine.plan("dev", NETWORK)
    prod_plan = await engine.plan("prod", NETWORK)

    dev_result, prod_result = await asyncio.gather(engine.apply(dev_plan, "dev"), engine.apply(prod_plan, "prod"))

    assert dev_result.state_version == 3
    assert prod_result.state_version == 3


# ---------------------------------------------------------------------------
# Test 14: replacement with dependents creates before destroying
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_create_before_destroy_replacement(
    engine: PlanApplyEngine,
    executor: SimulatedExecutor,
    state_backend: StateBackendManager,
    dev_env: Environment,
) -> None:
    await engine.apply(await engine.plan("dev", NETWORK), "dev")
    old_id = (await state_backend.read_state("dev")).resources["subnet.private"].resource_id

    moved = [
        NETWORK[0],
        make_resource("subnet", "private", depends_on=["vpc.main"], cidr_block="10.0.2.0/24", vpc="main"),
        NETWORK[2],
    ]
    plan = await engine.plan("dev", moved)
    assert [action.key for action in plan.actions] == [
        "create:subnet.private",
        f"destroy:subnet.private:deposed:{old_id}",
    ]
    assert plan.summary() == {"create": 1, "update": 0, "destroy": 1, "replace": 1}

    await engine.apply(plan, "dev")

    snapshot = await state_backend.read_state("dev")
    assert snapshot.deposed == {}
    assert snapshot.resources["subnet.private"].resource_id != old_id
    assert old_id not in executor.inventory["dev"]
    assert (await engine.plan("dev", moved)).is_empty


# ---------------------------------------------------------------------------
# Test 15: plan_destroy removes everything in reverse dependency order
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_plan_destroy(
    engine: PlanApplyEngine,
    executor: SimulatedExecutor,
    state_backend: StateBackendManager,
    dev_env: Environment,
) -> None:
    await engine.apply(await engine.plan("dev", NETWORK), "dev")

    plan = await engine.plan_destroy("dev")
    assert [action.key for action in plan.actions] == [
        "destroy:instance.web",
        "destroy:subnet.private",
        "destroy:vpc.main",
    ]

    await engine.apply(plan, "dev")

    assert (await state_backend.read_state("dev")).is_empty
    assert executor.inventory["dev"] == {}

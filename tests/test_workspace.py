"""Tests for the Workspace Registry.

Covers: registration and name validation, state isolation per environment,
immutable variable sets and revisions, planned flag, and teardown.
"""

from unittest.mock import patch

import pytest

from aumos_iac_orchestrator.core.models import ResourceRecord, fingerprint_variables
from aumos_iac_orchestrator.errors import (
    DuplicateEnvironmentError,
    LockContentionError,
    OrchestratorError,
    PlanValidationError,
    UnknownEnvironmentError,
)
from aumos_iac_orchestrator.state_backend.manager import StateBackendManager
from aumos_iac_orchestrator.workspace.registry import WorkspaceRegistry


class TestRegistration:
    """register / resolve / list_environments."""

    @pytest.mark.asyncio()
    async def test_register_initializes_isolated_state(
        self, registry: WorkspaceRegistry, state_backend: StateBackendManager
    ) -> None:
        dev = await registry.register("dev", {"instance_size": "small"})
        prod = await registry.register("prod", {"instance_size": "large"})

        assert dev.state.location == "memory://#dev"
        assert prod.state.location == "memory://#prod"
        assert dev.variables_revision == 1
        assert dev.variables_fingerprint == fingerprint_variables({"instance_size": "small"})
        assert dev.planned is False
        assert await state_backend.list_environments() == ["dev", "prod"]

    @pytest.mark.asyncio()
    async def test_duplicate_name_raises(self, registry: WorkspaceRegistry) -> None:
        await registry.register("dev")
        with pytest.raises(DuplicateEnvironmentError):
            await registry.register("dev")

    @pytest.mark.parametrize("name", ["", "Dev", "-dev", "dev env", "a" * 64])
    @pytest.mark.asyncio()
    async def test_invalid_names_are_rejected(self, registry: WorkspaceRegistry, name: str) -> None:
        with pytest.raises(PlanValidationError):
            await registry.register(name)

    @pytest.mark.asyncio()
    async def test_resolve_unknown_raises(self, registry: WorkspaceRegistry) -> None:
        with pytest.raises(UnknownEnvironmentError):
            await registry.resolve("stage")

    @pytest.mark.asyncio()
    async def test_resolve_reports_live_lock_owner(
        self, registry: WorkspaceRegistry, state_backend: StateBackendManager
    ) -> None:
        await registry.register("dev")
        await state_backend.acquire_lock("dev", "ci-runner-7")

        environment = await registry.resolve("dev")

        assert environment.state.lock_owner == "ci-runner-7"

    @pytest.mark.asyncio()
    async def test_list_environments_sorted(self, registry: WorkspaceRegistry) -> None:
        for name in ("prod", "dev", "stage"):
            await registry.register(name)

        names = [environment.name for environment in await registry.list_environments()]

        assert names == ["dev", "prod", "stage"]


class TestVariables:
    """Variable sets are immutable; changes produce new revisions."""

    @pytest.mark.asyncio()
    async def test_variables_are_read_only(self, registry: WorkspaceRegistry) -> None:
        environment = await registry.register("dev", {"instance_size": "small"})

        with pytest.raises(TypeError):
            environment.variables["instance_size"] = "large"  # type: ignore[index]

    @pytest.mark.asyncio()
    async def test_caller_mutation_does_not_leak(self, registry: WorkspaceRegistry) -> None:
        variables = {"instance_size": "small"}
        await registry.register("dev", variables)

        variables["instance_size"] = "large"

        assert (await registry.resolve("dev")).variables["instance_size"] == "small"

    @pytest.mark.asyncio()
    async def test_update_variables_bumps_revision_and_clears_planned(self, registry: WorkspaceRegistry) -> None:
        environment = await registry.register("dev", {"instance_size": "small"})
        await registry.mark_planned("dev", environment.variables_fingerprint)
        assert (await registry.resolve("dev")).planned is True

        updated = await registry.update_variables("dev", {"instance_size": "large"})

        assert updated.variables_revision == 2
        assert updated.variables_fingerprint != environment.variables_fingerprint
        assert updated.planned is False

    @pytest.mark.asyncio()
    async def test_update_with_same_variables_is_noop(self, registry: WorkspaceRegistry) -> None:
        await registry.register("dev", {"instance_size": "small"})

        same = await registry.update_variables("dev", {"instance_size": "small"})

        assert same.variables_revision == 1

    @pytest.mark.asyncio()
    async def test_mark_planned_ignores_outdated_fingerprint(self, registry: WorkspaceRegistry) -> None:
        environment = await registry.register("dev", {"instance_size": "small"})
        await registry.update_variables("dev", {"instance_size": "large"})

        await registry.mark_planned("dev", environment.variables_fingerprint)

        assert (await registry.resolve("dev")).planned is False

    @pytest.mark.asyncio()
    async def test_ensure_registers_then_updates(self, registry: WorkspaceRegistry) -> None:
        created = await registry.ensure("dev", {"instance_size": "small"})
        updated = await registry.ensure("dev", {"instance_size": "medium"})

        assert created.variables_revision == 1
        assert updated.variables_revision == 2
        assert dict(updated.variables) == {"instance_size": "medium"}


class TestTeardown:
    """teardown removes registration and state."""

    @pytest.mark.asyncio()
    async def test_teardown_empty_environment(
        self, registry: WorkspaceRegistry, state_backend: StateBackendManager
    ) -> None:
        await registry.register("dev")

        await registry.teardown("dev", owner="operator")

        with pytest.raises(UnknownEnvironmentError):
            await registry.resolve("dev")
        assert await state_backend.list_environments() == []

    @pytest.mark.asyncio()
    async def test_teardown_with_resources_requires_force(
        self, registry: WorkspaceRegistry, state_backend: StateBackendManager
    ) -> None:
        await registry.register("dev")
        async with state_backend.locked("dev", "seed") as token:
            snapshot = await state_backend.read_state("dev")
            record = ResourceRecord(address="instance.web", type="instance", name="web", resource_id="i-1")
            await state_backend.write_state(
                "dev", snapshot.model_copy(update={"resources": {"instance.web": record}}), token
            )

        with pytest.raises(OrchestratorError) as exc_info:
            await registry.teardown("dev", owner="operator")
        assert exc_info.value.details == {"resources": ["instance.web"]}

        await registry.teardown("dev", owner="operator", force=True)
        assert await registry.list_environments() == []

    @pytest.mark.asyncio()
    async def test_teardown_locked_environment_raises(
        self, registry: WorkspaceRegistry, state_backend: StateBackendManager
    ) -> None:
        await registry.register("dev")
        await state_backend.acquire_lock("dev", "ci-runner-7")

        with pytest.raises(LockContentionError):
            await registry.teardown("dev", owner="operator")
        assert (await registry.resolve("dev")).name == "dev"

    @pytest.mark.asyncio()
    async def test_teardown_does_not_release_the_deleted_lock(
        self, registry: WorkspaceRegistry, state_backend: StateBackendManager
    ) -> None:
        await registry.register("dev")

        with patch.object(state_backend, "release_lock", wraps=state_backend.release_lock) as release:
            await registry.teardown("dev", owner="operator")

        release.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_refused_teardown_releases_the_lock(
        self, registry: WorkspaceRegistry, state_backend: StateBackendManager
    ) -> None:
        await registry.register("dev")
        async with state_backend.locked("dev", "seed") as token:
            snapshot = await state_backend.read_state("dev")
            record = ResourceRecord(address="instance.web", type="instance", name="web", resource_id="i-1")
            await state_backend.write_state(
                "dev", snapshot.model_copy(update={"resources": {"instance.web": record}}), token
            )

        with patch.object(state_backend, "release_lock", wraps=state_backend.release_lock) as release:
            with pytest.raises(OrchestratorError):
                await registry.teardown("dev", owner="operator")

        release.assert_awaited_once()
        token = await state_backend.acquire_lock("dev", "ci-runner-7")
        assert token.owner == "ci-runner-7"

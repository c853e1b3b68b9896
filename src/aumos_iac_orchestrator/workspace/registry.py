"""Workspace Registry: named environments bound to isolated state.

Each environment (dev, stage, prod, ...) is bound to its own state snapshot
in the State Backend Manager and to an immutable variable set. Changing the
variables of an environment produces a new revision with a new fingerprint;
plans pin the fingerprint, so a plan generated against old variables can no
longer be applied.
"""

import asyncio
import re
from collections.abc import Mapping
from dataclasses import replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from aumos_iac_orchestrator.core.models import Environment, fingerprint_variables
from aumos_iac_orchestrator.errors import (
    DuplicateEnvironmentError,
    OrchestratorError,
    PlanValidationError,
    UnknownEnvironmentError,
)
from aumos_iac_orchestrator.observability import get_logger
from aumos_iac_orchestrator.state_backend.manager import StateBackendManager

logger = get_logger(__name__)

_ENVIRONMENT_NAME = re.compile(r"^[a-z0-9][a-z0-9_-]{0,62}$")


def _freeze(variables: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(variables or {}))


class WorkspaceRegistry:
    """Tracks named environments and their variable sets.

    Args:
        state_backend: The manager owning each environment's state.
    """

    def __init__(self, state_backend: StateBackendManager) -> None:
        """Initialize an empty registry.

        Args:
            state_backend: The State Backend Manager.
        """
        self._state_backend = state_backend
        self._environments: dict[str, Environment] = {}
        self._mutex = asyncio.Lock()

    async def register(self, name: str, variables: Mapping[str, Any] | None = None) -> Environment:
        """Register a new environment and initialize its state.

        Args:
            name: Unique environment name (lowercase, digits, - and _).
            variables: Variable set for the environment.

        Returns:
            The registered Environment.

        Raises:
            DuplicateEnvironmentError: If the name is already registered.
            PlanValidationError: If the name is malformed.
        """
        if not _ENVIRONMENT_NAME.match(name):
            raise PlanValidationError(
                f"Invalid environment name '{name}'; use lowercase letters, digits, '-' or '_'",
                environment=name,
            )

        async with self._mutex:
            if name in self._environments:
                raise DuplicateEnvironmentError(name)
            handle = await self._state_backend.initialize_environment(name)
            frozen = _freeze(variables)
            environment = Environment(
                name=name,
                state=handle,
                variables=frozen,
                variables_revision=1,
                variables_fingerprint=fingerprint_variables(frozen),
                created_at=datetime.now(UTC),
            )
            self._environments[name] = environment

        logger.info("Environment registered", environment=name, variables=sorted(frozen))
        return environment

    async def resolve(self, name: str) -> Environment:
        """Return a registered environment with a fresh StateHandle.

        Args:
            name: The environment name.

        Returns:
            The Environment.

        Raises:
            UnknownEnvironmentError: If the name is not registered.
        """
        environment = self._environments.get(name)
        if environment is None:
            raise UnknownEnvironmentError(name)
        handle = await self._state_backend.describe(name)
        return replace(environment, state=handle)

    async def list_environments(self) -> list[Environment]:
        """Return all registered environments sorted by name."""
        return [await self.resolve(name) for name in sorted(self._environments)]

    async def update_variables(self, name: str, variables: Mapping[str, Any]) -> Environment:
        """Replace an environment's variable set with a new revision.

        Plans generated against the previous revision become stale.

        Args:
            name: The environment name.
            variables: The new variable set.

        Returns:
            The Environment at its new revision.

        Raises:
            UnknownEnvironmentError: If the name is not registered.
        """
        async with self._mutex:
            current = self._environments.get(name)
            if current is None:
                raise UnknownEnvironmentError(name)
            frozen = _freeze(variables)
            fingerprint = fingerprint_variables(frozen)
            if fingerprint == current.variables_fingerprint:
                return current
            updated = replace(
                current,
                variables=frozen,
                variables_revision=current.variables_revision + 1,
                variables_fingerprint=fingerprint,
                planned=False,
            )
            self._environments[name] = updated

        logger.info(
            "Environment variables changed",
            environment=name,
            revision=updated.variables_revision,
            invalidated_plans=current.planned,
        )
        return updated

    async def ensure(self, name: str, variables: Mapping[str, Any] | None = None) -> Environment:
        """Register an environment, or update its variables if it already exists.

        Args:
            name: The environment name.
            variables: The desired variable set.

        Returns:
            The Environment.
        """
        if name in self._environments:
            return await self.update_variables(name, variables or {})
        return await self.register(name, variables)

    async def mark_planned(self, name: str, fingerprint: str) -> None:
        """Record that a plan was generated against the current variable revision.

        Args:
            name: The environment name.
            fingerprint: Fingerprint of the variables the plan used.
        """
        async with self._mutex:
            current = self._environments.get(name)
            if current is None:
                raise UnknownEnvironmentError(name)
            if current.variables_fingerprint == fingerprint and not current.planned:
                self._environments[name] = replace(current, planned=True)

    async def teardown(self, name: str, owner: str, force: bool = False) -> None:
        """Destroy an environment's registration and state.

        Args:
            name: The environment name.
            owner: Lock owner identity used while deleting state.
            force: Delete even if resources are still recorded in state.

        Raises:
            UnknownEnvironmentError: If the name is not registered.
            LockContentionError: If the environment is locked.
            OrchestratorError: If resources remain and ``force`` is False.
        """
        if name not in self._environments:
            raise UnknownEnvironmentError(name)

        token = await self._state_backend.acquire_lock(name, owner)
        deleted = False
        try:
            snapshot = await self._state_backend.read_state(name)
            if not snapshot.is_empty and not force:
                raise OrchestratorError(
                    f"Environment still has {len(snapshot.resources)} resource(s); destroy them first",
                    environment=name,
                    details={"resources": sorted(snapshot.resources)},
                )
            # Deleting the environment removes its lock row with it
            await self._state_backend.delete_environment(name, token)
            deleted = True
        finally:
            if not deleted:
                await self._state_backend.release_lock(token)

        async with self._mutex:
            self._environments.pop(name, None)
        logger.info("Environment torn down", environment=name, forced=force)

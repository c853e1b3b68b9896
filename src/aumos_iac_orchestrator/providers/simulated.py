"""Simulated resource executor.

Stands in for the cloud SDK calls behind a provider. Keeps an in-memory
inventory of the resources it has "provisioned" per environment, so tests and
local runs can observe exactly what an apply did.

Failures can be injected by resource address or action key to exercise
partial-apply recovery.
"""

import asyncio
import uuid
from datetime import UTC, datetime
from typing import Any

from aumos_iac_orchestrator.core.models import ACTION_CREATE, ACTION_DESTROY, PlannedAction
from aumos_iac_orchestrator.errors import ProviderError
from aumos_iac_orchestrator.observability import get_logger
from aumos_iac_orchestrator.providers.profiles import ProviderProfile

logger = get_logger(__name__)


class SimulatedExecutor:
    """IResourceExecutor that records actions instead of calling a cloud API.

    Args:
        profile: Provider profile used for id prefixes.
        latency_seconds: Delay applied to every action (0 still yields to the loop).
        fail_on: Resource addresses or action keys that raise ProviderError.
    """

    def __init__(
        self,
        profile: ProviderProfile,
        latency_seconds: float = 0.0,
        fail_on: set[str] | None = None,
    ) -> None:
        """Initialize SimulatedExecutor.

        Args:
            profile: The provider profile.
            latency_seconds: Simulated per-action latency.
            fail_on: Addresses or action keys to fail.
        """
        self._profile = profile
        self._latency = latency_seconds
        self.fail_on: set[str] = set(fail_on or ())
        self.inventory: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple[str, str]] = []

    async def execute(
        self,
        environment: str,
        native_type: str,
        action: PlannedAction,
        resource_id: str | None,
    ) -> dict[str, Any]:
        """Execute one planned action against the in-memory inventory.

        Args:
            environment: Environment being applied.
            native_type: Provider-native resource type.
            action: The planned action.
            resource_id: Existing resource id for updates and destroys.

        Returns:
            Computed attributes (``id``, ``native_type``, ``last_modified``).

        Raises:
            ProviderError: If the action is configured to fail, or an update
                carries no resource id.
        """
        await asyncio.sleep(self._latency)

        if action.address in self.fail_on or action.key in self.fail_on:
            raise ProviderError(
                f"Provider rejected {action.action} of {native_type}",
                environment=environment,
                resource=action.address,
            )

        self.calls.append((environment, action.key))
        resources = self.inventory.setdefault(environment, {})
        now = datetime.now(UTC).isoformat()

        if action.action == ACTION_CREATE:
            new_id = f"{self._profile.id_prefix(action.resource_type)}-{uuid.uuid4().hex[:12]}"
            resources[new_id] = {"address": action.address, "native_type": native_type, **(action.after or {})}
            logger.debug("Simulated create", environment=environment, address=action.address, resource_id=new_id)
            return {"id": new_id, "native_type": native_type, "last_modified": now}

        if action.action == ACTION_DESTROY:
            if resources.pop(resource_id or "", None) is None:
                logger.warning(
                    "Destroy of unknown resource treated as already gone",
                    environment=environment,
                    address=action.address,
                    resource_id=resource_id,
                )
            return {}

        if not resource_id:
            raise ProviderError(
                f"Cannot update {native_type} without a resource id",
                environment=environment,
                resource=action.address,
            )
        if resource_id not in resources:
            # Created by another process; adopt it into this inventory
            logger.warning(
                "Update of resource unknown to this executor",
                environment=environment,
                address=action.address,
                resource_id=resource_id,
            )
            resources[resource_id] = {"address": action.address, "native_type": native_type}
        resources[resource_id].update(action.after or {})
        return {"id": resource_id, "native_type": native_type, "last_modified": now}

"""CloudProvider: the {describe, plan-diff, apply} capability.

Composes a ProviderProfile (naming and replacement rules) with an executor
that performs the actual resource calls. Switching cloud is a matter of
configuration: the engine only sees IInfraProvider.
"""

from collections.abc import Iterable
from typing import Any

from aumos_iac_orchestrator.core.interfaces import IResourceExecutor
from aumos_iac_orchestrator.core.models import ACTION_CREATE, PlannedAction, ResourceDescriptor
from aumos_iac_orchestrator.errors import ProviderError
from aumos_iac_orchestrator.observability import get_logger
from aumos_iac_orchestrator.providers.profiles import ProviderProfile

logger = get_logger(__name__)


def _normalize(value: Any) -> Any:
    """Normalize an attribute value to its JSON-compatible form.

    Tuples become lists and None entries are dropped from mappings so a value
    read back from persisted state compares equal to the declared one.
    """
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items() if item is not None}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    return value


class CloudProvider:
    """IInfraProvider implementation over a profile and an executor.

    Args:
        profile: The provider profile.
        executor: Executor performing resource actions.
    """

    def __init__(self, profile: ProviderProfile, executor: IResourceExecutor) -> None:
        """Initialize CloudProvider.

        Args:
            profile: The provider profile.
            executor: The resource executor.
        """
        self._profile = profile
        self._executor = executor

    @property
    def name(self) -> str:
        return self._profile.name

    @property
    def profile(self) -> ProviderProfile:
        return self._profile

    def describe(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        """Return the descriptor's declared attributes in normalized form."""
        return _normalize(descriptor.attributes)

    def requires_replacement(self, resource_type: str, changed_attributes: Iterable[str]) -> bool:
        """Return True if any changed attribute cannot be updated in place.

        Args:
            resource_type: Provider-neutral resource type.
            changed_attributes: Keys that differ between state and desired.

        Returns:
            True when the change needs destroy+create.
        """
        immutable = self._profile.replacement_attributes(resource_type)
        return any(attribute in immutable for attribute in changed_attributes)

    async def apply_action(
        self,
        environment: str,
        action: PlannedAction,
        resource_id: str | None,
    ) -> dict[str, Any]:
        """Apply one planned action through the executor.

        Args:
            environment: Environment being applied.
            action: The planned action.
            resource_id: Existing resource id for updates and destroys.

        Returns:
            Computed attributes reported by the executor.

        Raises:
            ProviderError: If the executor fails or a create returns no id.
        """
        native_type = self._profile.native_type(action.resource_type)
        logger.info(
            "Applying resource action",
            provider=self.name,
            environment=environment,
            action=action.action,
            address=action.address,
            native_type=native_type,
        )
        computed = await self._executor.execute(environment, native_type, action, resource_id)
        if action.action == ACTION_CREATE and not computed.get("id"):
            raise ProviderError(
                "Provider did not report an id for the created resource",
                environment=environment,
                resource=action.address,
            )
        return computed

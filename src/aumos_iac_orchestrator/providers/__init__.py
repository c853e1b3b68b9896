"""Infrastructure providers selected by configuration.

Modules:
- profiles: per-cloud type names and replacement rules (aws, azure, gcp)
- simulated: in-memory executor standing in for cloud SDK calls
- cloud: CloudProvider, the {describe, plan-diff, apply} capability
"""

from aumos_iac_orchestrator.core.interfaces import IResourceExecutor
from aumos_iac_orchestrator.providers.cloud import CloudProvider
from aumos_iac_orchestrator.providers.profiles import PROFILES, ProviderProfile
from aumos_iac_orchestrator.providers.simulated import SimulatedExecutor
from aumos_iac_orchestrator.settings import Settings


def build_provider(settings: Settings, executor: IResourceExecutor | None = None) -> CloudProvider:
    """Build the configured provider.

    Args:
        settings: Service settings (``provider``, ``executor_latency_seconds``).
        executor: Executor to use instead of the simulated one.

    Returns:
        The CloudProvider for the configured profile.
    """
    profile = PROFILES[settings.provider]
    if executor is None:
        executor = SimulatedExecutor(profile, latency_seconds=settings.executor_latency_seconds)
    return CloudProvider(profile, executor)


__all__ = [
    "PROFILES",
    "CloudProvider",
    "ProviderProfile",
    "SimulatedExecutor",
    "build_provider",
]

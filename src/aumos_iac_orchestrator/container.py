"""Service container: wires the orchestration components from Settings.

Both entry points (the FastAPI app and the CLI) build exactly one container
per process so that every component shares the same state backend, registry
and provider.
"""

from dataclasses import dataclass

from aumos_iac_orchestrator.adapters.notifier import LoggingNotifier, WebhookNotifier
from aumos_iac_orchestrator.core.interfaces import INotifier, IResourceExecutor, IStateStore
from aumos_iac_orchestrator.engine.service import PlanApplyEngine
from aumos_iac_orchestrator.observability import get_logger
from aumos_iac_orchestrator.pipeline.controller import PipelineController
from aumos_iac_orchestrator.pipeline.records import (
    ChangeRequestHistory,
    ChangeRequestStore,
    IChangeRequestHistory,
    IChangeRequestStore,
)
from aumos_iac_orchestrator.pipeline.sql_records import SqlChangeRequestHistory, SqlChangeRequestStore
from aumos_iac_orchestrator.policy.gate import PolicyGate
from aumos_iac_orchestrator.providers import CloudProvider, build_provider
from aumos_iac_orchestrator.settings import Settings
from aumos_iac_orchestrator.state_backend import SqlStateStore, StateBackendManager, create_state_store
from aumos_iac_orchestrator.workspace.registry import WorkspaceRegistry

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Wired orchestration components for one process."""

    settings: Settings
    store: IStateStore
    state_backend: StateBackendManager
    registry: WorkspaceRegistry
    provider: CloudProvider
    engine: PlanApplyEngine
    gate: PolicyGate
    notifier: INotifier
    pipeline: PipelineController


def build_notifier(settings: Settings) -> INotifier:
    """Return the webhook notifier when a URL is configured, else the logging one."""
    if settings.notifier_webhook_url:
        return WebhookNotifier(settings.notifier_webhook_url, timeout_ms=settings.notifier_timeout_ms)
    return LoggingNotifier()


def build_change_request_stores(store: IStateStore) -> tuple[IChangeRequestStore, IChangeRequestHistory]:
    """Persist change requests next to state on SQL backends, in memory otherwise."""
    if isinstance(store, SqlStateStore):
        return SqlChangeRequestStore(store.engine), SqlChangeRequestHistory(store.engine)
    return ChangeRequestStore(), ChangeRequestHistory()


def build_container(
    settings: Settings,
    store: IStateStore | None = None,
    executor: IResourceExecutor | None = None,
    notifier: INotifier | None = None,
) -> ServiceContainer:
    """Wire all components from settings.

    Args:
        settings: Service settings.
        store: State store to use instead of the one built from the backend URL.
        executor: Resource executor to use instead of the simulated one.
        notifier: Notifier to use instead of the configured one.

    Returns:
        The ServiceContainer. The state backend is not bootstrapped yet.
    """
    store = store or create_state_store(
        settings.state_backend_url,
        pool_size=settings.state_db_pool_size,
        max_overflow=settings.state_db_max_overflow,
        pool_timeout=settings.state_db_pool_timeout,
    )
    state_backend = StateBackendManager(store, lock_ttl_seconds=settings.lock_ttl_seconds)
    registry = WorkspaceRegistry(state_backend)
    provider = build_provider(settings, executor=executor)
    engine = PlanApplyEngine(
        state_backend,
        registry,
        provider,
        lock_owner=settings.lock_owner,
        checkpoint_each_action=settings.checkpoint_each_action,
    )
    gate = PolicyGate.from_settings(settings)
    notifier = notifier or build_notifier(settings)
    change_requests, change_request_history = build_change_request_stores(store)
    pipeline = PipelineController(
        engine,
        gate,
        notifier,
        change_requests,
        change_request_history,
        required_approvals=settings.required_approvals,
        authorized_approvers=settings.authorized_approvers,
        override_actors=settings.policy_override_actors,
    )
    logger.info(
        "Service container built",
        state_backend=state_backend.location,
        provider=provider.name,
        required_approvals=settings.required_approvals,
    )
    return ServiceContainer(
        settings=settings,
        store=store,
        state_backend=state_backend,
        registry=registry,
        provider=provider,
        engine=engine,
        gate=gate,
        notifier=notifier,
        pipeline=pipeline,
    )


async def close_container(container: ServiceContainer) -> None:
    """Release resources held by the container (database connections)."""
    if isinstance(container.store, SqlStateStore):
        await container.store.dispose()

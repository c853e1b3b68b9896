"""API router for aumos-iac-orchestrator.

All endpoints are registered here and included in main.py under the /api/v1
prefix. Routes are thin; all business logic lives in the engine, registry
and pipeline controller.

Endpoints:
- GET/POST    /environments                            : list / register environments
- GET/DELETE  /environments/{name}                     : get / tear down an environment
- PUT         /environments/{name}/variables           : new variable revision
- GET         /environments/{name}/state               : current state snapshot
- POST        /environments/{name}/unlock              : force-release a stuck lock
- POST        /environments/{name}/plan                : ad-hoc plan with policy findings
- POST        /ci/events                               : CI events driving the pipeline
- GET         /change-requests                         : list change requests
- GET         /change-requests/{id}                    : get a change request
- GET         /change-requests/{id}/history            : transition history (since/until filters)
- POST        /change-requests/{id}/approvals          : record a human approval
- POST        /change-requests/{id}/override           : override blocking findings
- POST        /change-requests/{id}/veto               : reject a change request
- GET         /policy/rules                            : active policy rules
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response

from aumos_iac_orchestrator.api.schemas import (
    ApprovalRequest,
    ChangeRequestResponse,
    CIEventRequest,
    EnvironmentCreateRequest,
    EnvironmentResponse,
    EnvironmentVariablesRequest,
    ForceUnlockRequest,
    ForceUnlockResponse,
    OverrideRequest,
    PlanRequest,
    PlanResponse,
    PolicyRuleResponse,
    VetoRequest,
)
from aumos_iac_orchestrator.container import ServiceContainer
from aumos_iac_orchestrator.core.models import StateSnapshot
from aumos_iac_orchestrator.errors import PlanValidationError
from aumos_iac_orchestrator.observability import get_logger
from aumos_iac_orchestrator.pipeline.records import ChangeRequestEvent
from aumos_iac_orchestrator.policy.gate import has_blocking

logger = get_logger(__name__)

router = APIRouter(tags=["iac-orchestrator"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_container(request: Request) -> ServiceContainer:
    """Return the service container attached to the application."""
    return request.app.state.container


Container = Annotated[ServiceContainer, Depends(get_container)]


# ---------------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------------


@router.get("/environments", response_model=list[EnvironmentResponse])
async def list_environments(container: Container) -> list[EnvironmentResponse]:
    """List registered environments."""
    environments = await container.registry.list_environments()
    return [EnvironmentResponse.from_environment(env) for env in environments]


@router.post("/environments", response_model=EnvironmentResponse, status_code=201)
async def register_environment(request: EnvironmentCreateRequest, container: Container) -> EnvironmentResponse:
    """Register an environment and initialize its remote state.

    Args:
        request: Environment name and variable set.
        container: Injected service container.

    Returns:
        The registered environment.
    """
    logger.info("POST /environments", environment=request.name)
    environment = await container.registry.register(request.name, request.variables)
    return EnvironmentResponse.from_environment(environment)


@router.get("/environments/{name}", response_model=EnvironmentResponse)
async def get_environment(name: str, container: Container) -> EnvironmentResponse:
    environment = await container.registry.resolve(name)
    return EnvironmentResponse.from_environment(environment)


@router.put("/environments/{name}/variables", response_model=EnvironmentResponse)
async def update_environment_variables(
    name: str,
    request: EnvironmentVariablesRequest,
    container: Container,
) -> EnvironmentResponse:
    """Replace an environment's variables. Existing plans become stale."""
    await container.registry.update_variables(name, request.variables)
    environment = await container.registry.resolve(name)
    return EnvironmentResponse.from_environment(environment)


@router.delete("/environments/{name}", status_code=204)
async def teardown_environment(
    name: str,
    container: Container,
    actor: str = Query(min_length=1, description="Operator tearing down the environment"),
    force: bool = Query(default=False, description="Delete state even if resources remain"),
) -> Response:
    """Tear down an environment's registration and state."""
    logger.info("DELETE /environments", environment=name, actor=actor, force=force)
    await container.registry.teardown(name, owner=actor, force=force)
    return Response(status_code=204)


@router.get("/environments/{name}/state", response_model=StateSnapshot)
async def get_environment_state(name: str, container: Container) -> StateSnapshot:
    await container.registry.resolve(name)
    return await container.state_backend.read_state(name)


@router.post("/environments/{name}/unlock", response_model=ForceUnlockResponse)
async def force_unlock_environment(
    name: str,
    request: ForceUnlockRequest,
    container: Container,
) -> ForceUnlockResponse:
    """Remove the lock on an environment regardless of its owner."""
    await container.registry.resolve(name)
    removed = await container.state_backend.force_unlock(name, actor=request.actor)
    return ForceUnlockResponse(environment=name, removed=removed)


@router.post("/environments/{name}/plan", response_model=PlanResponse)
async def plan_environment(name: str, request: PlanRequest, container: Container) -> PlanResponse:
    """Compute a plan and evaluate it against the policy gate without applying.

    Args:
        name: Target environment.
        request: Desired resources.
        container: Injected service container.

    Returns:
        The plan, its summary and its policy findings.
    """
    plan = await container.engine.plan(name, request.resources)
    findings = container.gate.evaluate(plan)
    return PlanResponse(plan=plan, summary=plan.summary(), findings=findings, blocked=has_blocking(findings))


# ---------------------------------------------------------------------------
# CI events and change requests
# ---------------------------------------------------------------------------


@router.post("/ci/events", response_model=ChangeRequestResponse)
async def handle_ci_event(event: CIEventRequest, container: Container) -> ChangeRequestResponse:
    """Consume a CI event and advance the matching change request.

    Args:
        event: The CI event.
        container: Injected service container.

    Returns:
        The change request after the event was processed.
    """
    logger.info(
        "POST /ci/events",
        event_type=event.event_type,
        change_request_id=event.change_request_id,
        actor=event.actor,
    )
    pipeline = container.pipeline

    if event.event_type == "pull-request-opened":
        if not event.environment:
            raise PlanValidationError("pull-request-opened events require an environment")
        record = await pipeline.on_pull_request_opened(
            event.change_request_id,
            event.environment,
            event.resources,
            author=event.actor,
            commit_sha=event.commit_sha,
            title=event.title,
        )
    elif event.event_type == "new-commit":
        record = await pipeline.replan(
            event.change_request_id, event.resources, actor=event.actor, commit_sha=event.commit_sha
        )
    else:
        record = await pipeline.on_merge_to_main(event.change_request_id, actor=event.actor)

    return ChangeRequestResponse.from_record(record)


@router.get("/change-requests", response_model=list[ChangeRequestResponse])
async def list_change_requests(
    container: Container,
    environment: str | None = Query(default=None, description="Filter by environment"),
) -> list[ChangeRequestResponse]:
    records = await container.pipeline.list_change_requests(environment)
    return [ChangeRequestResponse.from_record(record) for record in records]


@router.get("/change-requests/{change_request_id}", response_model=ChangeRequestResponse)
async def get_change_request(change_request_id: str, container: Container) -> ChangeRequestResponse:
    record = await container.pipeline.get(change_request_id)
    return ChangeRequestResponse.from_record(record)


@router.get("/change-requests/{change_request_id}/history", response_model=list[ChangeRequestEvent])
async def get_change_request_history(
    change_request_id: str,
    container: Container,
    since: int | None = Query(default=None, ge=0, description="Earliest event time, epoch ms (inclusive)"),
    until: int | None = Query(default=None, ge=0, description="Latest event time, epoch ms (inclusive)"),
) -> list[ChangeRequestEvent]:
    return await container.pipeline.history(change_request_id, since_ms=since, until_ms=until)



@router.post("/change-requests/{change_request_id}/approvals", response_model=ChangeRequestResponse)
async def approve_change_request(
    change_request_id: str,
    request: ApprovalRequest,
    container: Container,
) -> ChangeRequestResponse:
    """Record a human approval for a change request awaiting approval."""
    record = await container.pipeline.record_approval(change_request_id, request.approver, request.comment)
    return ChangeRequestResponse.from_record(record)


@router.post("/change-requests/{change_request_id}/override", response_model=ChangeRequestResponse)
async def override_change_request(
    change_request_id: str,
    request: OverrideRequest,
    container: Container,
) -> ChangeRequestResponse:
    """Override blocking policy findings (authorized actors only)."""
    record = await container.pipeline.record_override(change_request_id, request.actor, request.reason)
    return ChangeRequestResponse.from_record(record)


@router.post("/change-requests/{change_request_id}/veto", response_model=ChangeRequestResponse)
async def veto_change_request(
    change_request_id: str,
    request: VetoRequest,
    container: Container,
) -> ChangeRequestResponse:
    record = await container.pipeline.veto(change_request_id, request.actor, request.reason)
    return ChangeRequestResponse.from_record(record)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@router.get("/policy/rules", response_model=list[PolicyRuleResponse])
async def list_policy_rules(container: Container) -> list[PolicyRuleResponse]:
    """List active policy rules with their effective severities."""
    gate = container.gate
    return [
        PolicyRuleResponse(
            rule_id=rule.rule_id,
            severity=gate.effective_severity(rule),
            description=rule.description,
            remediation=rule.remediation,
        )
        for rule in gate.rules
    ]

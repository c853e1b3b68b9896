"""aumos-iac-orchestrator service entry point.

Initializes the FastAPI application with:
- Remote state backend (SQLAlchemy) bootstrapped on startup
- Workspace registry, provider, plan/apply engine and policy gate
- Pipeline controller consuming CI and approval events
- Notifier for plan summaries, approval requests and apply results

OrchestratorError subclasses are mapped to HTTP status codes by a single
exception handler so routes never translate errors themselves.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from aumos_iac_orchestrator.api.router import router
from aumos_iac_orchestrator.container import ServiceContainer, build_container, close_container
from aumos_iac_orchestrator.errors import (
    ApplyConflictError,
    ApplyFailedError,
    ApprovalError,
    DuplicateEnvironmentError,
    InvalidTransitionError,
    LockContentionError,
    OrchestratorError,
    PlanValidationError,
    PolicyBlockedError,
    StaleLockError,
    StaleRecordError,
    UnknownChangeRequestError,
    UnknownEnvironmentError,
)
from aumos_iac_orchestrator.observability import configure_logging, get_logger
from aumos_iac_orchestrator.settings import Settings

logger = get_logger(__name__)

# Most specific class wins: lookups walk the exception's MRO
_STATUS_CODES: dict[type[OrchestratorError], int] = {
    LockContentionError: 409,
    StaleLockError: 409,
    ApplyConflictError: 409,
    DuplicateEnvironmentError: 409,
    InvalidTransitionError: 409,
    StaleRecordError: 409,
    UnknownEnvironmentError: 404,
    UnknownChangeRequestError: 404,
    PolicyBlockedError: 422,
    PlanValidationError: 422,
    ApprovalError: 403,
    ApplyFailedError: 500,
}


def status_code_for(exc: OrchestratorError) -> int:
    """Return the HTTP status code for an orchestration error."""
    for cls in type(exc).__mro__:
        if cls in _STATUS_CODES:
            return _STATUS_CODES[cls]
    return 500


async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    """Render an OrchestratorError as a JSON error body."""
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "Request failed",
        path=request.url.path,
        status_code=status_code,
        error=type(exc).__name__,
        message=exc.message,
        environment=exc.environment,
    )
    headers = {"Retry-After": "5"} if isinstance(exc, LockContentionError) else None
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


def create_app(settings: Settings | None = None, container: ServiceContainer | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Service settings. Read from the environment when omitted.
        container: Pre-built container (tests). Built from settings on
            startup when omitted.

    Returns:
        The configured FastAPI app.
    """
    settings = settings or (container.settings if container is not None else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the container and bootstrap the state backend on startup.

        Args:
            app: The FastAPI application instance.

        Yields:
            None
        """
        configure_logging(settings.log_level, json_logs=settings.log_json)
        owns_container = getattr(app.state, "container", None) is None
        if owns_container:
            app.state.container = build_container(settings)

        logger.info("Bootstrapping state backend", service=settings.service_name)
        await app.state.container.state_backend.bootstrap()
        logger.info("IaC orchestrator startup complete", provider=settings.provider)

        yield

        logger.info("Shutting down IaC orchestrator")
        if owns_container:
            await close_container(app.state.container)
        logger.info("IaC orchestrator shutdown complete")

    app = FastAPI(title=settings.service_name, version=settings.version, lifespan=lifespan)
    if container is not None:
        app.state.container = container
    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.service_name, "version": settings.version}

    app.include_router(router, prefix="/api/v1")
    return app

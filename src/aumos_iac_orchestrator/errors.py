"""Exception hierarchy for the orchestration engine.

Every error carries the context a caller needs to act on it (environment,
resource address, reason) plus the CLI exit code and whether the failure is
recoverable by the caller.

Exit codes:
    0  success
    1  policy-blocked
    2  lock-contention
    3  stale plan (ApplyConflictError / StaleLockError)
    4  any other orchestration failure
"""

from datetime import datetime
from typing import Any

EXIT_OK = 0
EXIT_POLICY_BLOCKED = 1
EXIT_LOCK_CONTENTION = 2
EXIT_STALE_PLAN = 3
EXIT_FAILURE = 4
EXIT_USAGE = 64


class OrchestratorError(Exception):
    """Base error for all orchestration failures.

    Attributes:
        message: Human-readable error description.
        environment: Environment the failure relates to, if any.
        resource: Resource address the failure relates to, if any.
        details: Additional structured context.
    """

    exit_code: int = EXIT_FAILURE
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        environment: str | None = None,
        resource: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize OrchestratorError.

        Args:
            message: Error description.
            environment: Optional environment name.
            resource: Optional resource address.
            details: Optional structured context.
        """
        super().__init__(message)
        self.message = message
        self.environment = environment
        self.resource = resource
        self.details = details or {}

    def __str__(self) -> str:
        context = []
        if self.environment:
            context.append(f"environment={self.environment}")
        if self.resource:
            context.append(f"resource={self.resource}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for API responses and notifications.

        Returns:
            Dict with error type, message and context.
        """
        return {
            "error": type(self).__name__,
            "message": self.message,
            "environment": self.environment,
            "resource": self.resource,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# State backend errors
# ---------------------------------------------------------------------------


class LockContentionError(OrchestratorError):
    """Raised when another owner holds an unexpired lock on the environment.

    The caller may retry; nothing retries automatically.
    """

    exit_code = EXIT_LOCK_CONTENTION
    recoverable = True

    def __init__(
        self,
        environment: str,
        holder: str,
        expires_at: datetime,
    ) -> None:
        """Initialize LockContentionError.

        Args:
            environment: The contended environment.
            holder: Owner of the current lock.
            expires_at: When the current lock expires (UTC).
        """
        super().__init__(
            f"State lock is held by '{holder}' until {expires_at.isoformat()}",
            environment=environment,
            details={"holder": holder, "expires_at": expires_at.isoformat()},
        )
        self.holder = holder
        self.expires_at = expires_at


class StaleLockError(OrchestratorError):
    """Raised when a state write is attempted with a lost, expired or outdated lock."""

    exit_code = EXIT_STALE_PLAN
    recoverable = True


class UnknownEnvironmentError(OrchestratorError):
    """Raised when an environment name is not registered."""

    def __init__(self, environment: str) -> None:
        super().__init__(f"Environment '{environment}' is not registered", environment=environment)


class DuplicateEnvironmentError(OrchestratorError):
    """Raised when registering an environment name that already exists."""

    def __init__(self, environment: str) -> None:
        super().__init__(f"Environment '{environment}' is already registered", environment=environment)


# ---------------------------------------------------------------------------
# Plan / apply errors
# ---------------------------------------------------------------------------


class PlanValidationError(OrchestratorError):
    """Raised when the desired configuration cannot be planned.

    Covers duplicate addresses, unknown dependencies, dependency cycles and
    unresolved variable references.
    """


class ApplyConflictError(OrchestratorError):
    """Raised when a plan no longer matches the environment it targets.

    The snapshot version or variable set changed since the plan was computed.
    The caller must re-plan.
    """

    exit_code = EXIT_STALE_PLAN
    recoverable = True


class ApplyFailedError(OrchestratorError):
    """Raised when a resource action fails part-way through an apply.

    Completed actions and a partial-apply marker are recorded in state before
    this error is raised.
    """

    recoverable = True

    def __init__(
        self,
        message: str,
        environment: str,
        resource: str,
        completed_actions: list[str],
        state_version: int,
    ) -> None:
        """Initialize ApplyFailedError.

        Args:
            message: Failure reason reported by the provider.
            environment: Environment being applied.
            resource: Address of the failed resource action.
            completed_actions: Action keys completed before the failure.
            state_version: Version of the snapshot holding the partial progress.
        """
        super().__init__(
            message,
            environment=environment,
            resource=resource,
            details={"completed_actions": completed_actions, "state_version": state_version},
        )
        self.completed_actions = completed_actions
        self.state_version = state_version


class ProviderError(OrchestratorError):
    """Raised by a provider executor when a single resource action fails."""


# ---------------------------------------------------------------------------
# Policy and pipeline errors
# ---------------------------------------------------------------------------


class PolicyBlockedError(OrchestratorError):
    """Raised when blocking policy findings prevent an apply."""

    exit_code = EXIT_POLICY_BLOCKED
    recoverable = True

    def __init__(self, environment: str, rule_ids: list[str], addresses: list[str]) -> None:
        """Initialize PolicyBlockedError.

        Args:
            environment: The environment whose plan was blocked.
            rule_ids: Ids of the blocking rules.
            addresses: Resource addresses with blocking findings.
        """
        super().__init__(
            f"{len(rule_ids)} blocking policy finding(s) prevent apply",
            environment=environment,
            resource=addresses[0] if len(addresses) == 1 else None,
            details={"rule_ids": rule_ids, "addresses": addresses},
        )
        self.rule_ids = rule_ids
        self.addresses = addresses


class UnknownChangeRequestError(OrchestratorError):
    """Raised when a change request id does not exist."""

    def __init__(self, change_request_id: str) -> None:
        super().__init__(
            f"Change request '{change_request_id}' not found",
            details={"change_request_id": change_request_id},
        )
        self.change_request_id = change_request_id


class InvalidTransitionError(OrchestratorError):
    """Raised when a pipeline event is not valid for the change request's stage."""


class StaleRecordError(OrchestratorError):
    """Raised when a change request record was modified concurrently."""


class ApprovalError(OrchestratorError):
    """Raised when an actor is not permitted to approve or override."""


class NotifierError(OrchestratorError):
    """Raised when the external notifier rejects or cannot receive a message."""

    recoverable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code

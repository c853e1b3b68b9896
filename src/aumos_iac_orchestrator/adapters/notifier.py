"""Pipeline notifier adapters.

Delivers pipeline notifications to the external review collaborator (chat
bot, PR comment relay, ...) as JSON webhooks:

- plan.summary       : plan action counts and policy findings
- approval.requested : a change request awaits human approval
- apply.completed    : outcome of a gated apply

The client uses httpx for async HTTP and enforces a hard delivery timeout
(AUMOS_IAC_NOTIFIER_TIMEOUT_MS). When no webhook is configured the
LoggingNotifier records the same payloads as structured log events.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

import httpx

from aumos_iac_orchestrator.core.models import PlanDiff, PolicyFinding
from aumos_iac_orchestrator.errors import NotifierError
from aumos_iac_orchestrator.observability import get_logger

logger = get_logger(__name__)

# Default delivery timeout in milliseconds
_DEFAULT_TIMEOUT_MS = 2000

EVENT_PLAN_SUMMARY = "plan.summary"
EVENT_APPROVAL_REQUESTED = "approval.requested"
EVENT_APPLY_COMPLETED = "apply.completed"


def build_plan_summary(change_request_id: str, plan: PlanDiff, findings: list[PolicyFinding]) -> dict[str, Any]:
    """Build the plan.summary payload."""
    severities = {"blocking": 0, "warning": 0, "info": 0}
    for finding in findings:
        severities[finding.severity] += 1
    return {
        "change_request_id": change_request_id,
        "environment": plan.environment,
        "plan_id": plan.plan_id,
        "base_version": plan.base_version,
        "summary": plan.summary(),
        "actions": [
            {"action": action.action, "address": action.address, "reason": action.reason}
            for action in plan.actions
        ],
        "findings": [finding.model_dump(mode="json") for finding in findings],
        "finding_counts": severities,
    }


def _envelope(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "sent_at": datetime.now(UTC).isoformat(),
        "payload": payload,
    }


class WebhookNotifier:
    """INotifier delivering JSON events to a webhook URL.

    Args:
        webhook_url: Destination URL.
        timeout_ms: Hard delivery timeout in milliseconds.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        webhook_url: str,
        timeout_ms: int = _DEFAULT_TIMEOUT_MS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize WebhookNotifier.

        Args:
            webhook_url: Destination URL.
            timeout_ms: Delivery timeout in milliseconds.
            transport: Optional custom httpx transport.
        """
        self._webhook_url = webhook_url
        self._timeout_ms = timeout_ms
        self._timeout_s = timeout_ms / 1000.0
        self._transport = transport

    async def send_plan_summary(self, change_request_id: str, plan: PlanDiff, findings: list[PolicyFinding]) -> None:
        await self._deliver(EVENT_PLAN_SUMMARY, build_plan_summary(change_request_id, plan, findings))

    async def request_approval(
        self,
        change_request_id: str,
        environment: str,
        plan: PlanDiff,
        required_approvals: int,
    ) -> None:
        await self._deliver(
            EVENT_APPROVAL_REQUESTED,
            {
                "change_request_id": change_request_id,
                "environment": environment,
                "plan_id": plan.plan_id,
                "summary": plan.summary(),
                "required_approvals": required_approvals,
            },
        )

    async def send_apply_result(
        self,
        change_request_id: str,
        environment: str,
        outcome: str,
        details: dict[str, Any],
    ) -> None:
        await self._deliver(
            EVENT_APPLY_COMPLETED,
            {
                "change_request_id": change_request_id,
                "environment": environment,
                "outcome": outcome,
                "details": details,
            },
        )

    async def _deliver(self, event_type: str, payload: dict[str, Any]) -> None:
        """POST one event to the webhook.

        Raises:
            NotifierError: On a non-2xx response, timeout or transport failure.
        """
        body = _envelope(event_type, payload)
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(self._webhook_url, json=body)
        except httpx.TimeoutException as exc:
            logger.warning("Notifier delivery timed out", event_type=event_type, timeout_ms=self._timeout_ms)
            raise NotifierError(f"Webhook delivery timed out after {self._timeout_ms}ms") from exc
        except httpx.RequestError as exc:
            logger.error("Notifier request failed", event_type=event_type, error=str(exc))
            raise NotifierError(f"Webhook request error: {exc}") from exc

        if response.is_success:
            logger.debug("Notification delivered", event_type=event_type, event_id=body["event_id"])
            return

        logger.error(
            "Notifier returned unexpected status",
            event_type=event_type,
            status_code=response.status_code,
            body=response.text[:500],
        )
        raise NotifierError(
            f"Webhook delivery failed with status {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )


class LoggingNotifier:
    """INotifier that records notifications as structured log events only."""

    async def send_plan_summary(self, change_request_id: str, plan: PlanDiff, findings: list[PolicyFinding]) -> None:
        payload = build_plan_summary(change_request_id, plan, findings)
        logger.info(
            "Plan summary",
            change_request_id=change_request_id,
            environment=plan.environment,
            summary=payload["summary"],
            finding_counts=payload["finding_counts"],
        )

    async def request_approval(
        self,
        change_request_id: str,
        environment: str,
        plan: PlanDiff,
        required_approvals: int,
    ) -> None:
        logger.info(
            "Approval requested",
            change_request_id=change_request_id,
            environment=environment,
            plan_id=plan.plan_id,
            required_approvals=required_approvals,
        )

    async def send_apply_result(
        self,
        change_request_id: str,
        environment: str,
        outcome: str,
        details: dict[str, Any],
    ) -> None:
        logger.info(
            "Apply result",
            change_request_id=change_request_id,
            environment=environment,
            outcome=outcome,
            details=details,
        )

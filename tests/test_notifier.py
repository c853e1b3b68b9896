"""Tests for the webhook and logging notifier adapters.

httpx.MockTransport stands in for the external review collaborator.
"""

import json

import httpx
import pytest

from aumos_iac_orchestrator.adapters.notifier import (
    EVENT_APPLY_COMPLETED,
    EVENT_APPROVAL_REQUESTED,
    EVENT_PLAN_SUMMARY,
    LoggingNotifier,
    WebhookNotifier,
    build_plan_summary,
)
from aumos_iac_orchestrator.container import build_notifier
from aumos_iac_orchestrator.core.models import PolicyFinding
from aumos_iac_orchestrator.errors import NotifierError
from aumos_iac_orchestrator.settings import Settings
from tests.conftest import make_action, make_plan

WEBHOOK_URL = "https://review-bot.example.com/hooks/iac"


def make_finding(severity: str = "blocking", rule_id: str = "compute.public-ip") -> PolicyFinding:
    return PolicyFinding(
        rule_id=rule_id,
        severity=severity,
        address="instance.web",
        resource_type="instance",
        action="create",
        message="Instance is assigned a public IP address",
    )


class RecordingTransport:
    """Builds an httpx.MockTransport that records request bodies."""

    def __init__(self, status_code: int = 204) -> None:
        self.bodies: list[dict] = []
        self.status_code = status_code

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return httpx.Response(self.status_code, text="" if self.status_code < 400 else "bot unavailable")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class TestBuildPlanSummary:
    def test_counts_actions_and_findings(self) -> None:
        plan = make_plan(
            [
                make_action(after={"size": "small"}, reason="not in state"),
                make_action("destroy", resource_type="queue", name="jobs", reason="no longer declared"),
            ]
        )
        findings = [make_finding(), make_finding("info", "lifecycle.destroy")]

        payload = build_plan_summary("42", plan, findings)

        assert payload["change_request_id"] == "42"
        assert payload["summary"] == {"create": 1, "update": 0, "destroy": 1, "replace": 0}
        assert payload["finding_counts"] == {"blocking": 1, "warning": 0, "info": 1}
        assert payload["actions"][1] == {"action": "destroy", "address": "queue.jobs", "reason": "no longer declared"}
        assert payload["findings"][0]["rule_id"] == "compute.public-ip"


class TestWebhookNotifier:
    @pytest.mark.asyncio()
    async def test_delivers_event_envelopes(self) -> None:
        recorder = RecordingTransport()
        notifier = WebhookNotifier(WEBHOOK_URL, transport=recorder.transport())
        plan = make_plan([make_action(after={"size": "small"})])

        await notifier.send_plan_summary("42", plan, [make_finding()])
        await notifier.request_approval("42", "dev", plan, 2)
        await notifier.send_apply_result("42", "dev", "applied", {"state_version": 1})

        assert [body["event_type"] for body in recorder.bodies] == [
            EVENT_PLAN_SUMMARY,
            EVENT_APPROVAL_REQUESTED,
            EVENT_APPLY_COMPLETED,
        ]
        assert all({"event_id", "sent_at", "payload"} <= body.keys() for body in recorder.bodies)
        assert recorder.bodies[1]["payload"]["required_approvals"] == 2
        assert recorder.bodies[2]["payload"]["outcome"] == "applied"

    @pytest.mark.asyncio()
    async def test_non_2xx_raises(self) -> None:
        notifier = WebhookNotifier(WEBHOOK_URL, transport=RecordingTransport(status_code=503).transport())

        with pytest.raises(NotifierError) as exc_info:
            await notifier.send_apply_result("42", "dev", "applied", {})

        assert exc_info.value.status_code == 503
        assert "bot unavailable" in exc_info.value.message

    @pytest.mark.asyncio()
    async def test_timeout_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        notifier = WebhookNotifier(WEBHOOK_URL, timeout_ms=50, transport=httpx.MockTransport(handler))

        with pytest.raises(NotifierError, match="timed out after 50ms"):
            await notifier.request_approval("42", "dev", make_plan(), 1)

    @pytest.mark.asyncio()
    async def test_connection_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        notifier = WebhookNotifier(WEBHOOK_URL, transport=httpx.MockTransport(handler))

        with pytest.raises(NotifierError, match="request error"):
            await notifier.send_plan_summary("42", make_plan(), [])


class TestLoggingNotifier:
    @pytest.mark.asyncio()
    async def test_all_events_are_accepted(self) -> None:
        notifier = LoggingNotifier()
        plan = make_plan([make_action(after={"size": "small"})])

        await notifier.send_plan_summary("42", plan, [make_finding()])
        await notifier.request_approval("42", "dev", plan, 1)
        await notifier.send_apply_result("42", "dev", "rejected", {"error": "ApplyConflictError"})


def test_build_notifier_selects_by_settings() -> None:
    assert isinstance(build_notifier(Settings(state_backend_url="memory://")), LoggingNotifier)
    webhook = build_notifier(Settings(state_backend_url="memory://", notifier_webhook_url=WEBHOOK_URL))
    assert isinstance(webhook, WebhookNotifier)

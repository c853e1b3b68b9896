"""Policy Gate: static security checks over a PlanDiff.

evaluate(plan_diff) -> list[PolicyFinding] is a pure function of the diff and
the configured rule set: the same plan always yields the same findings in
the same order (blocking, warning, info; then by address and rule id).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from aumos_iac_orchestrator.core.models import (
    SEVERITY_BLOCKING,
    SEVERITY_RANK,
    PlanDiff,
    PolicyFinding,
    Severity,
)
from aumos_iac_orchestrator.observability import get_logger
from aumos_iac_orchestrator.policy.rules import BUILTIN_RULES, PolicyRule
from aumos_iac_orchestrator.settings import Settings

logger = get_logger(__name__)


def has_blocking(findings: Iterable[PolicyFinding]) -> bool:
    """Return True when any finding blocks apply."""
    return any(finding.severity == SEVERITY_BLOCKING for finding in findings)


def blocking_findings(findings: Iterable[PolicyFinding]) -> list[PolicyFinding]:
    return [finding for finding in findings if finding.severity == SEVERITY_BLOCKING]


class PolicyGate:
    """Evaluates planned actions against the active policy rules.

    Args:
        rules: Rule set to evaluate. Defaults to BUILTIN_RULES.
        severity_overrides: rule_id -> severity replacing the rule default.
        disabled_rules: Rule ids that are skipped.
    """

    def __init__(
        self,
        rules: Iterable[PolicyRule] | None = None,
        severity_overrides: Mapping[str, Severity] | None = None,
        disabled_rules: Iterable[str] | None = None,
    ) -> None:
        """Initialize PolicyGate.

        Args:
            rules: Rule set; defaults to the built-in rules.
            severity_overrides: Per-rule severity overrides.
            disabled_rules: Rule ids to skip.
        """
        disabled = set(disabled_rules or ())
        self._rules = [rule for rule in (rules if rules is not None else BUILTIN_RULES) if rule.rule_id not in disabled]
        self._severity_overrides = dict(severity_overrides or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> PolicyGate:
        """Build a gate using the policy tuning from settings."""
        return cls(
            severity_overrides=settings.policy_severity_overrides,
            disabled_rules=settings.disabled_policy_rules,
        )

    @property
    def rules(self) -> list[PolicyRule]:
        """Active rules, in evaluation order."""
        return list(self._rules)

    def effective_severity(self, rule: PolicyRule) -> Severity:
        """Return the configured severity of a rule."""
        return self._severity_overrides.get(rule.rule_id, rule.severity)

    def evaluate(self, plan_diff: PlanDiff) -> list[PolicyFinding]:
        """Evaluate every planned action against every active rule.

        Args:
            plan_diff: The plan to check.

        Returns:
            Findings sorted by severity (blocking first), address and rule id.
        """
        findings: list[PolicyFinding] = []
        for action in plan_diff.actions:
            for rule in self._rules:
                if not rule.applies_to(action):
                    continue
                message = rule.check(action)
                if message is None:
                    continue
                findings.append(
                    PolicyFinding(
                        rule_id=rule.rule_id,
                        severity=self.effective_severity(rule),
                        address=action.address,
                        resource_type=action.resource_type,
                        action=action.action,
                        message=message,
                        remediation=rule.remediation,
                    )
                )

        findings.sort(key=lambda f: (SEVERITY_RANK[f.severity], f.address, f.rule_id, f.action))

        logger.info(
            "Policy evaluation complete",
            environment=plan_diff.environment,
            plan_id=plan_diff.plan_id,
            findings=len(findings),
            blocking=len(blocking_findings(findings)),
        )
        return findings

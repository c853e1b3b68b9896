"""Policy Gate: severity-tagged static checks over proposed changes.

Modules:
- rules: PolicyRule definitions and the built-in rule set
- gate: PolicyGate evaluating a PlanDiff into sorted PolicyFindings
"""

from aumos_iac_orchestrator.policy.gate import PolicyGate, blocking_findings, has_blocking
from aumos_iac_orchestrator.policy.rules import BUILTIN_RULES, PolicyRule

__all__ = ["BUILTIN_RULES", "PolicyGate", "PolicyRule", "blocking_findings", "has_blocking"]

"""Built-in policy rules evaluated against planned resource actions.

Each PolicyRule inspects one PlannedAction and returns a violation message,
or None when the action complies. Rules are pure functions of the action:
they look only at the attributes the plan will produce (``after``) or, for
lifecycle rules, at the action kind.

Built-in rules cover network exposure, public storage, weak TLS, encryption
at rest, destructive changes and ownership tagging.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from aumos_iac_orchestrator.core.models import (
    ACTION_CREATE,
    ACTION_DESTROY,
    ACTION_UPDATE,
    SEVERITY_BLOCKING,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    ActionKind,
    PlannedAction,
    Severity,
)

OPEN_CIDRS = frozenset({"0.0.0.0/0", "::/0"})

PUBLIC_ACLS = frozenset({"public-read", "public-read-write", "website", "authenticated-read"})

WEAK_TLS_POLICIES = frozenset(
    {
        "TLS-1-0",
        "TLS-1-1",
        "SSL-3.0",
        "ELBSecurityPolicy-TLS-1-0-2015-04",
        "ELBSecurityPolicy-TLS-1-1-2017-01",
        "ELBSecurityPolicy-2015-05",
        "ELBSecurityPolicy-2016-08",
    }
)

WEAK_TLS_VERSIONS = frozenset({"1.0", "1.1", "TLS1_0", "TLS1_1", "TLSv1", "TLSv1.1"})

STATEFUL_TYPES = frozenset({"bucket", "database", "volume"})

_CONFIGURING = frozenset({ACTION_CREATE, ACTION_UPDATE})


@dataclass(frozen=True)
class PolicyRule:
    """Immutable policy rule.

    Attributes:
        rule_id: Stable identifier (e.g., "network.public-ingress").
        severity: Default severity; configurable per deployment.
        description: What the rule enforces.
        remediation: How to fix a violation.
        actions: Action kinds the rule inspects.
        resource_types: Resource types the rule inspects. None means all types.
        check: Returns a violation message for a matching action, or None.
    """

    rule_id: str
    severity: Severity
    description: str
    remediation: str
    actions: frozenset[ActionKind]
    resource_types: frozenset[str] | None
    check: Callable[[PlannedAction], str | None]

    def applies_to(self, action: PlannedAction) -> bool:
        """Return True when the rule inspects this kind of action and resource."""
        if action.action not in self.actions:
            return False
        return self.resource_types is None or action.resource_type in self.resource_types


# ---------------------------------------------------------------------------
# Attribute helpers
# ---------------------------------------------------------------------------


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _cidrs(block: dict[str, Any]) -> Iterable[str]:
    for key in ("cidr_blocks", "ipv6_cidr_blocks", "source_ranges", "cidr"):
        yield from (str(cidr) for cidr in _as_list(block.get(key)))


def _is_false(value: Any) -> bool:
    return value is False or (isinstance(value, str) and value.lower() in {"false", "none", "disabled"})


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def check_public_ingress(action: PlannedAction) -> str | None:
    after = action.after or {}
    blocks = [block for block in _as_list(after.get("ingress")) if isinstance(block, dict)]
    blocks.append(after)
    for block in blocks:
        open_cidrs = sorted(OPEN_CIDRS.intersection(_cidrs(block)))
        if open_cidrs:
            ports = f"{block.get('from_port', '*')}-{block.get('to_port', '*')}"
            return f"Ingress on ports {ports} is open to {', '.join(open_cidrs)}"
    return None


def check_public_ip(action: PlannedAction) -> str | None:
    after = action.after or {}
    for key in ("associate_public_ip_address", "public_ip", "public"):
        if after.get(key) is True:
            return f"Instance is publicly reachable ({key}=true)"
    return None


def check_public_storage(action: PlannedAction) -> str | None:
    after = action.after or {}
    acl = after.get("acl")
    if acl in PUBLIC_ACLS:
        return f"Bucket ACL '{acl}' grants public access"
    if after.get("public_access") is True or _is_false(after.get("block_public_access")):
        return "Bucket allows public access"
    return None


def check_weak_tls(action: PlannedAction) -> str | None:
    after = action.after or {}
    ssl_policy = after.get("ssl_policy")
    if ssl_policy in WEAK_TLS_POLICIES:
        return f"Listener uses deprecated TLS policy '{ssl_policy}'"
    min_version = after.get("min_tls_version")
    if min_version is not None and str(min_version) in WEAK_TLS_VERSIONS:
        return f"Listener allows TLS version {min_version}"
    return None


def check_encryption(action: PlannedAction) -> str | None:
    after = action.after or {}
    for key in ("encrypted", "storage_encrypted", "encryption", "server_side_encryption"):
        if key in after:
            return f"Encryption at rest is disabled ({key}={after[key]})" if _is_false(after[key]) else None
    return "Encryption at rest is not configured"


def check_stateful_destroy(action: PlannedAction) -> str | None:
    if action.replacement:
        return f"Replacement destroys the existing {action.resource_type} and its data"
    return f"Destroying {action.resource_type} permanently deletes its data"


def check_destroy(action: PlannedAction) -> str | None:
    if action.resource_type in STATEFUL_TYPES:
        return None
    return f"{action.resource_type} will be destroyed ({action.reason})"


def check_owner_tag(action: PlannedAction) -> str | None:
    tags = (action.after or {}).get("tags")
    if isinstance(tags, dict) and tags.get("owner"):
        return None
    return "Resource has no 'owner' tag"


# ---------------------------------------------------------------------------
# Built-in rules
# ---------------------------------------------------------------------------

BUILTIN_RULES: list[PolicyRule] = [
    PolicyRule(
        rule_id="network.public-ingress",
        severity=SEVERITY_BLOCKING,
        description="Security groups must not accept ingress from the whole internet",
        remediation="Restrict ingress cidr_blocks to known ranges or front the service with a load balancer",
        actions=_CONFIGURING,
        resource_types=frozenset({"security_group", "firewall"}),
        check=check_public_ingress,
    ),
    PolicyRule(
        rule_id="compute.public-ip",
        severity=SEVERITY_BLOCKING,
        description="Instances must not be directly reachable from the internet",
        remediation="Place the instance in a private subnet and expose it through a load balancer",
        actions=_CONFIGURING,
        resource_types=frozenset({"instance"}),
        check=check_public_ip,
    ),
    PolicyRule(
        rule_id="storage.public-access",
        severity=SEVERITY_BLOCKING,
        description="Buckets must not be publicly readable or writable",
        remediation="Set acl to 'private' and grant access through bucket policies",
        actions=_CONFIGURING,
        resource_types=frozenset({"bucket"}),
        check=check_public_storage,
    ),
    PolicyRule(
        rule_id="tls.weak-policy",
        severity=SEVERITY_BLOCKING,
        description="Listeners must negotiate TLS 1.2 or newer",
        remediation="Use ELBSecurityPolicy-TLS13-1-2-2021-06 or set min_tls_version to 1.2",
        actions=_CONFIGURING,
        resource_types=frozenset({"listener", "load_balancer"}),
        check=check_weak_tls,
    ),
    PolicyRule(
        rule_id="storage.encryption-disabled",
        severity=SEVERITY_WARNING,
        description="Data stores should be encrypted at rest",
        remediation="Enable server-side encryption (AES256 or KMS)",
        actions=_CONFIGURING,
        resource_types=STATEFUL_TYPES,
        check=check_encryption,
    ),
    PolicyRule(
        rule_id="lifecycle.stateful-destroy",
        severity=SEVERITY_WARNING,
        description="Destroying a data store loses its contents",
        remediation="Take a backup or snapshot before applying",
        actions=frozenset({ACTION_DESTROY}),
        resource_types=STATEFUL_TYPES,
        check=check_stateful_destroy,
    ),
    PolicyRule(
        rule_id="lifecycle.destroy",
        severity=SEVERITY_INFO,
        description="Destroyed resources are reported for review",
        remediation="Confirm the resource is no longer needed",
        actions=frozenset({ACTION_DESTROY}),
        resource_types=None,
        check=check_destroy,
    ),
    PolicyRule(
        rule_id="tagging.missing-owner",
        severity=SEVERITY_INFO,
        description="New resources should carry an owner tag",
        remediation="Add tags = { owner = \"<team>\" } to the resource",
        actions=frozenset({ACTION_CREATE}),
        resource_types=None,
        check=check_owner_tag,
    ),
]

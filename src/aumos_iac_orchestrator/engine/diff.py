"""Pure planning functions: interpolation, validation, diffing and ordering.

Nothing in this module performs I/O. Given the desired resources, the
environment variables, the last snapshot and a provider's replacement rules,
it produces the ordered list of PlannedAction records a plan carries.

Ordering of the returned actions:
1. destroys of resources that nothing remaining depends on (reverse dependency order)
2. creates (dependency order)
3. updates (dependency order)
4. remaining destroys, including deposed create-before-destroy instances
   (reverse dependency order)
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from graphlib import CycleError, TopologicalSorter
from typing import Any

from aumos_iac_orchestrator.core.interfaces import IInfraProvider
from aumos_iac_orchestrator.core.models import (
    ACTION_CREATE,
    ACTION_DESTROY,
    ACTION_UPDATE,
    PlannedAction,
    ResourceDescriptor,
    ResourceRecord,
    StateSnapshot,
)
from aumos_iac_orchestrator.errors import PlanValidationError

_VARIABLE_REFERENCE = re.compile(r"\$\{var\.([A-Za-z_][A-Za-z0-9_]*)\}")


# ---------------------------------------------------------------------------
# Variable interpolation
# ---------------------------------------------------------------------------


def interpolate(value: Any, variables: Mapping[str, Any], address: str) -> Any:
    """Resolve ``${var.NAME}`` references inside an attribute value.

    A string consisting of exactly one reference takes the variable's value
    and type. References embedded in a longer string are substituted as text.
    Mappings and lists are resolved recursively.

    Args:
        value: The attribute value.
        variables: The environment's variable set.
        address: Resource address, for error context.

    Returns:
        The resolved value.

    Raises:
        PlanValidationError: If a referenced variable is not defined.
    """
    if isinstance(value, dict):
        return {key: interpolate(item, variables, address) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [interpolate(item, variables, address) for item in value]
    if not isinstance(value, str):
        return value

    def lookup(name: str) -> Any:
        if name not in variables:
            raise PlanValidationError(
                f"Undefined variable '{name}'",
                resource=address,
                details={"variable": name, "defined": sorted(variables)},
            )
        return variables[name]

    whole = _VARIABLE_REFERENCE.fullmatch(value)
    if whole is not None:
        return lookup(whole.group(1))
    return _VARIABLE_REFERENCE.sub(lambda match: str(lookup(match.group(1))), value)


def resolve_descriptors(
    desired: Sequence[ResourceDescriptor],
    variables: Mapping[str, Any],
) -> list[ResourceDescriptor]:
    """Return copies of the descriptors with variable references resolved."""
    return [
        descriptor.model_copy(
            update={"attributes": interpolate(descriptor.attributes, variables, descriptor.address)}
        )
        for descriptor in desired
    ]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _ordered(graph: Mapping[str, Iterable[str]]) -> list[str]:
    """Topologically sort a dependency graph with a deterministic tie-break.

    Dependencies on nodes outside the graph are ignored.

    Raises:
        CycleError: If the graph contains a cycle.
    """
    sorter: TopologicalSorter[str] = TopologicalSorter()
    for node, dependencies in graph.items():
        sorter.add(node, *(dep for dep in dependencies if dep in graph))
    sorter.prepare()

    order: list[str] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready())
        order.extend(ready)
        sorter.done(*ready)
    return order


def validate_desired(desired: Sequence[ResourceDescriptor]) -> dict[str, ResourceDescriptor]:
    """Validate the desired resource set and index it by address.

    Args:
        desired: The desired resources.

    Returns:
        Descriptors keyed by address.

    Raises:
        PlanValidationError: On duplicate addresses, unknown or self
            dependencies, or a dependency cycle.
    """
    indexed: dict[str, ResourceDescriptor] = {}
    for descriptor in desired:
        if descriptor.address in indexed:
            raise PlanValidationError(
                f"Duplicate resource address '{descriptor.address}'",
                resource=descriptor.address,
            )
        indexed[descriptor.address] = descriptor

    for address, descriptor in indexed.items():
        for dependency in descriptor.depends_on:
            if dependency == address:
                raise PlanValidationError("Resource depends on itself", resource=address)
            if dependency not in indexed:
                raise PlanValidationError(
                    f"Unknown dependency '{dependency}'",
                    resource=address,
                    details={"depends_on": list(descriptor.depends_on)},
                )

    try:
        _ordered({address: d.depends_on for address, d in indexed.items()})
    except CycleError as exc:
        cycle = list(exc.args[1]) if len(exc.args) > 1 else []
        raise PlanValidationError(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            resource=cycle[0] if cycle else None,
            details={"cycle": cycle},
        ) from exc

    return indexed


# ---------------------------------------------------------------------------
# Diff and ordering
# ---------------------------------------------------------------------------


def _changed_keys(before: Mapping[str, Any], after: Mapping[str, Any]) -> tuple[str, ...]:
    return tuple(sorted(key for key in before.keys() | after.keys() if before.get(key) != after.get(key)))


def _destroy(record: ResourceRecord, reason: str, replacement: bool = False, deposed: bool = False) -> PlannedAction:
    return PlannedAction(
        action=ACTION_DESTROY,
        address=record.address,
        resource_type=record.type,
        name=record.name,
        before=dict(record.attributes),
        depends_on=record.depends_on,
        reason=reason,
        replacement=replacement,
        deposed=deposed,
        resource_id=record.resource_id,
    )


def compute_actions(
    desired: Mapping[str, ResourceDescriptor],
    snapshot: StateSnapshot,
    provider: IInfraProvider,
) -> list[PlannedAction]:
    """Diff the desired resources against a snapshot and order the actions.

    Args:
        desired: Validated, interpolated descriptors keyed by address.
        snapshot: The environment's current state.
        provider: Provider supplying normalization and replacement rules.

    Returns:
        The ordered planned actions. Empty when state already matches.
    """
    current = snapshot.resources

    # Resources surviving the apply and the addresses they depend on, both as
    # recorded in state and as desired.
    remaining_dependencies: dict[str, set[str]] = {}
    for address, descriptor in desired.items():
        deps = set(descriptor.depends_on)
        if address in current:
            deps.update(current[address].depends_on)
        remaining_dependencies[address] = deps

    # Removed resources held back to the end of the apply, closed over
    # dependency chains: a removed resource is held back when a survivor, a
    # deposed record or another held-back removed resource depends on it.
    held_back: set[str] = set()
    removed = [address for address in current if address not in desired]
    held_dependencies = list(remaining_dependencies.values())
    held_dependencies.extend(set(record.depends_on) for record in snapshot.deposed.values())
    grew = True
    while grew:
        grew = False
        for address in removed:
            if address in held_back or not any(address in deps for deps in held_dependencies):
                continue
            held_back.add(address)
            held_dependencies.append(set(current[address].depends_on))
            grew = True

    def has_remaining_dependents(address: str) -> bool:
        return any(
            address in deps for other, deps in remaining_dependencies.items() if other != address
        ) or any(address in current[other].depends_on for other in held_back)

    creates: list[PlannedAction] = []
    updates: list[PlannedAction] = []
    early_destroys: list[PlannedAction] = []
    late_destroys: list[PlannedAction] = []

    for address, descriptor in desired.items():
        after = provider.describe(descriptor)
        record = current.get(address)

        if record is None:
            creates.append(
                PlannedAction(
                    action=ACTION_CREATE,
                    address=address,
                    resource_type=descriptor.type,
                    name=descriptor.name,
                    after=after,
                    changed_attributes=tuple(sorted(after)),
                    depends_on=descriptor.depends_on,
                    reason="not in state",
                )
            )
            continue

        changed = _changed_keys(record.attributes, after)
        dependencies_changed = sorted(record.depends_on) != sorted(descriptor.depends_on)
        if not changed and not dependencies_changed:
            continue

        if not provider.requires_replacement(descriptor.type, changed):
            updates.append(
                PlannedAction(
                    action=ACTION_UPDATE,
                    address=address,
                    resource_type=descriptor.type,
                    name=descriptor.name,
                    before=dict(record.attributes),
                    after=after,
                    changed_attributes=changed,
                    depends_on=descriptor.depends_on,
                    reason="attributes changed" if changed else "dependencies changed",
                    resource_id=record.resource_id,
                )
            )
            continue

        immutable = [key for key in changed if provider.requires_replacement(descriptor.type, [key])]
        reason = f"replacement forced by {', '.join(immutable)}"
        create_before_destroy = has_remaining_dependents(address)
        creates.append(
            PlannedAction(
                action=ACTION_CREATE,
                address=address,
                resource_type=descriptor.type,
                name=descriptor.name,
                before=dict(record.attributes),
                after=after,
                changed_attributes=changed,
                depends_on=descriptor.depends_on,
                reason=reason,
                replacement=True,
            )
        )
        if create_before_destroy:
            late_destroys.append(_destroy(record, reason, replacement=True, deposed=True))
        else:
            early_destroys.append(_destroy(record, reason, replacement=True))

    for address, record in current.items():
        if address in desired:
            continue
        destroy = _destroy(record, "no longer declared")
        if address in held_back:
            late_destroys.append(destroy)
        else:
            early_destroys.append(destroy)

    for record in snapshot.deposed.values():
        late_destroys.append(_destroy(record, "deposed by an earlier replacement", replacement=True, deposed=True))

    desired_rank = {
        address: index
        for index, address in enumerate(_ordered({a: d.depends_on for a, d in desired.items()}))
    }
    state_graph: dict[str, set[str]] = {address: set(r.depends_on) for address, r in current.items()}
    for record in snapshot.deposed.values():
        state_graph.setdefault(record.address, set()).update(record.depends_on)
    try:
        state_order = _ordered(state_graph)
    except CycleError:
        # A partial apply can leave recorded dependencies mid-change; destroy by address
        state_order = sorted(state_graph)
    state_rank = {address: index for index, address in enumerate(state_order)}

    creates.sort(key=lambda a: desired_rank[a.address])
    updates.sort(key=lambda a: desired_rank[a.address])
    early_destroys.sort(key=lambda a: state_rank.get(a.address, -1), reverse=True)
    late_destroys.sort(key=lambda a: (state_rank.get(a.address, -1), a.key), reverse=True)

    return [*early_destroys, *creates, *updates, *late_destroys]

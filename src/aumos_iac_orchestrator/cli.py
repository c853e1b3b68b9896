"""Command-line entry point: ``aumos-iac``.

Commands:
    bootstrap-backend                 create the state backend tables
    plan <env>                        compute a plan and print it with policy findings
    apply <env>                       plan (or load a saved plan), gate and apply
    destroy <env>                     plan the destruction of every resource and apply

Exit codes follow aumos_iac_orchestrator.errors: 0 success, 1 policy-blocked,
2 lock-contention, 3 stale plan, 4 any other failure, 64 usage error.
"""

import argparse
import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any, NoReturn, TextIO

from pydantic import ValidationError

from aumos_iac_orchestrator.container import ServiceContainer, build_container, close_container
from aumos_iac_orchestrator.core.models import PlanDiff, PolicyFinding
from aumos_iac_orchestrator.errors import (
    EXIT_OK,
    EXIT_USAGE,
    ApprovalError,
    OrchestratorError,
    PlanValidationError,
    PolicyBlockedError,
)
from aumos_iac_orchestrator.manifest import DEFAULT_MANIFEST_PATH, load_manifest
from aumos_iac_orchestrator.observability import configure_logging, get_logger
from aumos_iac_orchestrator.policy.gate import blocking_findings
from aumos_iac_orchestrator.settings import Settings

logger = get_logger(__name__)

_ACTION_SYMBOLS = {"create": "+", "update": "~", "destroy": "-"}


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with EXIT_USAGE on invalid arguments."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    """Build the ``aumos-iac`` argument parser."""
    parser = _ArgumentParser(prog="aumos-iac", description="Infrastructure-as-code orchestrator.")
    parser.add_argument(
        "--state-backend",
        default=None,
        help="State backend URL (overrides AUMOS_IAC_STATE_BACKEND_URL)",
    )
    parser.add_argument("--log-level", default=None, help="Log level (overrides AUMOS_IAC_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="cmd", required=True, parser_class=_ArgumentParser)

    sub.add_parser("bootstrap-backend", help="Create the state backend tables")

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("environment", help="Environment name")
        p.add_argument(
            "--manifest",
            type=Path,
            default=DEFAULT_MANIFEST_PATH,
            help=f"Infrastructure manifest (default: {DEFAULT_MANIFEST_PATH})",
        )

    p_plan = sub.add_parser("plan", help="Compute a plan and evaluate policy")
    add_common(p_plan)
    p_plan.add_argument("--out", type=Path, default=None, help="Write the plan as JSON to this path")

    p_apply = sub.add_parser("apply", help="Apply a plan")
    add_common(p_apply)
    p_apply.add_argument("--plan", type=Path, default=None, help="Saved plan from 'plan --out'")
    p_apply.add_argument("--override-actor", default=None, help="Authorized actor overriding blocking findings")

    p_destroy = sub.add_parser("destroy", help="Destroy every resource of an environment")
    add_common(p_destroy)
    p_destroy.add_argument("--override-actor", default=None, help="Authorized actor overriding blocking findings")

    return parser


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def render_plan(plan: PlanDiff, findings: Sequence[PolicyFinding], out: TextIO) -> None:
    """Write a human-readable plan and its findings."""
    if plan.recovering_from is not None:
        out.write(
            f"Recovering from {plan.recovering_from.status} apply of plan {plan.recovering_from.plan_id}\n"
        )
    if plan.is_empty:
        out.write(f"No changes. Environment '{plan.environment}' matches the desired configuration.\n")
    for action in plan.actions:
        suffix = f" [deposed {action.resource_id}]" if action.deposed else ""
        out.write(f"  {_ACTION_SYMBOLS[action.action]} {action.address}{suffix} ({action.reason})\n")

    summary = plan.summary()
    out.write(
        f"Plan {plan.plan_id}: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['destroy']} to destroy ({summary['replace']} replacements)\n"
    )
    for finding in findings:
        out.write(f"  [{finding.severity}] {finding.rule_id} {finding.address}: {finding.message}\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _check_gate(
    container: ServiceContainer,
    plan: PlanDiff,
    findings: Sequence[PolicyFinding],
    override_actor: str | None,
) -> None:
    blocking = blocking_findings(findings)
    if not blocking:
        return
    if override_actor is None:
        raise PolicyBlockedError(
            plan.environment,
            rule_ids=sorted({f.rule_id for f in blocking}),
            addresses=sorted({f.address for f in blocking}),
        )
    if override_actor not in container.settings.policy_override_actors:
        raise ApprovalError(
            f"Actor '{override_actor}' may not override blocking policy findings",
            environment=plan.environment,
            details={"actor": override_actor},
        )
    logger.warning(
        "Blocking policy findings overridden",
        environment=plan.environment,
        plan_id=plan.plan_id,
        actor=override_actor,
        rule_ids=sorted({f.rule_id for f in blocking}),
    )


def _load_plan(path: Path) -> PlanDiff:
    try:
        return PlanDiff.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PlanValidationError(f"Plan file not found: {path}", details={"source": str(path)}) from exc
    except ValidationError as exc:
        raise PlanValidationError(
            f"Plan file {path} is invalid: {exc.error_count()} error(s)",
            details={"source": str(path)},
        ) from exc


async def _run(args: argparse.Namespace, container: ServiceContainer, out: TextIO) -> int:
    await container.state_backend.bootstrap()
    if args.cmd == "bootstrap-backend":
        out.write(f"State backend ready at {container.state_backend.location}\n")
        return EXIT_OK

    environment: str = args.environment
    manifest = load_manifest(args.manifest)
    await container.registry.ensure(environment, manifest.variables_for(environment))
    engine = container.engine

    if args.cmd == "plan":
        plan = await engine.plan(environment, manifest.resources)
        findings = container.gate.evaluate(plan)
        render_plan(plan, findings, out)
        if args.out is not None:
            args.out.write_text(plan.model_dump_json(indent=2), encoding="utf-8")
            out.write(f"Plan written to {args.out}\n")
        return EXIT_OK

    if args.cmd == "apply":
        plan = _load_plan(args.plan) if args.plan is not None else await engine.plan(environment, manifest.resources)
    else:
        plan = await engine.plan_destroy(environment)

    findings = container.gate.evaluate(plan)
    render_plan(plan, findings, out)
    _check_gate(container, plan, findings, args.override_actor)

    result = await engine.apply(plan, environment)
    out.write(
        f"Apply complete: {len(result.applied_actions)} action(s), state version {result.state_version}\n"
    )
    return EXIT_OK


def main(argv: Sequence[str] | None = None, out: TextIO | None = None) -> int:
    """Run the CLI.

    Args:
        argv: Arguments without the program name. Defaults to sys.argv[1:].
        out: Stream receiving command output. Defaults to stdout.

    Returns:
        The process exit code.
    """
    args = build_parser().parse_args(argv)
    out = out or sys.stdout

    overrides: dict[str, Any] = {}
    if args.state_backend is not None:
        overrides["state_backend_url"] = args.state_backend
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    settings = Settings(**overrides)
    configure_logging(settings.log_level, json_logs=settings.log_json)

    async def runner() -> int:
        container = build_container(settings)
        try:
            return await _run(args, container, out)
        finally:
            await close_container(container)

    try:
        return asyncio.run(runner())
    except OrchestratorError as exc:
        logger.error(
            "Command failed",
            command=args.cmd,
            error=type(exc).__name__,
            message=exc.message,
            environment=exc.environment,
            resource=exc.resource,
        )
        sys.stderr.write(f"Error: {exc}\n")
        return exc.exit_code


if __name__ == "__main__":
    raise SystemExit(main())

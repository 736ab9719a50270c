"""converge command line interface.

Usage:
    converge validate -f state.yaml            # Run precondition checks only
    converge plan -f state.yaml [--prune]      # Show what apply would do
    converge apply -f state.yaml [--prune]     # Plan, confirm, apply
    converge destroy -f state.yaml [--purge]   # Tear down declared resources
    converge resolve NAME --network-scope S    # Query the private resolver

Exit codes:
    0   success, or no changes
    1   validation failure (load errors, secret material, cycles included)
    2   plan computed but apply declined
    3   partial failure
    4   fatal error
    130 cancelled by signal
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from .approval import confirm_plan
from .azure_backend import AzureBackend
from .backend import Backend, BackendError
from .config import BackendType, ConfigurationError, EngineConfig
from .graph import CycleError, DependencyGraph, build_graph
from .local_backend import LocalBackend
from .main import setup_logging
from .models import DeclaredState
from .plan import Action, DriftConflictError, Plan, format_plan
from .planner import Planner, capture_snapshot
from .reconciler import ApplyOutcome, ApplyReport, Reconciler, StepStatus
from .resolver import QueryState, Resolver
from .security import SecretlessViolationError, SecretMaterialError
from .spec_loader import SpecLoadError, load_declared_state
from .teardown import PurgeNotConfirmedError, TeardownMode, TeardownOrchestrator, plan_teardown
from .validator import PreconditionValidator, ValidationError, ValidationReport

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXIT_OK = 0
EXIT_VALIDATION_FAILED = 1
EXIT_DECLINED = 2
EXIT_PARTIAL_FAILURE = 3
EXIT_FATAL = 4
EXIT_CANCELLED = 130

_STATUS_STYLE: dict[StepStatus, dict[str, Any]] = {
    StepStatus.SUCCEEDED: {"fg": "green"},
    StepStatus.FAILED: {"fg": "red", "bold": True},
    StepStatus.SKIPPED: {"fg": "yellow"},
    StepStatus.PENDING: {"dim": True},
    StepStatus.IN_PROGRESS: {"dim": True},
}


class Abort(Exception):
    """Stops a command with a specific exit code."""

    def __init__(self, exit_code: int, message: str | None = None) -> None:
        super().__init__(message or "")
        self.exit_code = exit_code
        self.message = message


def make_backend(config: EngineConfig) -> Backend:
    """Build the backend selected by configuration."""
    if config.backend == BackendType.AZURE:
        assert config.subscription_id is not None
        return AzureBackend(config.subscription_id, config.location)
    return LocalBackend(
        state_file=config.local_state_file,
        retention_days=config.soft_delete_retention_days,
    )


def _config(ctx: click.Context) -> EngineConfig:
    return ctx.obj["config"]


def _backend(ctx: click.Context) -> Backend:
    if ctx.obj.get("backend") is None:
        ctx.obj["backend"] = make_backend(_config(ctx))
    return ctx.obj["backend"]


def _run(ctx: click.Context, action: Callable[[], Awaitable[int]]) -> None:
    """Run an async command body and map engine errors to exit codes."""
    try:
        code = asyncio.run(action())
    except Abort as e:
        if e.message:
            click.echo(click.style(e.message, fg="red"), err=True)
        code = e.exit_code
    except (SpecLoadError, SecretMaterialError, CycleError, ValidationError) as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        code = EXIT_VALIDATION_FAILED
    except (
        BackendError,
        DriftConflictError,
        PurgeNotConfirmedError,
        SecretlessViolationError,
        ConfigurationError,
    ) as e:
        logger.error("Command failed", extra={"error": str(e), "error_type": type(e).__name__})
        click.echo(click.style(f"Fatal: {e}", fg="red", bold=True), err=True)
        code = EXIT_FATAL
    ctx.exit(code)


async def _with_signals(cancel_event: asyncio.Event, coro: Awaitable[T]) -> T:
    """Await ``coro`` with SIGINT/SIGTERM wired to ``cancel_event``."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.warning("Received signal, cancelling", extra={"signal": sig.name})
        click.echo(
            click.style("Cancelling: waiting for in-flight steps to finish...", fg="yellow"),
            err=True,
        )
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # No signal support in this loop (non-main thread or platform)
            pass
    try:
        return await coro
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _load(spec_file: Path, overrides: Path | None) -> tuple[DeclaredState, DependencyGraph]:
    state = load_declared_state(spec_file, overrides)
    return state, build_graph(state)


def _print_validation(report: ValidationReport) -> None:
    for finding in report.findings:
        color = "red" if finding in report.fatal else "yellow"
        click.echo(click.style(str(finding), fg=color), err=True)


async def _validated_plan(
    ctx: click.Context, spec_file: Path, overrides: Path | None, prune: bool
) -> Plan:
    config = _config(ctx)
    backend = _backend(ctx)
    state, graph = _load(spec_file, overrides)

    report = await PreconditionValidator(backend, config.validation_concurrency).validate(
        state, graph
    )
    _print_validation(report)
    report.raise_for_fatal()

    snapshot = await capture_snapshot(
        backend,
        graph,
        state.deployment_name,
        include_owned=prune,
        concurrency=config.validation_concurrency,
    )
    return Planner().plan(graph, snapshot, state.deployment_name, prune=prune)


def _print_report(report: ApplyReport) -> None:
    for result in report.results.values():
        if result.action == Action.NOOP and result.status == StepStatus.SUCCEEDED:
            continue
        line = f"  {result.status.value:<10} {result.action.value:<8} {result.key}"
        if result.error:
            line += f"  ({result.error})"
        click.echo(click.style(line, **_STATUS_STYLE[result.status]))
        for warning in result.warnings:
            click.echo(click.style(f"      warning: {warning}", fg="yellow"))

    click.echo("")
    click.echo(
        f"Apply {report.outcome.value}: {len(report.succeeded)} succeeded, "
        f"{len(report.failed)} failed, {len(report.skipped)} skipped."
    )


def _exit_code(report: ApplyReport) -> int:
    if report.outcome == ApplyOutcome.CANCELLED:
        return EXIT_CANCELLED
    if report.outcome == ApplyOutcome.PARTIAL_FAILURE:
        return EXIT_PARTIAL_FAILURE
    return EXIT_OK


def declared_state_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that reads a declared state."""
    f = click.option(
        "-o",
        "--overrides",
        type=click.Path(dir_okay=False, path_type=Path),
        default=None,
        help="Overrides document merged over the declared state.",
    )(f)
    f = click.option(
        "-f",
        "--file",
        "spec_file",
        required=True,
        type=click.Path(dir_okay=False, path_type=Path),
        help="Declared-state YAML document.",
    )(f)
    return f


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """converge: declarative infrastructure reconciliation."""
    ctx.ensure_object(dict)
    if ctx.obj.get("config") is None:
        try:
            ctx.obj["config"] = EngineConfig.from_env()
        except ConfigurationError as e:
            click.echo(click.style(str(e), fg="red"), err=True)
            ctx.exit(EXIT_FATAL)
    setup_logging(ctx.obj["config"])


@cli.command()
@declared_state_options
@click.pass_context
def validate(ctx: click.Context, spec_file: Path, overrides: Path | None) -> None:
    """Load the declared state and run precondition checks."""

    async def action() -> int:
        state, graph = _load(spec_file, overrides)
        report = await PreconditionValidator(
            _backend(ctx), _config(ctx).validation_concurrency
        ).validate(state, graph)
        _print_validation(report)
        if report.has_fatal:
            click.echo(click.style(f"{len(report.fatal)} fatal finding(s).", fg="red", bold=True))
            return EXIT_VALIDATION_FAILED
        click.echo(
            click.style(
                f"Validation passed for {len(graph.managed_keys())} resource(s).", fg="green"
            )
        )
        return EXIT_OK

    _run(ctx, action)


@cli.command()
@declared_state_options
@click.option("--prune", is_flag=True, help="Delete owned resources no longer declared.")
@click.option("--show-unchanged", is_flag=True, help="Also list NoOp steps.")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON.")
@click.pass_context
def plan(
    ctx: click.Context,
    spec_file: Path,
    overrides: Path | None,
    prune: bool,
    show_unchanged: bool,
    as_json: bool,
) -> None:
    """Show the changes apply would make."""

    async def action() -> int:
        computed = await _validated_plan(ctx, spec_file, overrides, prune)
        if as_json:
            click.echo(json.dumps(computed.to_dict(), indent=2, default=str))
        else:
            click.echo(format_plan(computed, show_noop=show_unchanged))
        return EXIT_OK

    _run(ctx, action)


@cli.command()
@declared_state_options
@click.option("--prune", is_flag=True, help="Delete owned resources no longer declared.")
@click.option("--auto-approve", is_flag=True, help="Skip interactive confirmation.")
@click.pass_context
def apply(
    ctx: click.Context,
    spec_file: Path,
    overrides: Path | None,
    prune: bool,
    auto_approve: bool,
) -> None:
    """Plan, confirm and converge the live state."""

    async def action() -> int:
        computed = await _validated_plan(ctx, spec_file, overrides, prune)
        click.echo(format_plan(computed))
        if not computed.has_changes:
            return EXIT_OK
        if not confirm_plan(computed, auto_approve=auto_approve):
            raise Abort(EXIT_DECLINED, "Apply declined; no changes were made.")

        cancel_event = asyncio.Event()
        reconciler = Reconciler(_backend(ctx), _config(ctx), cancel_event)
        report = await _with_signals(cancel_event, reconciler.apply(computed))
        _print_report(report)
        return _exit_code(report)

    _run(ctx, action)


@cli.command()
@declared_state_options
@click.option("--purge", is_flag=True, help="Also purge soft-deleted resources (irreversible).")
@click.option("--auto-approve", is_flag=True, help="Skip interactive confirmation.")
@click.pass_context
def destroy(
    ctx: click.Context,
    spec_file: Path,
    overrides: Path | None,
    purge: bool,
    auto_approve: bool,
) -> None:
    """Tear down every declared resource in reverse dependency order."""

    async def action() -> int:
        config = _config(ctx)
        backend = _backend(ctx)
        state, graph = _load(spec_file, overrides)
        snapshot = await capture_snapshot(
            backend, graph, state.deployment_name, concurrency=config.validation_concurrency
        )
        mode = TeardownMode.PURGE if purge else TeardownMode.SOFT_REMOVE
        computed = plan_teardown(
            graph, snapshot, state.deployment_name, mode=mode, purge_confirmed=purge
        )
        click.echo(format_plan(computed))
        if not computed.has_changes:
            return EXIT_OK
        if not confirm_plan(computed, auto_approve=auto_approve):
            raise Abort(EXIT_DECLINED, "Destroy declined; no changes were made.")

        cancel_event = asyncio.Event()
        orchestrator = TeardownOrchestrator(backend, config, cancel_event)
        report = await _with_signals(cancel_event, orchestrator.execute(computed))
        _print_report(report)
        return _exit_code(report)

    _run(ctx, action)


@cli.command()
@click.argument("name")
@click.option(
    "-n", "--network-scope", required=True, help="Scope whose network sends the query."
)
@click.option(
    "-f",
    "--file",
    "spec_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Declared-state document; checks the network scope is declared.",
)
@click.option(
    "-o",
    "--overrides",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Overrides document merged over the declared state.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def resolve(
    ctx: click.Context,
    name: str,
    network_scope: str,
    spec_file: Path | None,
    overrides: Path | None,
    as_json: bool,
) -> None:
    """Resolve NAME as seen from a network scope."""

    async def action() -> int:
        if spec_file is not None:
            _, graph = _load(spec_file, overrides)
            if f"scope/{network_scope}" not in graph:
                raise Abort(
                    EXIT_VALIDATION_FAILED,
                    f"Network scope '{network_scope}' is not declared in {spec_file}",
                )

        resolver = Resolver(network_scope, _backend(ctx).list_zones)
        result = await asyncio.to_thread(resolver.resolve, name)

        if as_json:
            click.echo(json.dumps(result.to_dict(), indent=2))
            return EXIT_OK

        path = " -> ".join(s.value for s in result.trace)
        click.echo(f"{result.query}: {result.state.value}  ({path})")
        if result.state == QueryState.PRIVATE_ANSWER:
            assert result.zone is not None
            click.echo(f"  zone: {result.zone.scope}/{result.zone.name}")
        elif result.forwarded_to:
            click.echo(f"  forwarded to: {result.forwarded_to}")
        for address in result.addresses:
            click.echo(click.style(f"  {address}", fg="green"))
        return EXIT_OK

    _run(ctx, action)

"""
Main entry point - the ``cairn`` command line.

Exit codes:
    plan     0 on success, 2 on declaration, graph or reference errors
    apply    0 all steps succeeded, 1 partial failure, 2 planning or lock error
    destroy  same as apply
    drift    0 no drift, 1 drift detected, 2 on error
"""

import asyncio
import json
import logging
import signal
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

import click
import yaml
from tabulate import tabulate

from config import Config, get_config
from declaration import load_declaration, parse_variable_overrides
from db import PostgresStateStore
from engine import ApplyReport, DriftReport, Engine
from errors import CairnError
from events import EventBus
from models import OperationKind, OutcomeStatus, Plan
from providers.registry import (
    RoutingProvider,
    create_router,
    get_registry,
    register_builtin_providers,
)
from state import LocalStateStore, StateStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ERROR = 2

SYMBOLS = {
    OperationKind.CREATE: "+",
    OperationKind.UPDATE: "~",
    OperationKind.REPLACE: "-/+",
    OperationKind.DELETE: "-",
}


class Application:
    """Builds the provider router, state store and engine for one stack."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.provider: Optional[RoutingProvider] = None
        self.store: Optional[StateStore] = None
        self.engine: Optional[Engine] = None
        self.event_bus = EventBus()

    async def initialize(self, stack: str) -> Engine:
        """Initialize all components."""
        register_builtin_providers()
        registry = get_registry()

        provider_configs: Dict[str, Dict[str, Any]] = {}
        for name in registry.list_providers():
            provider_configs[name] = dict(registry.get_provider_config(name))
            provider_configs[name].update(
                self.config.providers.get_provider_config(name)
            )

        self.provider = await create_router(
            registry, self.config.providers.enabled_providers, provider_configs
        )

        state_config = self.config.state
        if state_config.backend == "postgres":
            db_config = self.config.database
            store = PostgresStateStore(
                stack=stack,
                host=db_config.host,
                port=db_config.port,
                database=db_config.database,
                user=db_config.user,
                password=db_config.password,
                min_pool_size=db_config.min_pool_size,
                max_pool_size=db_config.max_pool_size,
            )
            await store.connect()
            await store.initialize_schema()
            self.store = store
        else:
            self.store = LocalStateStore(state_config.directory, stack)

        self.engine = Engine(
            provider=self.provider,
            store=self.store,
            executor_config=self.config.executor,
            state_config=state_config,
            event_bus=self.event_bus,
        )
        logger.debug(f"Initialized engine for stack '{stack}'")
        return self.engine

    async def close(self):
        if self.provider:
            await self.provider.close()
        if self.store:
            await self.store.close()
        await get_registry().close()


def _run(
    ctx: click.Context, stack: str, action: Callable[[Application], Awaitable[int]]
) -> None:
    """Run an async command against a fresh Application and exit with its code."""

    async def runner() -> int:
        app = Application(ctx.obj["config"])
        try:
            await app.initialize(stack)
            return await action(app)
        finally:
            await app.close()

    try:
        code = asyncio.run(runner())
    except CairnError as e:
        click.echo(f"Error: {e.message}", err=True)
        code = EXIT_ERROR
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        code = EXIT_ERROR
    ctx.exit(code)


def _load(ctx: click.Context, filename: str, var: List[str]):
    try:
        declaration = load_declaration(filename)
        variables = parse_variable_overrides(var)
    except CairnError as e:
        click.echo(f"Error: {e.message}", err=True)
        ctx.exit(EXIT_ERROR)
    return declaration, variables


def _dump(data: Any, output: str) -> None:
    if output == "yaml":
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=True))
    else:
        click.echo(json.dumps(data, indent=2, sort_keys=True))


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def render_plan(plan: Plan) -> str:
    """Human-readable plan: one row per change plus property diffs."""
    if plan.is_empty:
        return f"No changes. Stack '{plan.stack}' is up to date."

    rows = [
        [SYMBOLS[c.kind], c.resource_id, c.resource_type, c.kind.value, c.reason]
        for c in plan.changes
    ]
    lines = [tabulate(rows, headers=["", "RESOURCE", "TYPE", "ACTION", "REASON"])]

    details = []
    for change in plan.changes:
        if change.kind not in (OperationKind.UPDATE, OperationKind.REPLACE):
            continue
        for name, diff in sorted(change.diff.items()):
            after = "(known after apply)" if diff.unknown else _format_value(diff.after)
            suffix = "  # forces replacement" if diff.immutable else ""
            details.append(
                f"  {change.resource_id}.{name}: "
                f"{_format_value(diff.before)} -> {after}{suffix}"
            )
    if details:
        lines.append("")
        lines.extend(details)

    counts = plan.summary()
    lines.append("")
    lines.append(
        f"Plan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['replace']} to replace, {counts['delete']} to delete."
    )
    lines.append("Steps: " + " -> ".join(str(step) for step in plan.steps))
    return "\n".join(lines)


def render_result(report: ApplyReport) -> str:
    result = report.result
    rows = [
        [o.step.resource_id, o.step.action.value, o.status.value, o.attempts, o.reason or ""]
        for o in result.outcomes
    ]
    lines = []
    if rows:
        lines.append(
            tabulate(rows, headers=["RESOURCE", "STEP", "STATUS", "ATTEMPTS", "REASON"])
        )
    succeeded = sum(1 for o in result.outcomes if o.status == OutcomeStatus.SUCCEEDED)
    failed = sum(1 for o in result.outcomes if o.status == OutcomeStatus.FAILED)
    skipped = sum(1 for o in result.outcomes if o.status == OutcomeStatus.SKIPPED)
    summary = (
        f"Apply finished in {result.duration_seconds:.1f}s: {succeeded} succeeded, "
        f"{failed} failed, {skipped} skipped."
    )
    if result.cancelled:
        summary += " (cancelled)"
    lines.append(summary)
    return "\n".join(lines)


def render_drift(report: DriftReport) -> str:
    if not report.has_drift:
        return f"No drift detected in stack '{report.stack}'."
    rows = []
    for rid, diff in sorted(report.changed.items()):
        for name, change in sorted(diff.items()):
            rows.append(
                [rid, name, _format_value(change.before), _format_value(change.after)]
            )
    for rid in sorted(report.missing):
        rows.append([rid, "(resource)", "exists", "missing"])
    return tabulate(rows, headers=["RESOURCE", "PROPERTY", "RECORDED", "LIVE"])


async def _apply_with_progress(
    app: Application, operation: Callable[[], Awaitable[ApplyReport]]
) -> ApplyReport:
    """Stream step events and cancel cleanly on SIGINT while an apply runs."""
    subscriber_id, subscription = await app.event_bus.subscribe()

    async def printer():
        async for event in subscription:
            click.echo(event.describe())

    printer_task = asyncio.create_task(printer())
    loop = asyncio.get_running_loop()

    def on_interrupt():
        click.echo("Interrupted: finishing in-flight steps, skipping the rest", err=True)
        app.engine.cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable; Ctrl-C will abort immediately")

    try:
        return await operation()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await app.event_bus.unsubscribe(subscriber_id)
        await printer_task


# CLI


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log verbosity (default: LOG_LEVEL or INFO)",
)
@click.option("--state-dir", default=None, help="Directory of the local state backend")
@click.option(
    "--backend",
    type=click.Choice(["local", "postgres"]),
    default=None,
    help="State backend (default: CAIRN_STATE_BACKEND or local)",
)
@click.pass_context
def cli(ctx, log_level, state_dir, backend):
    """cairn - desired-state reconciliation for declarative infrastructure"""
    try:
        config = get_config()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_ERROR)

    if state_dir or backend:
        config = replace(
            config,
            state=replace(
                config.state,
                directory=state_dir or config.state.directory,
                backend=backend or config.state.backend,
            ),
        )

    logging.basicConfig(
        level=getattr(logging, (log_level or config.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


_var_option = click.option(
    "--var", "var", multiple=True, help="Override a variable (name=value)"
)
_output_option = click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@_var_option
@click.option("--refresh", is_flag=True, help="Refresh state from providers first")
@click.option("--destroy", "destroy_plan", is_flag=True, help="Plan deleting everything")
@_output_option
@click.pass_context
def plan(ctx, filename, var, refresh, destroy_plan, output):
    """Show the changes needed to reach the declared state"""
    declaration, variables = _load(ctx, filename, var)

    async def action(app: Application) -> int:
        if destroy_plan:
            result = await app.engine.plan_destroy(declaration)
        else:
            result = await app.engine.plan(declaration, variables, refresh=refresh)
        if output == "table":
            click.echo(render_plan(result))
        else:
            _dump(result.to_dict(), output)
        return EXIT_OK

    _run(ctx, declaration.stack, action)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@_var_option
@click.option("--refresh", is_flag=True, help="Refresh state from providers first")
@_output_option
@click.pass_context
def apply(ctx, filename, var, refresh, output):
    """Plan and apply a stack declaration"""
    declaration, variables = _load(ctx, filename, var)

    async def action(app: Application) -> int:
        report = await _apply_with_progress(
            app, lambda: app.engine.apply(declaration, variables, refresh=refresh)
        )
        _print_report(report, output)
        return EXIT_OK if report.succeeded else EXIT_FAILED

    _run(ctx, declaration.stack, action)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@_output_option
@click.pass_context
def destroy(ctx, filename, output):
    """Delete every resource of a stack, dependents first"""
    declaration, _ = _load(ctx, filename, ())

    async def action(app: Application) -> int:
        report = await _apply_with_progress(
            app, lambda: app.engine.destroy(declaration)
        )
        _print_report(report, output)
        return EXIT_OK if report.succeeded else EXIT_FAILED

    _run(ctx, declaration.stack, action)


def _print_report(report: ApplyReport, output: str) -> None:
    if output != "table":
        _dump(report.to_dict(), output)
        return
    click.echo(render_plan(report.plan))
    if report.result.outcomes:
        click.echo("")
        click.echo(render_result(report))
    for outcome in report.result.failures():
        click.echo(
            f"Error: {outcome.step} {outcome.status.value}: {outcome.reason}", err=True
        )
    for name, error in sorted(report.output_errors.items()):
        click.echo(f"Error: output {name}: {error}", err=True)
    if report.outputs:
        click.echo("")
        click.echo("Outputs:")
        for name, value in sorted(report.outputs.items()):
            click.echo(f"  {name} = {_format_value(value)}")


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@_output_option
@click.pass_context
def drift(ctx, filename, output):
    """Compare recorded state with the live resources"""
    declaration, _ = _load(ctx, filename, ())

    async def action(app: Application) -> int:
        report = await app.engine.drift()
        if output == "table":
            click.echo(render_drift(report))
        else:
            _dump(report.to_dict(), output)
        return EXIT_FAILED if report.has_drift else EXIT_OK

    _run(ctx, declaration.stack, action)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@_var_option
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="json")
@click.pass_context
def outputs(ctx, filename, var, output):
    """Show the declared outputs resolved against state"""
    declaration, variables = _load(ctx, filename, var)

    async def action(app: Application) -> int:
        _dump(await app.engine.outputs(declaration, variables), output)
        return EXIT_OK

    _run(ctx, declaration.stack, action)


@cli.group()
def state():
    """Inspect recorded state"""
    pass


@state.command("list")
@click.argument("stack")
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def state_list(ctx, stack, output):
    """List the state records of a stack"""

    async def action(app: Application) -> int:
        records = await app.engine.state()
        if output == "json":
            click.echo(
                json.dumps([r.to_dict() for _, r in records], indent=2, sort_keys=True)
            )
        elif not records:
            click.echo(f"No state recorded for stack '{stack}'")
        else:
            rows = [
                [rid, r.resource_type, r.status.value, r.provider_id or "", r.updated_at or ""]
                for rid, r in records
            ]
            click.echo(
                tabulate(rows, headers=["RESOURCE", "TYPE", "STATUS", "PROVIDER ID", "UPDATED"])
            )
        return EXIT_OK

    _run(ctx, stack, action)


@state.command("show")
@click.argument("stack")
@click.argument("resource_id")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="json")
@click.pass_context
def state_show(ctx, stack, resource_id, output):
    """Show one state record"""

    async def action(app: Application) -> int:
        records = dict(await app.engine.state())
        if resource_id not in records:
            click.echo(f"Error: no state for '{resource_id}' in stack '{stack}'", err=True)
            return EXIT_FAILED
        _dump(records[resource_id].to_dict(), output)
        return EXIT_OK

    _run(ctx, stack, action)


@cli.command()
def providers():
    """List registered providers and their resource types"""
    register_builtin_providers()
    registry = get_registry()
    rows = []
    for name in registry.list_providers():
        info = registry.get_provider_info(name) or {}
        rows.append(
            [name, info.get("version", ""), ", ".join(info.get("resource_types", [])) or "(configured)"]
        )
    click.echo(tabulate(rows, headers=["PROVIDER", "VERSION", "RESOURCE TYPES"]))


if __name__ == "__main__":
    cli()

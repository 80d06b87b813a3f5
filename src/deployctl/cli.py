"""Typer-powered command line for ``deployctl``.

Every command resolves configuration once, opens a structured operation in
``operations.jsonl`` and, for mutating commands, holds the per-domain lock
for the whole run. Failures map onto the exit codes in
:mod:`deployctl.exit_codes`.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .bootstrap.environment import EnvironmentPrepareError
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .releases import DeployError
from .releases.manager import ReleaseManager
from .releases.models import DeployOutcome
from .runner import CommandRunner, SubprocessRunner
from .state import StateRegistry, StateRegistryError
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to deployctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Zero-downtime release manager for web applications.

        Each deployment lands in a timestamped release directory, links the
        domain's shared state into it and atomically repoints ``current``.
        Older releases are pruned and any retained one can be rolled back to.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    runner: CommandRunner


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    registry = StateRegistry(config.state_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        templates=templates,
        runner=SubprocessRunner(),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if not isinstance(runtime, RuntimeContext):
        raise typer.Exit(code=int(ExitCode.VALIDATION))
    return runtime


def _manager(runtime: RuntimeContext, config: AppConfig | None = None) -> ReleaseManager:
    return ReleaseManager(
        config or runtime.config,
        runner=runtime.runner,
        registry=runtime.registry,
        templates=runtime.templates,
        locks=runtime.locks,
    )


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the deployctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"deployctl {__version__}")
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)


# ----------------------------------------------------------------------
# Error helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _environment_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=int(ExitCode.ENVIRONMENT))


def _deploy_error(op: OperationScope, exc: DeployError, prefix: str) -> NoReturn:
    message = f"{prefix}: {exc}"
    if exc.release:
        message += f" (release {exc.release})"
    _command_error(op, message, rc=int(exc.exit_code))


def _report_outcome(
    op: OperationScope,
    outcome: DeployOutcome,
    *,
    verb: str,
    json_output: bool,
) -> None:
    for step in outcome.steps:
        op.add_step(step.name, status=step.status, detail=step.detail)
    context = {"release": outcome.release.timestamp, "status": outcome.status}

    if json_output:
        console.print_json(data=outcome.to_dict())
    else:
        console.print(
            f"[green]{verb} release {outcome.release.timestamp} "
            f"for {outcome.domain}.[/green]"
        )
        console.print(f"  current -> {outcome.release.built_output}")
        console.print(f"  releases on disk: {outcome.release_count}")
        if outcome.pruned:
            console.print(f"  pruned: {', '.join(outcome.pruned)}")
        for warning in outcome.warnings:
            console.print(f"[yellow]warning:[/yellow] {warning}")

    if outcome.warnings:
        op.warning(
            f"{verb} release {outcome.release.timestamp} with warnings.",
            warnings=list(outcome.warnings),
            changed=1,
            context=context,
        )
    else:
        op.success(f"{verb} release {outcome.release.timestamp}.", changed=1, context=context)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
@app.command()
def deploy(
    ctx: typer.Context,
    branch: str | None = typer.Option(
        None,
        "--branch",
        help="Branch or tag to deploy (defaults to the configured branch).",
    ),
    migrate: bool | None = typer.Option(
        None,
        "--migrate/--no-migrate",
        help="Run database migrations (Laravel only). Defaults to run_migrations.",
    ),
    skip_prepare: bool = typer.Option(
        False,
        "--skip-prepare",
        help="Skip package, account and service preparation.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Build a new release and atomically make it current."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    if migrate is not None:
        config = replace(config, run_migrations=migrate)
    args = {
        "branch": branch or config.branch,
        "migrate": config.run_migrations,
        "skip_prepare": skip_prepare,
        "json": json_output,
    }
    with runtime.logger.operation(
        "deploy",
        args=args,
        target={"kind": "domain", "name": config.domain, "stack": config.stack},
    ) as op:
        manager = _manager(runtime, config)
        try:
            with manager.lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                outcome = manager.deploy(branch=branch, skip_prepare=skip_prepare)
        except LockTimeoutError as exc:
            _environment_error(op, str(exc))
        except EnvironmentPrepareError as exc:
            _environment_error(op, f"Environment preparation failed: {exc}")
        except StateRegistryError as exc:
            _environment_error(op, f"State registry error: {exc}")
        except DeployError as exc:
            _deploy_error(op, exc, "Deployment failed")
        except OSError as exc:
            _environment_error(op, f"Deployment failed: {exc}")
        _report_outcome(op, outcome, verb="Deployed", json_output=json_output)


@app.command()
def rollback(
    ctx: typer.Context,
    timestamp: str = typer.Argument(..., help="Release timestamp (YYYYMMDD_HHMMSS)."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Repoint ``current`` at an existing release."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "rollback",
        args={"timestamp": timestamp, "json": json_output},
        target={"kind": "domain", "name": config.domain, "stack": config.stack},
    ) as op:
        manager = _manager(runtime)
        try:
            with manager.lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                outcome = manager.rollback(timestamp)
        except LockTimeoutError as exc:
            _environment_error(op, str(exc))
        except StateRegistryError as exc:
            _environment_error(op, f"State registry error: {exc}")
        except DeployError as exc:
            _deploy_error(op, exc, "Rollback failed")
        except OSError as exc:
            _environment_error(op, f"Rollback failed: {exc}")
        _report_outcome(op, outcome, verb="Rolled back to", json_output=json_output)


@app.command()
def prune(
    ctx: typer.Context,
    keep: int | None = typer.Option(
        None,
        "--keep",
        min=1,
        help="Number of releases to keep (defaults to keep_releases).",
    ),
) -> None:
    """Delete releases outside the retention window."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    effective = keep if keep is not None else config.keep_releases
    with runtime.logger.operation(
        "prune",
        args={"keep": effective},
        target={"kind": "domain", "name": config.domain},
    ) as op:
        manager = _manager(runtime)
        try:
            with manager.lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = manager.prune(effective)
        except LockTimeoutError as exc:
            _environment_error(op, str(exc))
        except StateRegistryError as exc:
            _environment_error(op, f"State registry error: {exc}")

        if result.removed:
            console.print(f"[green]Removed {len(result.removed)} release(s):[/green]")
            for name in result.removed:
                console.print(f"  - {name}")
        else:
            console.print("Nothing to prune.")
        for warning in result.warnings:
            console.print(f"[yellow]warning:[/yellow] {warning}")

        context = {"kept": result.kept, "removed": result.removed}
        if result.warnings:
            op.warning(
                "Pruned releases with warnings.",
                warnings=list(result.warnings),
                changed=len(result.removed),
                context=context,
            )
        else:
            op.success("Pruned releases.", changed=len(result.removed), context=context)


@app.command("releases")
def list_releases(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List releases on disk, newest first."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "releases",
        args={"json": json_output},
        target={"kind": "domain", "name": config.domain},
    ) as op:
        try:
            rows = _manager(runtime).releases()
        except StateRegistryError as exc:
            _environment_error(op, f"State registry error: {exc}")

        if json_output:
            console.print_json(data={"domain": config.domain, "releases": rows})
            op.success("Reported releases as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Release", style="bold")
        table.add_column("Active")
        table.add_column("Status")
        table.add_column("Branch")
        table.add_column("Commit")

        if not rows:
            table.add_row("(none)", "", "", "", "")
        else:
            for row in rows:
                commit = str(row.get("commit") or "")
                table.add_row(
                    str(row["timestamp"]),
                    "[green]*[/green]" if row["active"] else "",
                    str(row.get("status") or ""),
                    str(row.get("branch") or ""),
                    commit[:12],
                )

        console.print(table)
        op.success("Reported releases.", changed=0)


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the active release and the state of the domain's services."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "domain", "name": config.domain},
    ) as op:
        payload = _manager(runtime).status()
        if json_output:
            console.print_json(data=payload)
            op.success("Reported status as JSON.", changed=0)
            return

        table = Table(show_header=False)
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in payload.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = "" if value is None else str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Reported status.", changed=0)


@app.command("config")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, (dict, list)):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:  # pragma: no cover - thin wrapper for console_scripts
    """Console script entry point."""
    app()


__all__ = ["app", "main"]

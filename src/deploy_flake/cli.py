"""Typer-powered command line interface for ``deploy-flake``."""
from __future__ import annotations

import asyncio
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, replace
from functools import partial
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, StageBehavior, load_config
from .destination import Destination, parse_destination
from .errors import DestinationError, SourceError
from .exit_codes import ExitCode
from .fanout import FanoutReport, deploy_all
from .logging import SILENT, LogRouter, OperationScope, StructuredLogger
from .pipeline import DeploymentPipeline, PipelineOptions
from .providers import connect
from .source import Flake

console = Console()

DESTINATIONS_ARGUMENT = typer.Argument(
    None,
    help="Hosts to deploy to: a hostname, or nixos://[user@]host[:port][/config-name].",
    show_default=False,
)

FLAKE_OPTION = typer.Option(
    Path("."),
    "--flake",
    file_okay=False,
    dir_okay=True,
    help="The flake source directory to deploy.",
)

PREFLIGHT_OPTION = typer.Option(
    None,
    "--preflight-check",
    case_sensitive=False,
    help="Run or skip the host health and system self-checks before activation.",
)

PREFLIGHT_SCRIPT_OPTION = typer.Option(
    None,
    "--preflight-script",
    help="Self-check executable, relative to the built system (default: bin/preflight-check).",
)

TEST_OPTION = typer.Option(
    None,
    "--test",
    case_sensitive=False,
    help="Run or skip the trial activation of the new system.",
)

BUILD_ARG_OPTION = typer.Option(
    None,
    "--build-arg",
    help="Extra argument passed to the remote `nix build` (repeatable).",
)

COPY_TIMEOUT_OPTION = typer.Option(
    None,
    "--copy-timeout",
    help="Timeout for one flake copy attempt, e.g. 30s, 2m or 1h30m.",
)

MAX_CONCURRENCY_OPTION = typer.Option(
    None,
    "--max-concurrency",
    min=0,
    help="Deploy to at most this many hosts at once (0 means all at once).",
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to deploy-flake's YAML config file.",
)

VERBOSE_OPTION = typer.Option(
    0,
    "--verbose",
    "-v",
    count=True,
    help="Log more detail (debug narration).",
)

QUIET_OPTION = typer.Option(
    False,
    "--quiet",
    "-q",
    help="Only log warnings and errors.",
)

SUBPROCESS_OUTPUT_OPTION = typer.Option(
    None,
    "--subprocess-output/--no-subprocess-output",
    help="Show or hide the output of local and remote commands.",
)

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help=textwrap.dedent(
        """
        Deploy a NixOS flake to one or more remote hosts.

        For every destination the flake is copied, built on the host, checked,
        test-activated and finally committed as the next boot entry.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by the command."""

    config: AppConfig
    router: LogRouter
    logger: StructuredLogger
    options: PipelineOptions


def _build_runtime(
    config: AppConfig,
    *,
    verbose: int,
    quiet: bool,
    subprocess_output: bool | None,
    build_args: Sequence[str],
) -> RuntimeContext:
    level: str | int = config.logging.level
    subprocess_level: str | int = config.logging.subprocess_level
    if verbose:
        level = "debug"
    elif quiet:
        level = "warning"
        subprocess_level = "warning"
    if subprocess_output is False:
        subprocess_level = SILENT
    elif subprocess_output is True and quiet:
        subprocess_level = "info"

    router = LogRouter.configure(
        level=level,
        subprocess_level=subprocess_level,
        console=Console(stderr=True),
    )
    options = PipelineOptions.from_config(config)
    if build_args:
        options = replace(options, build_args=(*options.build_args, *build_args))
    return RuntimeContext(
        config=config,
        router=router,
        logger=StructuredLogger(config.logs_dir),
        options=options,
    )


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]", highlight=False)
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _parse_destinations(specs: Sequence[str]) -> tuple[list[Destination], list[str]]:
    destinations: list[Destination] = []
    errors: list[str] = []
    for spec in specs:
        try:
            destinations.append(parse_destination(spec))
        except DestinationError as exc:
            errors.append(str(exc))
    return destinations, errors


def _render_summary(report: FanoutReport) -> None:
    table = Table(title="Deployment summary")
    table.add_column("Destination")
    table.add_column("Reached")
    table.add_column("Result")
    table.add_column("Duration", justify="right")
    for outcome in report.outcomes:
        if outcome.ok:
            result = "[green]deployed[/green]"
        else:
            result = f"[red]failed[/red]: {escape(str(outcome.error))}"
        table.add_row(
            str(outcome.destination),
            outcome.state.value,
            result,
            f"{outcome.duration:.1f}s",
        )
    console.print(table)


@app.command()
def deploy(
    destinations: list[str] | None = DESTINATIONS_ARGUMENT,
    flake: Path = FLAKE_OPTION,
    preflight_check: StageBehavior | None = PREFLIGHT_OPTION,
    preflight_script: str | None = PREFLIGHT_SCRIPT_OPTION,
    test: StageBehavior | None = TEST_OPTION,
    build_arg: list[str] | None = BUILD_ARG_OPTION,
    copy_timeout: str | None = COPY_TIMEOUT_OPTION,
    max_concurrency: int | None = MAX_CONCURRENCY_OPTION,
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: int = VERBOSE_OPTION,
    quiet: bool = QUIET_OPTION,
    subprocess_output: bool | None = SUBPROCESS_OUTPUT_OPTION,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the deploy-flake version and exit.",
    ),
) -> None:
    """Deploy the flake to every DESTINATION."""
    if version:
        console.print(f"deploy-flake {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    overrides: dict[str, object] = {}
    stages: dict[str, object] = {}
    if preflight_check is not None:
        stages["preflight"] = preflight_check.value
    if test is not None:
        stages["test"] = test.value
    if stages:
        overrides["stages"] = stages
    if preflight_script is not None:
        overrides["preflight_script"] = preflight_script
    if copy_timeout is not None:
        overrides["copy"] = {"timeout": copy_timeout}
    if max_concurrency is not None:
        overrides["max_concurrency"] = max_concurrency

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]", highlight=False)
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    runtime = _build_runtime(
        config,
        verbose=verbose,
        quiet=quiet,
        subprocess_output=subprocess_output,
        build_args=build_arg or [],
    )
    specs = list(destinations or [])
    with runtime.logger.operation(
        "deploy",
        args={
            "flake": flake,
            "preflight": runtime.options.preflight.value,
            "test": runtime.options.test.value,
            "build_args": list(runtime.options.build_args),
            "copy_timeout": runtime.options.copy_timeout,
            "max_concurrency": config.max_concurrency,
        },
        target={"kind": "destinations", "specs": specs},
    ) as op:
        if not specs:
            _command_error(op, "At least one destination is required.")
        parsed, errors = _parse_destinations(specs)
        if errors:
            _command_error(op, "; ".join(errors), errors=errors)

        try:
            source = Flake.from_path(flake, nix_bin=config.nix_bin)
        except SourceError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        runtime.router.narration.debug("Resolved flake %s to %s", flake, source.resolved_path)

        pipeline = DeploymentPipeline(
            flake=source,
            options=runtime.options,
            router=runtime.router,
            connect=partial(
                connect,
                ssh=config.ssh,
                router=runtime.router,
                nix_bin=config.nix_bin,
            ),
        )
        report = asyncio.run(
            deploy_all(parsed, pipeline, max_concurrency=config.max_concurrency)
        )
        _render_summary(report)

        context = {
            "outcomes": {
                str(outcome.destination): outcome.state.value for outcome in report.outcomes
            },
        }
        if not report.ok:
            failure = report.first_failure or report.failures[0]
            _command_error(
                op,
                f"Deployment failed: {failure.error}",
                rc=ExitCode.PROVIDER,
                errors=[str(outcome.error) for outcome in report.failures],
            )
        op.success(
            f"Deployed to {len(report.outcomes)} destination(s).",
            changed=len(report.outcomes),
            context=context,
        )


__all__ = ["RuntimeContext", "app", "deploy"]

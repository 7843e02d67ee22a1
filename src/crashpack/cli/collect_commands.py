"""Collection commands: ``crashpack process`` and ``crashpack core``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from crashpack.config import Settings
from crashpack.diagnostics.consent import ConsentGate
from crashpack.diagnostics.models import OutcomeStatus, ResolvedSpec
from crashpack.diagnostics.pipeline import DiagnosticsPipeline, RunResult
from crashpack.diagnostics.target import Target
from crashpack.exceptions import CrashpackError

logger = logging.getLogger(__name__)

_STATUS_STYLE = {
    OutcomeStatus.COMPLETED: "green",
    OutcomeStatus.SKIPPED: "yellow",
    OutcomeStatus.FAILED: "red",
}


def collection_options(func):
    """Options shared by every collection command."""
    func = click.option(
        "--dry-run",
        is_flag=True,
        help="Show which diagnostics would run or be skipped, then exit",
    )(func)
    func = click.option(
        "--yes",
        "-y",
        "assume_yes",
        is_flag=True,
        help="Continue without asking when diagnostics will be skipped",
    )(func)
    func = click.option(
        "--output-dir",
        "-o",
        type=click.Path(file_okay=False, path_type=Path),
        default=Path("."),
        show_default=True,
        help="Directory receiving the archive",
    )(func)
    return func


def print_plan(console: Console, resolved: Sequence[ResolvedSpec]) -> None:
    table = Table(title="Diagnostics")
    table.add_column("Diagnostic", style="cyan")
    table.add_column("Verdict")
    for spec, verdict in resolved:
        if verdict.is_runnable:
            table.add_row(spec.description, "[green]run[/green]")
        else:
            table.add_row(spec.description, f"[yellow]skip[/yellow] ({escape(verdict.reason or '')})")
    console.print(table)


def print_summary(console: Console, result: RunResult, settings: Settings) -> None:
    table = Table(title="Summary")
    table.add_column("Diagnostic", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")
    for outcome in result.outcomes:
        style = _STATUS_STYLE[outcome.status]
        detail = outcome.reason or outcome.error or ", ".join(p.name for p in outcome.artifacts)
        table.add_row(outcome.description, f"[{style}]{outcome.status.value}[/{style}]", escape(detail))
    console.print(table)
    console.print(
        f"{result.count(OutcomeStatus.COMPLETED)} recorded, "
        f"{result.count(OutcomeStatus.SKIPPED)} skipped, "
        f"{result.count(OutcomeStatus.FAILED)} failed"
    )
    console.print(f"\nDiagnostics archive: [bold]{escape(str(result.archive.path))}[/bold]\n")
    console.print(f"Please login to {settings.upload_url}")
    console.print("and upload the archive to Support.\n")


def _collect(ctx: click.Context, pipeline: DiagnosticsPipeline, target: Target, output_dir: Path, dry_run: bool):
    settings: Settings = ctx.obj["settings"]
    console = Console(highlight=False)
    if dry_run:
        _, _, _, resolved = pipeline.prepare(target, output_dir)
        print_plan(console, resolved)
        return
    result = pipeline.run(target, output_dir)
    print_summary(console, result, settings)


def _pipeline(ctx: click.Context, assume_yes: bool) -> DiagnosticsPipeline:
    return DiagnosticsPipeline(ctx.obj["settings"], consent=ConsentGate(assume_yes=assume_yes))


@click.command(name="process")
@click.argument("pid", type=int)
@collection_options
@click.pass_context
def process_command(ctx: click.Context, pid: int, output_dir: Path, assume_yes: bool, dry_run: bool):
    """Collect diagnostics for the running process PID."""
    try:
        pipeline = _pipeline(ctx, assume_yes)
        _collect(ctx, pipeline, pipeline.process_target(pid), output_dir, dry_run)
    except CrashpackError as e:
        logger.debug(f"[CLI] process {pid} aborted: {e}")
        raise click.ClickException(str(e)) from e


@click.command(name="core")
@click.argument("files", nargs=-1, required=True, type=click.Path(path_type=Path))
@collection_options
@click.pass_context
def core_command(ctx: click.Context, files: tuple, output_dir: Path, assume_yes: bool, dry_run: bool):
    """Collect diagnostics for a core file: CORE [BINARY], in either order."""
    try:
        pipeline = _pipeline(ctx, assume_yes)
        _collect(ctx, pipeline, pipeline.core_target(list(files)), output_dir, dry_run)
    except CrashpackError as e:
        logger.debug(f"[CLI] core {' '.join(map(str, files))} aborted: {e}")
        raise click.ClickException(str(e)) from e

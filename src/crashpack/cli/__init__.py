"""crashpack CLI package.

Commands:
    - crashpack process PID ...        (running process)
    - crashpack core CORE [BINARY] ... (core file of a crashed process)

Every failure (bad arguments included) exits with status 1.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional

import click

from crashpack import __version__
from crashpack.config import load_settings
from crashpack.logging_config import configure_logging

from .collect_commands import core_command, process_command


@click.group()
@click.version_option(version=__version__, prog_name="crashpack")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="YAML settings file (default: config/crashpack.yaml)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Developer log level",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], log_level: Optional[str]) -> None:
    """crashpack - collect diagnostics for support.

    Run `crashpack <command> --help` for command-specific help.
    """
    settings = load_settings(config_path, log_level=log_level.upper() if log_level else None)
    configure_logging(log_level=settings.log_level, log_dir=settings.log_dir)
    ctx.obj = {"settings": settings}


cli.add_command(process_command)
cli.add_command(core_command)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI and return its exit status."""
    args_list = argv if argv is not None else sys.argv[1:]
    try:
        return cli.main(args=args_list, prog_name="crashpack", standalone_mode=False) or 0
    except click.ClickException as e:
        e.show()
        return 1
    except click.Abort:
        click.echo("Aborted!", err=True)
        return 1


def run() -> None:
    """Console-script entry point."""
    sys.exit(main())

"""Consent gate: the operator confirms before anything is collected.

If any diagnostic will be skipped, the full list with reasons is shown and an
explicit "yes" is required. Declining (or no answer at all) aborts the run
before a staging directory exists.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

import click

from crashpack.diagnostics.models import ResolvedSpec
from crashpack.diagnostics.resolver import skipped_entries
from crashpack.diagnostics.target import RunContext
from crashpack.exceptions import ConsentDeclined


def render_skipped(context: RunContext, resolved: Sequence[ResolvedSpec]) -> str:
    lines = [
        "",
        f"  Script user:  {context.caller_user}",
        f"  Process user: {context.target_user}",
        "",
        "  The following diagnostics will be skipped:",
    ]
    for spec, verdict in skipped_entries(resolved):
        lines.append(f"    - {spec.description} ({verdict.reason})")
    lines.append("")
    return "\n".join(lines)


def _ask(prompt: str) -> bool:
    try:
        return click.confirm(prompt, default=False)
    except click.Abort:
        # EOF on stdin counts as a refusal
        return False


class ConsentGate:
    """Blocks on operator confirmation when diagnostics will be skipped."""

    def __init__(
        self,
        assume_yes: bool = False,
        ask: Optional[Callable[[str], bool]] = None,
        echo: Callable[[str], None] = click.echo,
    ):
        self.assume_yes = assume_yes
        self.ask = ask or _ask
        self.echo = echo

    def check(self, context: RunContext, resolved: Sequence[ResolvedSpec]) -> None:
        """Return if the run may proceed.

        Raises:
            ConsentDeclined: If the operator did not answer yes.
        """
        if not skipped_entries(resolved):
            return
        self.echo(render_skipped(context, resolved))
        if self.assume_yes:
            self.echo("  Continuing (--yes given)")
            return
        if not self.ask("  Continue?"):
            raise ConsentDeclined("Aborted: operator declined to continue with skipped diagnostics")

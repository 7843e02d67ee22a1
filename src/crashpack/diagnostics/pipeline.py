"""
Diagnostics run pipeline.

Wires one run end to end:

    target -> RunContext -> CapabilityProbe -> resolver -> ConsentGate
           -> StagingArea + run log -> CollectionOrchestrator -> ArchiveBuilder

Everything that can abort the run (bad target, wrong user, missing required
tool, operator decline) happens before the staging directory exists.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from crashpack.config import Settings
from crashpack.diagnostics.archive import Archive, ArchiveBuilder
from crashpack.diagnostics.capabilities import CapabilitySet
from crashpack.diagnostics.catalog import core_catalog, process_catalog, validate_catalog
from crashpack.diagnostics.command_runner import ToolRunner
from crashpack.diagnostics.consent import ConsentGate
from crashpack.diagnostics.models import ExecutionOutcome, OutcomeStatus, ResolvedSpec
from crashpack.diagnostics.orchestrator import CollectionOrchestrator
from crashpack.diagnostics.probe import CapabilityProbe, ToolLocator
from crashpack.diagnostics.resolver import resolve, skipped_required
from crashpack.diagnostics.staging import StagingArea
from crashpack.diagnostics.target import (
    PROC_ROOT,
    RunContext,
    Target,
    build_run_context,
    resolve_core_target,
    resolve_process_target,
    validate_caller,
)
from crashpack.exceptions import UsageError
from crashpack.logging_config import close_run_log, open_run_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunResult:
    """What a finished run produced."""

    context: RunContext
    archive: Archive
    outcomes: List[ExecutionOutcome]

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)


class DiagnosticsPipeline:
    """Runs the whole collection for one target."""

    def __init__(
        self,
        settings: Settings,
        runner: Optional[ToolRunner] = None,
        probe: Optional[CapabilityProbe] = None,
        consent: Optional[ConsentGate] = None,
        archive_builder: Optional[ArchiveBuilder] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        proc_root: Path = PROC_ROOT,
        echo: bool = True,
    ):
        self.settings = settings
        self.runner = runner or ToolRunner(default_timeout=settings.command_timeout_s)
        self.probe = probe
        self.consent = consent or ConsentGate()
        self.archive_builder = archive_builder or ArchiveBuilder()
        self.clock = clock
        self.sleep = sleep
        self.proc_root = proc_root
        self.echo = echo

    # ------------------------------------------------------------------ #
    # Targets
    # ------------------------------------------------------------------ #

    def process_target(self, pid: int) -> Target:
        return resolve_process_target(pid, self.proc_root)

    def core_target(self, paths: Sequence[Path]) -> Target:
        return resolve_core_target(paths, self.runner)

    # ------------------------------------------------------------------ #
    # Run
    # ------------------------------------------------------------------ #

    def prepare(
        self, target: Target, output_dir: Path
    ) -> Tuple[RunContext, CapabilityProbe, CapabilitySet, List[ResolvedSpec]]:
        """Build the context, probe and resolve. No side effects on disk.

        Returns:
            (context, probe, capabilities, resolved catalog)

        Raises:
            UsageError: On a caller problem or a missing required tool.
        """
        context = build_run_context(
            target, output_dir, clock=self.clock, sleep=self.sleep, proc_root=self.proc_root
        )
        validate_caller(context)

        probe = self.probe or CapabilityProbe(
            self.runner, ToolLocator.for_process(context.pid, self.proc_root), proc_root=self.proc_root
        )
        caps = probe.probe(context)

        catalog = process_catalog(self.settings) if context.is_live else core_catalog(self.settings)
        validate_catalog(catalog)
        resolved = resolve(catalog, caps)

        missing = skipped_required(resolved)
        if missing:
            details = "; ".join(f"{spec.description}: {verdict.reason}" for spec, verdict in missing)
            raise UsageError(f"Aborting: missing required tool ({details})")
        return context, probe, caps, resolved

    def run(self, target: Target, output_dir: Path) -> RunResult:
        """Collect diagnostics for target into an archive inside output_dir."""
        context, probe, caps, resolved = self.prepare(target, output_dir)
        self.consent.check(context, resolved)

        staging = StagingArea.create(context.staging_dir)
        run_log = open_run_log(staging.path, echo=self.echo)
        try:
            for line in self._header(context, caps):
                run_log.info(line)
            orchestrator = CollectionOrchestrator(
                context,
                self.settings,
                self.runner,
                probe,
                locator=probe.locator,
                run_log=run_log,
                sleep=self.sleep,
            )
            outcomes = orchestrator.run(resolved, staging, caps)
            for line in self._footer(staging, context):
                run_log.info(line)
        finally:
            close_run_log(run_log)

        archive = self.archive_builder.build(staging, context, outcomes, caps)
        return RunResult(context=context, archive=archive, outcomes=outcomes)

    def _header(self, context: RunContext, caps: CapabilitySet) -> List[str]:
        title = "Process Diagnostics" if context.is_live else "Core-file Diagnostics"
        lines = [title, "=" * len(title), ""]
        if context.is_live:
            lines.append(f"Process ID:      {context.pid}")
            lines.append(f"Process binary:  {context.binary}")
        else:
            lines.append(f"Core file:       {context.core}")
            lines.append(f"Binary:          {context.binary}")
        lines.extend(
            [
                f"Host:            {context.host}",
                f"Script user:     {context.caller_user}",
                f"Process user:    {context.target_user}",
                f"Script temp dir: ./{context.archive_name}",
                f"Ptrace scope:    {int(caps.ptrace_scope)}",
                f"Free disk:       {caps.free_disk_mb}MB",
                "",
            ]
        )
        return lines

    def _footer(self, staging: StagingArea, context: RunContext) -> List[str]:
        lines = ["", "DONE", "", "Files collected:"]
        lines.extend(f"  {p.name}" for p in staging.files())
        lines.extend(["", f"Archiving files to {context.archive_path.name}"])
        return lines


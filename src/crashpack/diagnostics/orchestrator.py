"""
Collection orchestrator: run every catalog row in order, record one outcome each.

Diagnostics are independent. A failure of one is recorded and the run moves
on; only the archive step can abort a run once collection has started.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from crashpack.config import Settings
from crashpack.diagnostics.capabilities import CapabilitySet
from crashpack.diagnostics.command_runner import ToolRunner
from crashpack.diagnostics.models import (
    ActionContext,
    DiagnosticSpec,
    ExecutionOutcome,
    ResolvedSpec,
)
from crashpack.diagnostics.probe import CapabilityProbe, ToolLocator
from crashpack.diagnostics.resolver import resolve_one
from crashpack.diagnostics.retry_policy import NO_RETRY
from crashpack.diagnostics.staging import StagingArea
from crashpack.diagnostics.target import RunContext
from crashpack.disk_space import ensure_disk_space_mb
from crashpack.exceptions import ExternalToolFailure, PreconditionUnmet

logger = logging.getLogger(__name__)


class CollectionOrchestrator:
    """Executes resolved diagnostics sequentially."""

    def __init__(
        self,
        context: RunContext,
        settings: Settings,
        runner: ToolRunner,
        probe: CapabilityProbe,
        locator: Optional[ToolLocator] = None,
        run_log: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.context = context
        self.settings = settings
        self.runner = runner
        self.probe = probe
        self.locator = locator
        self.run_log = run_log or logging.getLogger("crashpack.run")
        self.sleep = sleep

    def run(
        self, resolved: Sequence[ResolvedSpec], staging: StagingArea, caps: CapabilitySet
    ) -> List[ExecutionOutcome]:
        """Run every Runnable entry; return exactly one outcome per entry, in order."""
        outcomes: List[ExecutionOutcome] = []
        for spec, verdict in resolved:
            if verdict.is_runnable:
                outcome = self._execute(spec, staging, caps)
            else:
                outcome = ExecutionOutcome.skipped(spec, verdict.reason or "not runnable")
            self.run_log.info(outcome.log_line())
            outcomes.append(outcome)
        return outcomes

    def _revalidate_disk(self, spec: DiagnosticSpec, caps: CapabilitySet) -> CapabilitySet:
        """Refresh the free-space fact right before a dump and re-check its budget.

        Raises:
            PreconditionUnmet: If the diagnostic is no longer runnable.
            ResourceExhausted: If the dump would not fit.
        """
        fresh = self.probe.refresh_disk(caps, self.context)
        verdict = resolve_one(spec, fresh)
        if not verdict.is_runnable:
            raise PreconditionUnmet(verdict.reason or "no longer runnable")
        ensure_disk_space_mb(fresh.free_disk_mb, spec.resource_estimate(fresh))
        return fresh

    def _execute(self, spec: DiagnosticSpec, staging: StagingArea, caps: CapabilitySet) -> ExecutionOutcome:
        logger.debug(f"[Orchestrator] Running {spec.id}")
        try:
            if spec.resource_estimate is not None:
                caps = self._revalidate_disk(spec, caps)
            ctx = ActionContext(
                run=self.context,
                staging=staging,
                capabilities=caps,
                runner=self.runner,
                settings=self.settings,
                timeout_s=spec.timeout_s or self.settings.command_timeout_s,
                locator=self.locator,
                sleep=self.sleep,
                retry=spec.retry_policy or NO_RETRY,
            )
            artifacts = spec.action(ctx)
        except PreconditionUnmet as e:
            return ExecutionOutcome.skipped(spec, str(e))
        except ExternalToolFailure as e:
            if e.stderr:
                logger.warning(f"[Orchestrator] {spec.id} stderr:\n{e.stderr}")
            partial = [Path(p) for p in e.partial_artifacts if Path(p).exists() or Path(p).is_symlink()]
            return ExecutionOutcome.failed(spec, str(e), partial, stderr=e.stderr)
        except Exception as e:
            logger.exception(f"[Orchestrator] Unexpected error in {spec.id}")
            return ExecutionOutcome.failed(spec, f"{type(e).__name__}: {e}", [])
        return ExecutionOutcome.completed(spec, list(artifacts))

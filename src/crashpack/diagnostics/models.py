"""Shared Data Models for the Diagnostics Subsystem

Components:
- PreconditionRank / Precondition: predicates over a CapabilitySet
- DiagnosticSpec: one row of the diagnostic catalog
- FeasibilityVerdict: Runnable or Skipped(reason), produced by the resolver
- ExecutionOutcome: Completed, Skipped or Failed, produced by the orchestrator
- ActionContext: what a diagnostic action gets to work with
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple

from crashpack.diagnostics.capabilities import CapabilitySet
from crashpack.diagnostics.retry_policy import NO_RETRY, RetryPolicy

if TYPE_CHECKING:
    from crashpack.config import Settings
    from crashpack.diagnostics.command_runner import ToolRunner
    from crashpack.diagnostics.probe import ToolLocator
    from crashpack.diagnostics.staging import StagingArea
    from crashpack.diagnostics.target import RunContext

# ============================================================================
# Preconditions
# ============================================================================


class PreconditionRank(IntEnum):
    """Evaluation precedence. A lower rank reports its reason first.

    Policy is irrelevant if the tool cannot run at all, so tool absence
    outranks everything.
    """

    TOOL = 0
    TARGET = 1
    POLICY = 2
    RESOURCE = 3


@dataclass(frozen=True)
class Precondition:
    """Named predicate over a CapabilitySet with a human-readable skip reason."""

    name: str
    rank: PreconditionRank
    check: Callable[[CapabilitySet], bool]
    reason: Callable[[CapabilitySet], str]

    def evaluate(self, caps: CapabilitySet) -> Optional[str]:
        """Return None if satisfied, else the reason the diagnostic must be skipped."""
        if self.check(caps):
            return None
        return self.reason(caps)


# ============================================================================
# Catalog rows
# ============================================================================

Action = Callable[["ActionContext"], List[Path]]


@dataclass(frozen=True)
class DiagnosticSpec:
    """One discrete, independently skippable diagnostic.

    Attributes:
        id: Unique catalog id
        description: What is recorded, e.g. "GDB thread backtraces"
        action: Callable producing artifacts in the staging area
        preconditions: Predicates that must all hold
        required: A skipped required diagnostic aborts the run
        resource_estimate: Estimated output size in MB; marks a dump whose
            disk budget is re-checked right before it runs
        retry_policy: Retry parameters applied to each debugger attach
        timeout_s: Per-invocation timeout override
    """

    id: str
    description: str
    action: Action
    preconditions: Tuple[Precondition, ...] = ()
    required: bool = False
    resource_estimate: Optional[Callable[[CapabilitySet], int]] = None
    retry_policy: Optional[RetryPolicy] = None
    timeout_s: Optional[float] = None


# ============================================================================
# Verdicts and outcomes
# ============================================================================


class VerdictKind(Enum):
    RUNNABLE = "runnable"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class FeasibilityVerdict:
    kind: VerdictKind
    reason: Optional[str] = None

    @classmethod
    def runnable(cls) -> "FeasibilityVerdict":
        return cls(VerdictKind.RUNNABLE)

    @classmethod
    def skipped(cls, reason: str) -> "FeasibilityVerdict":
        return cls(VerdictKind.SKIPPED, reason)

    @property
    def is_runnable(self) -> bool:
        return self.kind is VerdictKind.RUNNABLE


ResolvedSpec = Tuple[DiagnosticSpec, FeasibilityVerdict]


class OutcomeStatus(Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionOutcome:
    """Final result of one diagnostic. Every catalog row gets exactly one."""

    spec_id: str
    description: str
    status: OutcomeStatus
    artifacts: Tuple[Path, ...] = ()
    reason: Optional[str] = None
    error: Optional[str] = None
    stderr: str = ""

    @classmethod
    def completed(cls, spec: DiagnosticSpec, artifacts: List[Path]) -> "ExecutionOutcome":
        return cls(spec.id, spec.description, OutcomeStatus.COMPLETED, tuple(artifacts))

    @classmethod
    def skipped(cls, spec: DiagnosticSpec, reason: str) -> "ExecutionOutcome":
        return cls(spec.id, spec.description, OutcomeStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(
        cls, spec: DiagnosticSpec, error: str, partial_artifacts: List[Path], stderr: str = ""
    ) -> "ExecutionOutcome":
        return cls(
            spec.id,
            spec.description,
            OutcomeStatus.FAILED,
            tuple(partial_artifacts),
            error=error,
            stderr=stderr,
        )

    def log_line(self) -> str:
        """One human-readable line for diagnostics.log."""
        if self.status is OutcomeStatus.COMPLETED:
            names = ", ".join(p.name for p in self.artifacts) or "no files"
            return f"Recorded {self.description} ({names})"
        if self.status is OutcomeStatus.SKIPPED:
            return f"Skipping {self.description} ({self.reason})"
        return f"FAILED {self.description}: {self.error}"

    def to_dict(self) -> dict:
        return {
            "id": self.spec_id,
            "description": self.description,
            "status": self.status.value,
            "artifacts": [p.name for p in self.artifacts],
            "reason": self.reason,
            "error": self.error,
        }


# ============================================================================
# Action context
# ============================================================================


@dataclass
class ActionContext:
    """Inputs of a diagnostic action. Actions write only into ``staging``."""

    run: "RunContext"
    staging: "StagingArea"
    capabilities: CapabilitySet
    runner: "ToolRunner"
    settings: "Settings"
    timeout_s: float
    locator: Optional["ToolLocator"] = None
    sleep: Callable[[float], None] = time.sleep
    # Wraps each debugger attach, not the whole action
    retry: RetryPolicy = NO_RETRY

    def file(self, name: str) -> Path:
        return self.staging.file(name)

    def tool(self, name: str) -> str:
        """Resolved path of an external tool, or its bare name."""
        found = self.locator.find(name) if self.locator is not None else None
        return found or name

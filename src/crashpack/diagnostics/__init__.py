"""
Diagnostics collection for a running process or a core file.

Exposes:
- CapabilityProbe: what the host, user and target permit.
- resolve: Runnable/Skipped verdict per catalog row.
- ConsentGate: operator confirmation when diagnostics will be skipped.
- CollectionOrchestrator: sequential execution, one outcome per row.
- ArchiveBuilder: manifest, tarball, verification.
- DiagnosticsPipeline: all of the above wired for one run.
"""

from .archive import Archive, ArchiveBuilder
from .capabilities import CapabilitySet, Fact, PtraceScope
from .command_runner import CommandResult, ToolRunner
from .consent import ConsentGate
from .models import DiagnosticSpec, ExecutionOutcome, FeasibilityVerdict, OutcomeStatus
from .orchestrator import CollectionOrchestrator
from .pipeline import DiagnosticsPipeline, RunResult
from .probe import CapabilityProbe, ToolLocator
from .resolver import resolve

__all__ = [
    "Archive",
    "ArchiveBuilder",
    "CapabilityProbe",
    "CapabilitySet",
    "CollectionOrchestrator",
    "CommandResult",
    "ConsentGate",
    "DiagnosticSpec",
    "DiagnosticsPipeline",
    "ExecutionOutcome",
    "Fact",
    "FeasibilityVerdict",
    "OutcomeStatus",
    "PtraceScope",
    "RunResult",
    "ToolLocator",
    "ToolRunner",
    "resolve",
]

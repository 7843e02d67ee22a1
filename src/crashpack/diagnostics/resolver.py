"""
Feasibility resolver: classify every catalog row as Runnable or Skipped.

Pure functions with no side effects. Preconditions are evaluated by rank
(tool, target, policy, resource) and then declaration order, and the first one
that fails supplies the skip reason. A debugger-dependent diagnostic on a host
without gdb therefore reports the missing tool even if ptrace is forbidden too.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from crashpack.diagnostics.capabilities import CapabilitySet
from crashpack.diagnostics.models import DiagnosticSpec, FeasibilityVerdict, ResolvedSpec

logger = logging.getLogger(__name__)


def first_blocking_reason(spec: DiagnosticSpec, caps: CapabilitySet) -> Optional[str]:
    """Reason of the highest-precedence failing precondition, or None."""
    # sorted() is stable, so declaration order breaks ties within a rank
    for precondition in sorted(spec.preconditions, key=lambda p: p.rank):
        reason = precondition.evaluate(caps)
        if reason is not None:
            return reason
    return None


def resolve_one(spec: DiagnosticSpec, caps: CapabilitySet) -> FeasibilityVerdict:
    reason = first_blocking_reason(spec, caps)
    if reason is None:
        return FeasibilityVerdict.runnable()
    return FeasibilityVerdict.skipped(reason)


def resolve(catalog: Sequence[DiagnosticSpec], caps: CapabilitySet) -> List[ResolvedSpec]:
    """Exactly one verdict per catalog entry, in catalog order."""
    resolved = [(spec, resolve_one(spec, caps)) for spec in catalog]
    skipped = sum(1 for _, verdict in resolved if not verdict.is_runnable)
    logger.debug(f"[Resolver] {len(resolved) - skipped} runnable, {skipped} skipped")
    return resolved


def skipped_entries(resolved: Sequence[ResolvedSpec]) -> List[ResolvedSpec]:
    return [(spec, verdict) for spec, verdict in resolved if not verdict.is_runnable]


def skipped_required(resolved: Sequence[ResolvedSpec]) -> List[ResolvedSpec]:
    """Required diagnostics that cannot run; any of these aborts the run."""
    return [(spec, verdict) for spec, verdict in skipped_entries(resolved) if spec.required]

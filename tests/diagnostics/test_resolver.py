"""Tests for the feasibility resolver.

Tests cover:
- One verdict per catalog entry, in catalog order
- Tool absence outranks every policy reason
- Yama ptrace_scope rules (0, 1-2, 3)
- SELinux deny_ptrace
- Disk budget for core and heap dumps
- Required diagnostics that cannot run
"""

import itertools

import pytest

from crashpack.diagnostics.catalog import core_catalog, process_catalog, validate_catalog
from crashpack.diagnostics.capabilities import PtraceScope
from crashpack.diagnostics.models import DiagnosticSpec, Precondition, PreconditionRank
from crashpack.diagnostics.preconditions import ptrace_permitted_by_yama
from crashpack.diagnostics.resolver import first_blocking_reason, resolve, skipped_required

DEBUGGER_IDS = {"thread-backtraces", "core-dump", "core-backtrace", "shared-libraries"}
PTRACE_IDS = {"thread-backtraces", "core-dump", "strace"}


def verdicts(resolved):
    return {spec.id: verdict for spec, verdict in resolved}


class TestResolveCoverage:
    """Every catalog entry gets exactly one verdict."""

    @pytest.mark.parametrize(
        "debugger,scope,enforcing,deny,root",
        list(itertools.product([True, False], [0, 1, 2, 3], [True, False], [True, False], [True, False])),
    )
    def test_one_verdict_per_entry(self, settings, make_caps, debugger, scope, enforcing, deny, root) -> None:
        caps = make_caps(
            debugger_available=debugger,
            ptrace_scope=scope,
            selinux_enforcing=enforcing,
            selinux_deny_ptrace=deny,
            caller_is_root=root,
        )
        for catalog in (process_catalog(settings), core_catalog(settings)):
            resolved = resolve(catalog, caps)

            assert [spec.id for spec, _ in resolved] == [spec.id for spec in catalog]
            for _, verdict in resolved:
                assert verdict.is_runnable or verdict.reason

    def test_catalog_ids_unique(self, settings) -> None:
        validate_catalog(process_catalog(settings))
        validate_catalog(core_catalog(settings))

    def test_duplicate_ids_rejected(self) -> None:
        spec = DiagnosticSpec("uname", "uname", lambda ctx: [])
        with pytest.raises(ValueError, match="Duplicate"):
            validate_catalog([spec, spec])


class TestToolAbsence:
    @pytest.mark.parametrize("scope", [0, 1, 2, 3])
    @pytest.mark.parametrize("selinux", [True, False])
    def test_missing_debugger_always_reported_as_not_found(self, settings, make_caps, scope, selinux) -> None:
        caps = make_caps(
            debugger_available=False,
            ptrace_scope=scope,
            selinux_enforcing=selinux,
            selinux_deny_ptrace=selinux,
        )
        for catalog in (process_catalog(settings), core_catalog(settings)):
            result = verdicts(resolve(catalog, caps))
            for spec_id in DEBUGGER_IDS & set(result):
                assert not result[spec_id].is_runnable
                assert "not found" in result[spec_id].reason
                assert "gdb" in result[spec_id].reason

    def test_rank_beats_declaration_order(self, make_caps) -> None:
        """A policy precondition declared first still loses to a missing tool."""
        policy = Precondition("policy", PreconditionRank.POLICY, lambda c: False, lambda c: "policy reason")
        tool = Precondition("tool", PreconditionRank.TOOL, lambda c: False, lambda c: "tool reason")
        spec = DiagnosticSpec("x", "x", lambda ctx: [], preconditions=(policy, tool))

        assert first_blocking_reason(spec, make_caps()) == "tool reason"

    def test_declaration_order_within_rank(self, make_caps) -> None:
        first = Precondition("a", PreconditionRank.TARGET, lambda c: False, lambda c: "first")
        second = Precondition("b", PreconditionRank.TARGET, lambda c: False, lambda c: "second")
        spec = DiagnosticSpec("x", "x", lambda ctx: [], preconditions=(first, second))

        assert first_blocking_reason(spec, make_caps()) == "first"


class TestPtracePolicy:
    @pytest.mark.parametrize("root", [True, False])
    @pytest.mark.parametrize("same_user", [True, False])
    def test_scope_3_blocks_everyone(self, settings, make_caps, root, same_user) -> None:
        caps = make_caps(ptrace_scope=3, caller_is_root=root, caller_matches_target_user=same_user)
        result = verdicts(resolve(process_catalog(settings), caps))

        for spec_id in PTRACE_IDS:
            assert not result[spec_id].is_runnable
            assert "prohibited by kernel policy" in result[spec_id].reason

    def test_selinux_blocks_at_scope_0(self, settings, make_caps) -> None:
        caps = make_caps(ptrace_scope=0, selinux_enforcing=True, selinux_deny_ptrace=True, caller_is_root=True)
        result = verdicts(resolve(process_catalog(settings), caps))

        for spec_id in PTRACE_IDS:
            assert not result[spec_id].is_runnable
            assert "prohibited by SELinux policy" in result[spec_id].reason

    def test_selinux_permissive_does_not_block(self, settings, make_caps) -> None:
        caps = make_caps(selinux_enforcing=False, selinux_deny_ptrace=True)
        result = verdicts(resolve(process_catalog(settings), caps))

        assert all(result[spec_id].is_runnable for spec_id in PTRACE_IDS)

    @pytest.mark.parametrize(
        "scope,root,same_user,expected",
        [
            (PtraceScope.CLASSIC, False, True, True),
            (PtraceScope.RESTRICTED, False, True, False),
            (PtraceScope.RESTRICTED, True, False, True),
            (PtraceScope.RESTRICTED, True, True, False),
            (PtraceScope.ADMIN_ONLY, False, True, False),
            (PtraceScope.ADMIN_ONLY, True, False, True),
            (PtraceScope.ADMIN_ONLY, True, True, False),
            (PtraceScope.NO_ATTACH, True, True, False),
        ],
    )
    def test_yama_rule(self, make_caps, scope, root, same_user, expected) -> None:
        caps = make_caps(ptrace_scope=scope, caller_is_root=root, caller_matches_target_user=same_user)
        assert ptrace_permitted_by_yama(caps) is expected

    def test_restricted_scope_suggests_root(self, settings, make_caps) -> None:
        caps = make_caps(ptrace_scope=1, caller_is_root=False)
        result = verdicts(resolve(process_catalog(settings), caps))

        assert "run as root" in result["thread-backtraces"].reason

    @pytest.mark.parametrize("scope", [1, 2])
    def test_root_diagnosing_root_owned_target_blocked(self, settings, make_caps, scope) -> None:
        caps = make_caps(ptrace_scope=scope, caller_is_root=True, caller_matches_target_user=True)
        result = verdicts(resolve(process_catalog(settings), caps))

        for spec_id in PTRACE_IDS:
            assert not result[spec_id].is_runnable
            assert result[spec_id].reason == f"prohibited by kernel policy (Yama ptrace_scope {scope})"

    def test_root_diagnosing_other_user_permitted(self, settings, make_caps) -> None:
        caps = make_caps(ptrace_scope=1, caller_is_root=True, caller_matches_target_user=False)
        result = verdicts(resolve(process_catalog(settings), caps))

        assert all(result[spec_id].is_runnable for spec_id in PTRACE_IDS)

    def test_non_ptrace_diagnostics_unaffected(self, settings, make_caps) -> None:
        caps = make_caps(ptrace_scope=3)
        result = verdicts(resolve(process_catalog(settings), caps))

        for spec_id in ("os-release", "uname", "top", "df", "free", "vmstat", "binary"):
            assert result[spec_id].is_runnable


class TestDiskBudget:
    def test_core_dump_skipped_when_disk_too_small(self, settings, make_caps) -> None:
        caps = make_caps(free_disk_mb=100, estimated_dump_mb=500)
        result = verdicts(resolve(process_catalog(settings), caps))

        assert "insufficient disk space" in result["core-dump"].reason
        assert "500MB" in result["core-dump"].reason
        # The core-file rows depend on the dump
        assert not result["core-backtrace"].is_runnable

    def test_heap_dump_uses_heap_estimate(self, settings, make_caps) -> None:
        caps = make_caps(
            target_has_jvm=True, free_disk_mb=1000, estimated_dump_mb=5000, estimated_heap_dump_mb=200
        )
        result = verdicts(resolve(process_catalog(settings), caps))

        assert result["jvm-heapdump"].is_runnable
        assert not result["core-dump"].is_runnable

    def test_policy_reason_before_disk_reason(self, settings, make_caps) -> None:
        caps = make_caps(ptrace_scope=3, free_disk_mb=0, estimated_dump_mb=500)
        result = verdicts(resolve(process_catalog(settings), caps))

        assert "prohibited by kernel policy" in result["core-dump"].reason


class TestRequired:
    def test_nothing_required_by_default(self, settings, make_caps) -> None:
        resolved = resolve(process_catalog(settings), make_caps(debugger_available=False))
        assert skipped_required(resolved) == []

    def test_require_debugger(self, settings, make_caps) -> None:
        strict = settings.model_copy(update={"require_debugger": True})
        resolved = resolve(process_catalog(strict), make_caps(debugger_available=False))

        assert {spec.id for spec, _ in skipped_required(resolved)} == {"thread-backtraces", "core-dump"}

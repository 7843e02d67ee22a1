"""Tests for the capability probe and the capability snapshot."""

import os
from pathlib import Path

import pytest

from crashpack.diagnostics.capabilities import CapabilitySet, Fact, PtraceScope
from crashpack.diagnostics.probe import (
    CapabilityProbe,
    ToolLocator,
    parse_heap_used_mb,
    parse_jvm_pids,
    read_process_environ,
)

from tests.conftest import FakeRunner


class FixedLocator(ToolLocator):
    """Locator that knows exactly the given tools."""

    def __init__(self, tools):
        super().__init__(None)
        self.tools = set(tools)

    def find(self, name):
        return f"/usr/bin/{name}" if name in self.tools else None


@pytest.fixture
def sysfs(tmp_path: Path):
    root = tmp_path / "sys"
    root.mkdir()
    return root


def make_probe(runner, sysfs: Path, tools=("gdb",), scope=None, enforce=None, deny=None) -> CapabilityProbe:
    scope_path = sysfs / "ptrace_scope"
    enforce_path = sysfs / "enforce"
    deny_path = sysfs / "deny_ptrace"
    if scope is not None:
        scope_path.write_text(scope)
    if enforce is not None:
        enforce_path.write_text(enforce)
    if deny is not None:
        deny_path.write_text(deny)
    return CapabilityProbe(
        runner,
        locator=FixedLocator(tools),
        ptrace_scope_path=scope_path,
        selinux_enforce_path=enforce_path,
        selinux_deny_ptrace_path=deny_path,
    )


class TestCapabilitySet:
    def test_is_immutable(self) -> None:
        caps = CapabilitySet()
        with pytest.raises(Exception):
            caps.free_disk_mb = 5  # type: ignore[misc]

    def test_with_free_disk_returns_new_set(self) -> None:
        caps = CapabilitySet(free_disk_mb=10)
        fresh = caps.with_free_disk(20)

        assert caps.free_disk_mb == 10
        assert fresh.free_disk_mb == 20

    def test_int_scope_normalized(self) -> None:
        assert CapabilitySet(ptrace_scope=2).ptrace_scope is PtraceScope.ADMIN_ONLY

    def test_as_dict_uses_display_names(self) -> None:
        values = CapabilitySet(ptrace_scope=1, free_disk_mb=7).as_dict()

        assert values["PtraceScope"] == 1
        assert values["FreeDiskMB"] == 7
        assert set(values) == {fact.display_name for fact in Fact}

    def test_heap_estimate_falls_back_to_dump_estimate(self) -> None:
        assert CapabilitySet(estimated_dump_mb=300).heap_dump_estimate_mb == 300
        assert CapabilitySet(estimated_dump_mb=300, estimated_heap_dump_mb=40).heap_dump_estimate_mb == 40


class TestPtraceScopeParse:
    @pytest.mark.parametrize("raw,expected", [("0\n", 0), ("1", 1), ("2\n", 2), ("3", 3)])
    def test_valid(self, raw, expected) -> None:
        assert PtraceScope.parse(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "garbage", "7"])
    def test_invalid_defaults_to_classic(self, raw) -> None:
        assert PtraceScope.parse(raw) is PtraceScope.CLASSIC


class TestParsers:
    def test_heap_used(self) -> None:
        heap_info = (
            " PSYoungGen      total 76288K, used 10240K [0x...)\n"
            " ParOldGen       total 175104K, used 20480K [0x...)\n"
            " Metaspace       used 9000K, capacity 9200K\n"
        )
        assert parse_heap_used_mb(heap_info) == 30

    def test_heap_used_absent(self) -> None:
        assert parse_heap_used_mb("no figures here") is None

    def test_jvm_pids(self) -> None:
        listing = "1234 com.example.Main\n5678 jdk.jcmd/sun.tools.jcmd.JCmd -l\n\n"
        assert parse_jvm_pids(listing) == {1234, 5678}

    def test_read_process_environ(self, tmp_path: Path) -> None:
        proc = tmp_path / "proc"
        (proc / "42").mkdir(parents=True)
        (proc / "42" / "environ").write_bytes(b"JAVA_HOME=/opt/jdk\0PATH=/bin\0BROKEN\0")

        assert read_process_environ(42, proc) == {"JAVA_HOME": "/opt/jdk", "PATH": "/bin"}
        assert read_process_environ(43, proc) == {}


class TestToolLocator:
    def test_prefers_java_home(self, tmp_path: Path) -> None:
        jcmd = tmp_path / "bin" / "jcmd"
        jcmd.parent.mkdir()
        jcmd.write_text("#!/bin/sh\n")
        jcmd.chmod(0o755)

        assert ToolLocator(str(tmp_path)).find("jcmd") == str(jcmd)

    def test_java_home_only_for_jvm_tools(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setattr("crashpack.diagnostics.probe.shutil.which", lambda name: None)
        (tmp_path / "bin").mkdir()
        gdb = tmp_path / "bin" / "gdb"
        gdb.write_text("")
        gdb.chmod(0o755)

        assert ToolLocator(str(tmp_path)).find("gdb") is None


class TestCapabilityProbe:
    def test_policy_files(self, sysfs: Path) -> None:
        probe = make_probe(FakeRunner(), sysfs, scope="2\n", enforce="1", deny="1 1")

        assert probe.ptrace_scope() is PtraceScope.ADMIN_ONLY
        assert probe.selinux_enforcing() is True
        assert probe.selinux_deny_ptrace() is True

    def test_missing_policy_files_degrade_to_defaults(self, sysfs: Path) -> None:
        probe = make_probe(FakeRunner(), sysfs)

        assert probe.ptrace_scope() is PtraceScope.CLASSIC
        assert probe.selinux_enforcing() is False
        assert probe.selinux_deny_ptrace() is False

    def test_deny_ptrace_from_getsebool(self, sysfs: Path) -> None:
        runner = FakeRunner({"getsebool": lambda cmd: (0, "deny_ptrace --> on\n", "")})
        probe = make_probe(runner, sysfs, tools=("getsebool",))

        assert probe.selinux_deny_ptrace() is True
        assert runner.tools_called() == ["getsebool"]

    def test_process_size(self, tmp_path: Path, sysfs: Path) -> None:
        proc = tmp_path / "proc"
        (proc / "42").mkdir(parents=True)
        (proc / "42" / "status").write_text("Name:\tjava\nVmSize:\t  2097152 kB\nVmRSS:\t 1024 kB\n")
        probe = make_probe(FakeRunner(), sysfs)
        probe.proc_root = proc

        assert probe.process_size_mb(42) == 2048
        assert probe.process_size_mb(43) == 0

    def test_probe_live_process(self, sysfs: Path, live_context) -> None:
        runner = FakeRunner({"jcmd": lambda cmd: (0, f"{os.getpid()} some.Main\n", "")})
        probe = make_probe(runner, sysfs, tools=("gdb", "jcmd", "top", "free", "vmstat"), scope="1")

        caps = probe.probe(live_context)

        assert caps.debugger_available is True
        assert caps.trace_tool_available is False
        assert caps.jvm_tools_available is True
        assert caps.procps_available is True
        assert caps.ptrace_scope is PtraceScope.RESTRICTED
        assert caps.caller_matches_target_user is True
        assert caps.caller_is_root is (os.geteuid() == 0)
        assert caps.target_has_jvm is True
        assert caps.target_executable_readable is True
        assert caps.free_disk_mb > 0
        assert caps.estimated_dump_mb > 0

    def test_probe_jvm_absent_when_jcmd_fails(self, sysfs: Path, live_context) -> None:
        runner = FakeRunner({"jcmd": lambda cmd: (1, "", "Could not attach")})
        probe = make_probe(runner, sysfs, tools=("jcmd",))

        caps = probe.probe(live_context)

        assert caps.target_has_jvm is False
        assert caps.estimated_heap_dump_mb is None

    def test_refresh_disk_returns_new_snapshot(self, sysfs: Path, live_context) -> None:
        probe = make_probe(FakeRunner(), sysfs)
        caps = CapabilitySet(free_disk_mb=-5)

        fresh = probe.refresh_disk(caps, live_context)

        assert caps.free_disk_mb == -5
        assert fresh.free_disk_mb >= 0

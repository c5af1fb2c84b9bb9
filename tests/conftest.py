"""
Test fixtures and utilities for the remediation tool test suite.

Provides an in-memory simulated host implementing every collaborator
interface, a compliance scanner and remediation content that act on it,
and common fixtures used across multiple test modules.
"""

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from remediation_tool.core.errors import ApplyError, NotFoundError, ScannerError
from remediation_tool.core.models import (
    PlanSpec, RuleResult, RuleSeverity, RuleStatus, ScanResult, Target, TaskSpec, utcnow
)
from remediation_tool.core.orchestrator import RemediationTool
from remediation_tool.database.manager import RunLedger
from remediation_tool.platforms.base import BasePlatform, ComplianceScanner, RemediationContent
from remediation_tool.rules.loader import PlanLoader
from remediation_tool.tasks.base import TaskContext
from remediation_tool.tasks.factory import TaskFactory

# Ten-rule profile. Remediation content closes the first eight; the last two
# stay failing because nothing in the plan addresses them.
PROFILE_RULES: List[Tuple[str, RuleSeverity]] = [
    ("xccdf_rule_sshd_disable_root_login", RuleSeverity.HIGH),
    ("xccdf_rule_sshd_disable_empty_passwords", RuleSeverity.HIGH),
    ("xccdf_rule_sshd_set_idle_timeout", RuleSeverity.MEDIUM),
    ("xccdf_rule_accounts_password_minlen", RuleSeverity.MEDIUM),
    ("xccdf_rule_accounts_password_maxage", RuleSeverity.MEDIUM),
    ("xccdf_rule_auditd_enabled", RuleSeverity.HIGH),
    ("xccdf_rule_kernel_randomize_va_space", RuleSeverity.MEDIUM),
    ("xccdf_rule_sysctl_ipv4_forwarding", RuleSeverity.MEDIUM),
    ("xccdf_rule_partition_for_tmp", RuleSeverity.LOW),
    ("xccdf_rule_grub2_password", RuleSeverity.HIGH),
]
REMEDIATED_RULES = [rule_id for rule_id, _ in PROFILE_RULES[:8]]
PROFILE_ID = "xccdf_org.ssgproject.content_profile_cis"


class SimulatedHost(BasePlatform):
    """
    In-memory host.

    ``failures`` maps an operation name to the exception it raises;
    ``hang`` maps an operation name to an event the call blocks on.
    """

    def __init__(self, target: Target):
        super().__init__(target)
        self.packages = set()
        self.running = set()
        self.enabled = set()
        self.runtime_rules = set()
        self.permanent_rules = set()
        self.files: Dict[str, Tuple[int, str]] = {"/etc/ssh/sshd_config": (0o644, "file")}
        self.settings: Dict[str, bool] = {rule_id: False for rule_id, _ in PROFILE_RULES}
        self.failures: Dict[str, Exception] = {}
        self.hang: Dict[str, threading.Event] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self._lock = threading.Lock()

    def _enter(self, op: str, *args) -> None:
        with self._lock:
            self.calls.append((op,) + args)
        if op in self.hang:
            self.hang[op].wait(10)
        if op in self.failures:
            raise self.failures[op]

    def mutating_calls(self) -> List[Tuple[Any, ...]]:
        return [c for c in self.calls if c[0].startswith("ensure_")]

    def is_installed(self, name):
        self._enter("is_installed", name)
        return name in self.packages

    def ensure_installed(self, name):
        self._enter("ensure_installed", name)
        if name in self.packages:
            return False
        self.packages.add(name)
        return True

    def is_running(self, name):
        self._enter("is_running", name)
        return name in self.running

    def ensure_running(self, name):
        self._enter("ensure_running", name)
        if name in self.running:
            return False
        if name not in self.packages:
            raise ApplyError(f"Unit {name}.service not found")
        self.running.add(name)
        return True

    def is_enabled(self, name):
        self._enter("is_enabled", name)
        return name in self.enabled

    def ensure_enabled(self, name):
        self._enter("ensure_enabled", name)
        if name in self.enabled:
            return False
        self.enabled.add(name)
        return True

    def rule_flags(self, service, persistent=True):
        self._enter("rule_flags", service, persistent)
        return service in self.runtime_rules, persistent and service in self.permanent_rules

    def ensure_rule(self, service, enabled, persistent=True):
        self._enter("ensure_rule", service, enabled, persistent)
        if enabled:
            changed = service not in self.runtime_rules or (persistent and service not in self.permanent_rules)
            self.runtime_rules.add(service)
            if persistent:
                self.permanent_rules.add(service)
        else:
            changed = service in self.runtime_rules or service in self.permanent_rules
            self.runtime_rules.discard(service)
            self.permanent_rules.discard(service)
        return changed

    def get_mode(self, path, kind="file"):
        self._enter("get_mode", path, kind)
        if path not in self.files:
            raise NotFoundError(f"{path} does not exist")
        mode, actual = self.files[path]
        if actual != kind:
            raise ApplyError(f"{path} is a {actual}, not a {kind}")
        return mode

    def ensure_mode(self, path, mode, kind="file"):
        self._enter("ensure_mode", path, mode, kind)
        if path not in self.files:
            raise NotFoundError(f"{path} does not exist")
        current, actual = self.files[path]
        if current == mode:
            return False
        self.files[path] = (mode, actual)
        return True


class SimulatedPlatforms:
    """Stands in for PlatformFactory; one SimulatedHost per target id."""

    def __init__(self):
        self.hosts: Dict[str, SimulatedHost] = {}
        self.closed = 0
        self._lock = threading.Lock()

    def get_platform(self, target: Target) -> SimulatedHost:
        with self._lock:
            if target.id not in self.hosts:
                self.hosts[target.id] = SimulatedHost(target)
            return self.hosts[target.id]

    def host(self, target_id: str) -> SimulatedHost:
        return self.get_platform(Target(id=target_id, address=f"{target_id}.example.test"))

    def close_all(self) -> None:
        self.closed += 1


class FakeScanner(ComplianceScanner):
    """Derives rule results from the simulated host's settings."""

    def __init__(self, platforms: SimulatedPlatforms):
        self.platforms = platforms
        self.fail_for = set()
        self.hang_for: Dict[str, threading.Event] = {}
        self.scans: List[str] = []

    def scan(self, target, profile_id, content_source, output_path, report_path=None):
        self.scans.append(target.id)
        if target.id in self.hang_for:
            self.hang_for[target.id].wait(10)
        if target.id in self.fail_for:
            raise ScannerError("oscap exited abnormally", exit_code=1, stderr="OpenSCAP Error: no such content")

        host = self.platforms.get_platform(target)
        Path(output_path).write_text("<Benchmark/>")
        if report_path is not None:
            Path(report_path).write_text("<html></html>")
        return ScanResult(
            target_id=target.id,
            profile_id=profile_id,
            timestamp=utcnow(),
            rule_results=tuple(
                RuleResult(rule_id=rule_id,
                           status=RuleStatus.PASS if host.settings[rule_id] else RuleStatus.FAIL,
                           severity=severity)
                for rule_id, severity in PROFILE_RULES
            ),
            report_path=str(report_path) if report_path else None
        )


class FakeRemediation(RemediationContent):
    """
    Hardening role closing eight of the ten profile rules.

    As a side effect it removes the http firewall rule, which the Restore
    stage has to put back.
    """

    def __init__(self, platforms: SimulatedPlatforms, with_verifier: bool = False):
        self.platforms = platforms
        self.with_verifier = with_verifier
        self.applied: List[str] = []
        self.fail_for = set()

    def apply(self, target, role, variables):
        self.applied.append(target.id)
        if target.id in self.fail_for:
            raise ApplyError(f"role {role} failed", cause="fatal: [host]: UNREACHABLE!")
        host = self.platforms.get_platform(target)
        changed = False
        for rule_id in REMEDIATED_RULES:
            changed = changed or not host.settings[rule_id]
            host.settings[rule_id] = True
        host.runtime_rules.discard("http")
        host.permanent_rules.discard("http")
        return changed

    def verify(self, target, role, variables):
        if not self.with_verifier:
            return None
        host = self.platforms.get_platform(target)
        return all(host.settings[rule_id] for rule_id in REMEDIATED_RULES)


def make_target(target_id: str, *tags: str) -> Target:
    return Target(id=target_id, address=f"{target_id}.example.test", tags=tags)


def web_plan_data(name: str = "web-hardening") -> Dict[str, Any]:
    """Provision, Baseline-Audit, Remediate, Restore, Verify-Audit for nginx."""
    scan_params = {"profile_id": PROFILE_ID, "content_source": "/usr/share/xml/scap/ssg-ds.xml"}
    return {
        "name": name,
        "evidence": {"before": "baseline-scan", "after": "verify-scan"},
        "stages": [
            {"name": "Provision", "policy": "abort-pipeline", "tasks": [
                {"id": "install-nginx", "kind": "package", "params": {"name": "nginx"}},
                {"id": "start-nginx", "kind": "service", "params": {"name": "nginx"}},
                {"id": "allow-http", "kind": "firewall-rule", "params": {"service": "http"}},
            ]},
            {"name": "Baseline-Audit", "policy": "continue-and-record", "tasks": [
                {"id": "baseline-scan", "kind": "external-scan", "params": scan_params},
            ]},
            {"name": "Remediate", "policy": "abort-pipeline", "tasks": [
                {"id": "cis-hardening", "kind": "composite-role", "params": {"role": "cis.yml"}},
                {"id": "sshd-config-mode", "kind": "file-attr",
                 "params": {"path": "/etc/ssh/sshd_config", "mode": "0600"}},
            ]},
            {"name": "Restore", "policy": "abort-pipeline", "tasks": [
                {"id": "restore-http", "kind": "firewall-rule", "params": {"service": "http"}},
                {"id": "restore-nginx", "kind": "service", "params": {"name": "nginx"}},
            ]},
            {"name": "Verify-Audit", "policy": "continue-and-record", "tasks": [
                {"id": "verify-scan", "kind": "external-scan", "params": scan_params},
            ]},
        ],
    }


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep tests away from the user's configuration and data directories."""
    monkeypatch.delenv("REMEDIATION_TOOL_CONFIG", raising=False)
    monkeypatch.delenv("REMEDIATION_TOOL_INVENTORY", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def ledger(tmp_path):
    """Create a temporary run ledger."""
    db = RunLedger(str(tmp_path / "data" / "ledger.db"))
    db.initialize()
    return db


@pytest.fixture
def platforms():
    return SimulatedPlatforms()


@pytest.fixture
def scanner(platforms):
    return FakeScanner(platforms)


@pytest.fixture
def remediation(platforms):
    return FakeRemediation(platforms)


@pytest.fixture
def evidence_dir(tmp_path):
    path = tmp_path / "evidence" / "run-1"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def task_context(platforms, scanner, remediation, evidence_dir):
    return TaskContext(platforms=platforms, scanner=scanner,
                       remediation=remediation, evidence_dir=evidence_dir)


@pytest.fixture
def task_factory(task_context):
    return TaskFactory(task_context)


@pytest.fixture
def web_plan_spec() -> PlanSpec:
    return PlanLoader().parse(web_plan_data())


@pytest.fixture
def fleet() -> List[Target]:
    return [make_target("web-01", "web", "prod"),
            make_target("web-02", "web", "prod"),
            make_target("db-01", "db", "prod")]


@pytest.fixture
def tool(tmp_path, ledger, platforms, scanner, remediation, fleet):
    """Remediation tool wired to the simulated fleet."""
    tool = RemediationTool(
        overrides={
            "storage": {"evidence_dir": str(tmp_path / "runs")},
            "executor": {"task_timeout": 5, "max_workers": 4},
        },
        ledger=ledger,
        platforms=platforms,
        scanner=scanner,
        remediation=remediation,
    )
    for target in fleet:
        tool.registry.register(target)
    return tool


def task_spec(task_id: str, kind: str, /, **params) -> TaskSpec:
    return TaskSpec(id=task_id, kind=kind, params=params)


def record_map(records) -> Dict[Tuple[str, str], Any]:
    return {(r.target_id, r.task_id): r for r in records}


def outcome_of(records, target_id: str, task_id: str) -> Optional[str]:
    record = record_map(records).get((target_id, task_id))
    return record.outcome.value if record else None

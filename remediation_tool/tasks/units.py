"""
Concrete task units.

One class per task kind. Host-level kinds delegate to the target's platform
handler; external-scan delegates to the compliance scanner and
composite-role to the remediation content.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Set

from ..core.errors import PlanValidationError
from ..core.models import Outcome, RuleStatus, ScanResult, TaskKind, Target
from .base import TaskUnit

logger = logging.getLogger(__name__)


def _as_bool(value, name: str, task_id: str) -> bool:
    if isinstance(value, bool):
        return value
    raise PlanValidationError(f"Task {task_id}: parameter '{name}' must be true or false")


class PackageTask(TaskUnit):
    """Ensure a package is installed."""

    kind = TaskKind.PACKAGE

    def validate(self) -> None:
        self.name = str(self.param("name"))

    def check(self, target: Target) -> bool:
        return self.platform(target).is_installed(self.name)

    def apply(self, target: Target) -> Outcome:
        changed = self.platform(target).ensure_installed(self.name)
        return Outcome(changed=changed,
                       detail=f"installed {self.name}" if changed else f"{self.name} already installed")


class ServiceTask(TaskUnit):
    """Ensure a service is running and, optionally, enabled at boot."""

    kind = TaskKind.SERVICE

    def validate(self) -> None:
        self.name = str(self.param("name"))
        self.enabled = _as_bool(self.param("enabled", True), "enabled", self.id)

    def check(self, target: Target) -> bool:
        platform = self.platform(target)
        if not platform.is_running(self.name):
            return False
        return not self.enabled or platform.is_enabled(self.name)

    def apply(self, target: Target) -> Outcome:
        platform = self.platform(target)
        changed = platform.ensure_running(self.name)
        if self.enabled:
            changed = platform.ensure_enabled(self.name) or changed
        return Outcome(changed=changed,
                       detail=f"{self.name} running" + (" and enabled" if self.enabled else ""))


class FirewallRuleTask(TaskUnit):
    """Ensure traffic for a service is allowed (or blocked) by the host firewall."""

    kind = TaskKind.FIREWALL_RULE

    def validate(self) -> None:
        self.service = str(self.param("service"))
        self.enabled = _as_bool(self.param("enabled", True), "enabled", self.id)
        self.persistent = _as_bool(self.param("persistent", True), "persistent", self.id)

    def check(self, target: Target) -> bool:
        runtime, permanent = self.platform(target).rule_flags(self.service, self.persistent)
        if self.enabled:
            return runtime and (permanent or not self.persistent)
        return not runtime and not permanent

    def apply(self, target: Target) -> Outcome:
        changed = self.platform(target).ensure_rule(self.service, self.enabled, self.persistent)
        state = "allowed" if self.enabled else "blocked"
        return Outcome(changed=changed, detail=f"firewall service {self.service} {state}")


class FileAttrTask(TaskUnit):
    """Ensure a file or directory carries the given permission bits."""

    kind = TaskKind.FILE_ATTR

    def validate(self) -> None:
        self.path = str(self.param("path"))
        self.file_kind = str(self.param("kind", "file"))
        if self.file_kind not in ("file", "directory"):
            raise PlanValidationError(f"Task {self.id}: kind must be 'file' or 'directory'")

        raw_mode = self.param("mode")
        try:
            # quoted YAML values are octal strings; bare 0755 arrives as an int already
            self.mode = int(raw_mode, 8) if isinstance(raw_mode, str) else int(raw_mode)
        except (TypeError, ValueError):
            raise PlanValidationError(f"Task {self.id}: invalid mode {raw_mode!r}") from None
        if not 0 <= self.mode <= 0o7777:
            raise PlanValidationError(f"Task {self.id}: mode {raw_mode!r} out of range")

    def check(self, target: Target) -> bool:
        return self.platform(target).get_mode(self.path, self.file_kind) == self.mode

    def apply(self, target: Target) -> Outcome:
        changed = self.platform(target).ensure_mode(self.path, self.mode, self.file_kind)
        return Outcome(changed=changed, detail=f"{self.path} mode {self.mode:04o}")

    def describe(self) -> str:
        return f"{self.kind.value}(path={self.path}, mode={self.mode:04o}, kind={self.file_kind})"


class ExternalScanTask(TaskUnit):
    """
    Run the external compliance scanner and return its ScanResult.

    A scan has no desired state on the target; within one run a unit counts
    as satisfied for a target once it has produced a result for it.
    """

    kind = TaskKind.EXTERNAL_SCAN

    def validate(self) -> None:
        self.profile_id = str(self.param("profile_id"))
        self.content_source = str(self.param("content_source"))
        self.report = _as_bool(self.param("report", True), "report", self.id)
        if self.context.scanner is None:
            raise PlanValidationError(f"Task {self.id}: no compliance scanner configured")
        if self.context.evidence_dir is None:
            raise PlanValidationError(f"Task {self.id}: no evidence directory configured")
        self._results: Dict[str, ScanResult] = {}
        self._lock = threading.Lock()

    def check(self, target: Target) -> bool:
        with self._lock:
            return target.id in self._results

    def apply(self, target: Target) -> Outcome:
        with self._lock:
            existing = self._results.get(target.id)
        if existing is not None:
            return Outcome(detail="scan already recorded in this run", scan_result=existing)

        target_dir = Path(self.context.evidence_dir) / target.id
        target_dir.mkdir(parents=True, exist_ok=True)
        scan = self.context.scanner.scan(
            target,
            self.profile_id,
            self.content_source,
            output_path=target_dir / f"{self.id}.results.xml",
            report_path=target_dir / f"{self.id}.report.html" if self.report else None
        )
        (target_dir / f"{self.id}.scan.json").write_text(scan.model_dump_json(indent=2))

        with self._lock:
            self._results[target.id] = scan
        detail = (f"{scan.count(RuleStatus.PASS)} pass, {scan.count(RuleStatus.FAIL)} fail, "
                  f"{scan.count(RuleStatus.ERROR)} error, {scan.count(RuleStatus.NOT_APPLICABLE)} n/a")
        logger.info("Scan %s on %s: %s", self.id, target.id, detail)
        return Outcome(detail=detail, scan_result=scan)

    def result_for(self, target_id: str):
        with self._lock:
            return self._results.get(target_id)


class CompositeRoleTask(TaskUnit):
    """
    Apply opaque third-party remediation content as a single unit.

    The content's internal steps are not modelled. When the content offers
    a verifier it backs check(); otherwise a unit counts as satisfied for a
    target once it has been applied to it in this run.
    """

    kind = TaskKind.COMPOSITE_ROLE

    def validate(self) -> None:
        self.role = str(self.param("role"))
        self.variables = dict(self.param("variables", {}) or {})
        self.use_verifier = _as_bool(self.param("verify", True), "verify", self.id)
        if self.context.remediation is None:
            raise PlanValidationError(f"Task {self.id}: no remediation content runner configured")
        self._applied: Set[str] = set()
        self._lock = threading.Lock()

    def check(self, target: Target) -> bool:
        with self._lock:
            if target.id in self._applied:
                return True
        if not self.use_verifier:
            return False
        return bool(self.context.remediation.verify(target, self.role, self.variables))

    def apply(self, target: Target) -> Outcome:
        changed = self.context.remediation.apply(target, self.role, self.variables)
        with self._lock:
            self._applied.add(target.id)
        return Outcome(changed=changed, detail=f"role {self.role} applied")

    def describe(self) -> str:
        return f"{self.kind.value}(role={self.role})"

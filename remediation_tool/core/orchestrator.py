"""
Core orchestrator for the remediation tool.

The RemediationTool class wires configuration, the target registry, the run
ledger and the collaborator adapters together, and drives one pipeline run
from plan loading through evidence generation.
"""

import copy
import logging
import os
import threading
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..database.manager import RunLedger
from ..platforms.base import ComplianceScanner, RemediationContent
from ..platforms.factory import PlatformFactory
from ..platforms.remediation import CommandRoleRunner
from ..reporting.generator import SUPPORTED_FORMATS, ReportGenerator
from ..rules.loader import InventoryLoader, PlanLoader
from ..scanning.oscap import OpenSCAPScanner
from ..scanning.xccdf import load_scan_file
from ..tasks.base import TaskContext
from ..tasks.factory import TaskFactory
from ..utils.log import attach_run_log, detach_run_log
from .differ import diff
from .errors import ConfigError, PlanValidationError
from .executor import CarryOver, Executor
from .models import (
    ComplianceDelta, PlanSpec, RunRecord, RunSummary, ScanResult, Target, TargetState,
    TaskKind, TaskOutcome, utcnow
)
from .plan import ExecutionPlan
from .registry import TargetRegistry

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "REMEDIATION_TOOL_CONFIG"

DEFAULT_CONFIG: Dict[str, Any] = {
    "executor": {
        "max_workers": 8,
        "task_timeout": 600,
        "lockstep": False
    },
    "storage": {
        "database": "~/.local/share/remediation-tool/ledger.db",
        "evidence_dir": "~/.local/share/remediation-tool/runs"
    },
    "reporting": {
        "formats": ["json", "html"]
    },
    "scanner": {
        "command": "oscap",
        "timeout": 3600,
        "remote_tmp": "/tmp"
    },
    "remediation": {
        "command": "ansible-playbook -i {address}, -u {username} {role}",
        "verify_command": None,
        "timeout": 3600
    },
    "platform": {
        "name": "linux",
        "command_timeout": 300
    },
    "ssh": {
        "connect_timeout": 10,
        "strict_host_keys": False
    },
    "logging": {
        "level": "INFO"
    }
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class RemediationTool:
    """
    Main orchestrator class for remediation pipeline runs.

    Coordinates the target registry, plan loading, the executor, the run
    ledger, compliance diffing and evidence reporting.
    """

    def __init__(self, config_path: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None,
                 ledger: Optional[RunLedger] = None,
                 platforms: Optional[PlatformFactory] = None,
                 scanner: Optional[ComplianceScanner] = None,
                 remediation: Optional[RemediationContent] = None):
        """
        Initialize the remediation tool.

        Args:
            config_path: Path to configuration file (optional)
            overrides: Configuration values taking precedence over the file
            ledger: Run ledger to use instead of the configured database
            platforms: Platform factory to use instead of SSH/local transports
            scanner: Compliance scanner to use instead of OpenSCAP
            remediation: Remediation content to use instead of the command runner
        """
        # Load configuration
        self.config = self._load_config(config_path)
        if overrides:
            self.config = _deep_merge(self.config, overrides)

        self.ledger = ledger or RunLedger(self.config["storage"]["database"])
        self.plan_loader = PlanLoader()
        self.inventory_loader = InventoryLoader()
        self.report_generator = ReportGenerator()
        self.registry = TargetRegistry()

        self._platforms = platforms
        self._scanner = scanner
        self._remediation = remediation
        self._executor: Optional[Executor] = None
        self._lock = threading.Lock()

        formats = self.config["reporting"].get("formats") or []
        unknown = [f for f in formats if f not in SUPPORTED_FORMATS]
        if unknown:
            raise ConfigError(f"Unsupported report format(s): {', '.join(unknown)}")

        # Initialize database
        self.ledger.initialize()

    @property
    def evidence_root(self) -> Path:
        return Path(self.config["storage"]["evidence_dir"]).expanduser()

    def load_inventory(self, path: Union[str, Path]) -> List[Target]:
        """
        Register every target of an inventory file.

        Args:
            path: Inventory YAML file

        Returns:
            List[Target]: Targets registered
        """
        targets = self.inventory_loader.load(path)
        for target in targets:
            self.registry.register(target)
        logger.info("Registered %d target(s) from %s", len(targets), path)
        return targets

    def load_plan(self, plan: Union[str, Path, PlanSpec]) -> PlanSpec:
        if isinstance(plan, PlanSpec):
            return plan
        return self.plan_loader.load(plan)

    def validate_plan(self, plan: Union[str, Path, PlanSpec]) -> ExecutionPlan:
        """
        Build a plan without running it.

        Args:
            plan: Plan file or parsed plan

        Returns:
            ExecutionPlan: Validated plan

        Raises:
            PlanError: If the plan is invalid
        """
        spec = self.load_plan(plan)
        platforms = self._platforms or self._create_platforms()
        context = self._create_context(platforms, self.evidence_root)
        return ExecutionPlan.build(spec, TaskFactory(context))

    def run(self, plan: Union[str, Path, PlanSpec], selector: Optional[str] = None,
            resume: Optional[str] = None) -> RunSummary:
        """
        Run a plan against the selected targets.

        Args:
            plan: Plan file or parsed plan
            selector: Comma-separated target ids and tags (all targets if None)
            resume: Run id to resume; completed work of that run is carried over

        Returns:
            RunSummary: Terminal state of every target plus compliance deltas

        Raises:
            PlanError: If the plan is invalid
            ConfigError: If the targets or the resumed run cannot be resolved
            LedgerWriteError: If the run could not be recorded
        """
        spec = self.load_plan(plan)

        prior = None
        if resume:
            prior = self.ledger.get_run(resume)
            if prior is None:
                raise ConfigError(f"Unknown run: {resume}")
            if prior.plan_name != spec.name:
                raise PlanValidationError(
                    f"Run {resume} executed plan '{prior.plan_name}', not '{spec.name}'"
                )

        targets = self._select_targets(selector, prior)

        run_id = self._new_run_id()
        run_dir = self.evidence_root / run_id

        owns_platforms = self._platforms is None
        platforms = self._platforms or self._create_platforms()
        log_handler = None
        try:
            # New plan instance per run so that no task unit is shared between runs
            context = self._create_context(platforms, run_dir)
            execution_plan = ExecutionPlan.build(spec, TaskFactory(context))

            carry: CarryOver = {}
            carried_scans: Dict[str, Dict[str, ScanResult]] = {}
            if prior is not None:
                targets, carry, carried_scans = self._carry_over(prior, execution_plan, targets)

            run_dir.mkdir(parents=True, exist_ok=False)
            log_handler = attach_run_log(run_dir / "run.log")

            summary = RunSummary(
                run_id=run_id,
                plan_name=execution_plan.name,
                resumed_from=resume,
                evidence_dir=str(run_dir)
            )
            self.ledger.start_run(summary)
            self.ledger.save_run_targets(run_id, targets)
            self._persist_carried_scans(run_id, run_dir, carried_scans)

            executor = self._create_executor()
            with self._lock:
                self._executor = executor
            try:
                with self.registry.frozen():
                    result = executor.run(run_id, execution_plan, targets, carry, run_dir)
            finally:
                with self._lock:
                    self._executor = None

            summary.targets = result.states
            summary.cancelled = result.cancelled

            # Compute compliance evidence for every target with both scans
            pair = execution_plan.evidence_pair()
            if pair is not None:
                for state in result.states:
                    scans = dict(carried_scans.get(state.target_id, {}))
                    scans.update(result.scans.get(state.target_id, {}))
                    delta = self._compute_delta(run_id, run_dir, state.target_id, scans, pair)
                    if delta is not None:
                        summary.deltas[state.target_id] = delta

            summary.finished_at = utcnow()
            self.ledger.finish_run(summary)
            self.report_generator.write_run_summary(summary, run_dir / "summary.json")

            self._log_summary(summary)
            return summary

        finally:
            if owns_platforms:
                platforms.close_all()
            if log_handler is not None:
                detach_run_log(log_handler)

    def cancel(self) -> None:
        """Cancel the run in progress, if any."""
        with self._lock:
            executor = self._executor
        if executor is not None:
            executor.cancel()

    def get_run(self, run_id: str) -> Optional[RunSummary]:
        return self.ledger.get_run(run_id)

    def list_runs(self) -> List[RunSummary]:
        return self.ledger.list_runs()

    def query_records(self, run_id: Optional[str] = None, target_id: Optional[str] = None,
                      stage: Optional[str] = None) -> List[RunRecord]:
        return self.ledger.query(run_id=run_id, target_id=target_id, stage=stage)

    def diff_files(self, before: Union[str, Path], after: Union[str, Path]) -> ComplianceDelta:
        """
        Diff two scan result files (ScanResult JSON or XCCDF results XML).

        Args:
            before: Baseline scan file
            after: Verification scan file

        Returns:
            ComplianceDelta: Per-rule comparison
        """
        before_scan, _ = load_scan_file(Path(before))
        after_scan, _ = load_scan_file(Path(after), target_id=before_scan.target_id)
        return diff(before_scan, after_scan)

    def _select_targets(self, selector: Optional[str], prior: Optional[RunSummary]) -> List[Target]:
        if prior is not None:
            # Resumed runs act on the targets snapshotted by the original run
            registry = TargetRegistry(self.ledger.get_run_targets(prior.run_id))
        else:
            registry = self.registry

        targets = registry.select(selector) if selector else registry.list()
        if not targets:
            raise ConfigError("No targets selected")
        return targets

    def _carry_over(self, prior: RunSummary, plan: ExecutionPlan,
                    targets: List[Target]) -> Tuple[List[Target], CarryOver, Dict[str, Dict[str, ScanResult]]]:
        """
        Work out what a resumed run can take over from the prior run.

        Targets that completed are left out entirely. For the others, every
        task that succeeded or was skipped is carried over, along with the
        scan results those tasks produced.
        """
        latest: Dict[str, Dict[str, RunRecord]] = defaultdict(dict)
        for record in self.ledger.query(run_id=prior.run_id):
            latest[record.target_id][record.task_id] = record

        plan_tasks = {task.id: task for task in plan.tasks()}
        scan_ids = {task.id for task in plan.scan_tasks()}
        remaining: List[Target] = []
        carry: Dict[Tuple[str, str], RunRecord] = {}
        scans: Dict[str, Dict[str, ScanResult]] = defaultdict(dict)

        for target in targets:
            prior_state = prior.state_of(target.id)
            if prior_state is not None and prior_state.state == TargetState.COMPLETED:
                logger.info("Target %s completed in run %s; not re-run", target.id, prior.run_id)
                continue
            remaining.append(target)

            for task_id, record in latest[target.id].items():
                if task_id not in plan_tasks:
                    continue
                if record.outcome not in (TaskOutcome.SUCCESS, TaskOutcome.SKIPPED):
                    continue
                if task_id in scan_ids:
                    scan = self.ledger.get_scan_result(prior.run_id, target.id, task_id)
                    if scan is None:
                        # Without its result the scan has to run again
                        continue
                    scans[target.id][task_id] = scan
                carry[(target.id, task_id)] = record

        logger.info("Resuming run %s: %d target(s) to re-run, %d task(s) carried over",
                    prior.run_id, len(remaining), len(carry))
        return remaining, carry, dict(scans)

    def _persist_carried_scans(self, run_id: str, run_dir: Path,
                               carried_scans: Dict[str, Dict[str, ScanResult]]) -> None:
        for target_id, scans in carried_scans.items():
            target_dir = run_dir / target_id
            target_dir.mkdir(parents=True, exist_ok=True)
            for task_id, scan in scans.items():
                self.ledger.save_scan_result(run_id, task_id, scan)
                (target_dir / f"{task_id}.scan.json").write_text(scan.model_dump_json(indent=2))

    def _compute_delta(self, run_id: str, run_dir: Path, target_id: str,
                       scans: Dict[str, ScanResult], pair: Tuple[str, str]) -> Optional[ComplianceDelta]:
        before_id, after_id = pair
        before, after = scans.get(before_id), scans.get(after_id)
        if before is None or after is None:
            logger.info("No compliance delta for %s: missing %s scan", target_id,
                        before_id if before is None else after_id)
            return None

        delta = diff(before, after, target_id=target_id)
        self.report_generator.write_delta_reports(
            delta, run_dir / target_id, self.config["reporting"].get("formats") or [], run_id
        )
        if delta.has_regressions:
            logger.warning("Target %s regressed on %d rule(s): %s", target_id, delta.summary.regressed,
                           ", ".join(r.rule_id for r in delta.regressions))
        if delta.lost_passes:
            logger.warning("Target %s no longer passes %d rule(s): %s", target_id, len(delta.lost_passes),
                           ", ".join(f"{r.rule_id} ({r.after.value})" for r in delta.lost_passes))
        return delta

    def _log_summary(self, summary: RunSummary) -> None:
        for state in summary.targets:
            logger.info("Target %s: %s%s", state.target_id, state.state.value,
                        f" ({state.reason})" if state.reason else "")
        logger.info("Run %s finished: exit code %d", summary.run_id, summary.exit_code)

    def _create_platforms(self) -> PlatformFactory:
        platform_config = self.config["platform"]
        try:
            return PlatformFactory(
                ssh_config=self.config["ssh"],
                platform_name=platform_config.get("name", "linux"),
                command_timeout=int(platform_config.get("command_timeout", 300))
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e

    def _create_context(self, platforms: PlatformFactory, evidence_dir: Path) -> TaskContext:
        scanner = self._scanner
        if scanner is None:
            scanner_config = self.config["scanner"]
            scanner = OpenSCAPScanner(
                platforms,
                command=scanner_config.get("command", "oscap"),
                timeout=int(scanner_config.get("timeout", 3600)),
                remote_tmp=scanner_config.get("remote_tmp", "/tmp")
            )

        remediation = self._remediation
        if remediation is None:
            remediation_config = self.config["remediation"]
            remediation = CommandRoleRunner(
                remediation_config["command"],
                verify_command=remediation_config.get("verify_command"),
                timeout=int(remediation_config.get("timeout", 3600))
            )

        return TaskContext(platforms=platforms, scanner=scanner,
                           remediation=remediation, evidence_dir=evidence_dir)

    def _create_executor(self) -> Executor:
        executor_config = self.config["executor"]
        task_timeout = executor_config.get("task_timeout")
        task_timeout = float(task_timeout) if task_timeout else None
        kind_timeouts = {}
        if task_timeout:
            # scans and roles get their collaborator's own bound on top of the task budget
            kind_timeouts = {
                TaskKind.EXTERNAL_SCAN: task_timeout + float(self.config["scanner"].get("timeout", 3600)),
                TaskKind.COMPOSITE_ROLE: task_timeout + float(self.config["remediation"].get("timeout", 3600)),
            }
        return Executor(
            self.ledger,
            max_workers=int(executor_config.get("max_workers", 8)),
            task_timeout=task_timeout,
            lockstep=bool(executor_config.get("lockstep", False)),
            kind_timeouts=kind_timeouts
        )

    def _new_run_id(self) -> str:
        return f"{utcnow():%Y%m%dT%H%M%SZ}-{uuid.uuid4().hex[:8]}"

    def _load_config(self, config_path: Optional[str]) -> Dict[str, Any]:
        """Load configuration from file or use defaults."""
        config_path = config_path or os.environ.get(CONFIG_ENV_VAR)
        if not config_path:
            return copy.deepcopy(DEFAULT_CONFIG)

        path = Path(config_path).expanduser()
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            with open(path, 'r') as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot load configuration {path}: {e}") from e
        if not isinstance(user_config, dict):
            raise ConfigError(f"Configuration {path} must be a mapping")

        # Merge with defaults
        return _deep_merge(DEFAULT_CONFIG, user_config)

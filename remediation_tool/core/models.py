"""
Data models for the remediation tool using Pydantic for validation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class TaskKind(str, Enum):
    """Kinds of declarative task units."""
    PACKAGE = "package"
    SERVICE = "service"
    FIREWALL_RULE = "firewall-rule"
    FILE_ATTR = "file-attr"
    EXTERNAL_SCAN = "external-scan"
    COMPOSITE_ROLE = "composite-role"


class FailurePolicy(str, Enum):
    """What a stage does with a target when one of its tasks fails."""
    ABORT_PIPELINE = "abort-pipeline"
    CONTINUE_AND_RECORD = "continue-and-record"


# Canonical pipeline order. Plans may use other stage names, but these must
# keep their relative order when present.
CANONICAL_STAGES = ("Provision", "Baseline-Audit", "Remediate", "Restore", "Verify-Audit")


class TaskOutcome(str, Enum):
    """Outcome of a single task attempt."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class TargetState(str, Enum):
    """Per-(run, target) state machine."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    PARTIALLY_FAILED = "partially_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TargetState.COMPLETED, TargetState.ABORTED, TargetState.PARTIALLY_FAILED)


class RuleStatus(str, Enum):
    """Status of a compliance rule in a scan result."""
    PASS = "pass"
    FAIL = "fail"
    NOT_APPLICABLE = "notapplicable"
    ERROR = "error"


class RuleSeverity(str, Enum):
    """Rule severity levels based on security impact."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"
    UNKNOWN = "unknown"


class DeltaKind(str, Enum):
    """Classification of a rule's before/after transition."""
    IMPROVED = "improved"
    REGRESSED = "regressed"
    UNCHANGED_PASS = "unchanged_pass"
    UNCHANGED_FAIL = "unchanged_fail"
    OTHER = "other"


class TransportKind(str, Enum):
    """How commands reach a target."""
    SSH = "ssh"
    LOCAL = "local"


class Credentials(BaseModel):
    """Identity used to reach a target. Secrets never appear in repr."""
    model_config = ConfigDict(frozen=True)

    username: str = "root"
    password: Optional[str] = Field(None, repr=False)
    private_key_path: Optional[str] = None
    passphrase: Optional[str] = Field(None, repr=False)


class Target(BaseModel):
    """A managed host. Immutable once registered."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique target identifier")
    address: str = Field(..., min_length=1, description="Hostname or IP address")
    port: int = Field(22, ge=1, le=65535)
    transport: TransportKind = TransportKind.SSH
    credentials: Credentials = Field(default_factory=Credentials, repr=False)
    tags: Tuple[str, ...] = Field(default_factory=tuple, description="Free-form selection tags")

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags


class TaskSpec(BaseModel):
    """Declarative description of a task unit as authored in a plan."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    kind: TaskKind
    params: Dict[str, Any] = Field(default_factory=dict)


class StageSpec(BaseModel):
    """Declarative description of a stage as authored in a plan."""
    name: str = Field(..., min_length=1)
    policy: FailurePolicy = FailurePolicy.ABORT_PIPELINE
    tasks: List[TaskSpec] = Field(default_factory=list)


class PlanSpec(BaseModel):
    """Declarative plan document."""
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    stages: List[StageSpec] = Field(default_factory=list)
    evidence_before: Optional[str] = None
    evidence_after: Optional[str] = None


class RuleResult(BaseModel):
    """Result of one compliance rule in a scan."""
    model_config = ConfigDict(frozen=True)

    rule_id: str
    status: RuleStatus
    severity: RuleSeverity = RuleSeverity.UNKNOWN
    title: Optional[str] = None


class ScanResult(BaseModel):
    """Structured output of the external compliance scanner."""
    model_config = ConfigDict(frozen=True)

    target_id: str
    profile_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    rule_results: Tuple[RuleResult, ...] = Field(default_factory=tuple)
    report_path: Optional[str] = None

    @field_validator('rule_results')
    @classmethod
    def validate_unique_rules(cls, v):
        """A scan holds each rule id at most once."""
        seen = set()
        for result in v:
            if result.rule_id in seen:
                raise ValueError(f"Duplicate rule id in scan result: {result.rule_id}")
            seen.add(result.rule_id)
        return v

    def by_rule_id(self) -> Dict[str, RuleResult]:
        return {r.rule_id: r for r in self.rule_results}

    def count(self, status: RuleStatus) -> int:
        return sum(1 for r in self.rule_results if r.status == status)


class Outcome(BaseModel):
    """What a task unit's apply() reports back to the executor."""
    status: TaskOutcome = TaskOutcome.SUCCESS
    detail: str = ""
    changed: bool = False
    scan_result: Optional[ScanResult] = None


class RunRecord(BaseModel):
    """One task attempt against one target. Append-only audit evidence."""
    model_config = ConfigDict(frozen=True)

    run_id: str
    target_id: str
    stage: str
    task_id: str
    started_at: datetime
    finished_at: datetime
    outcome: TaskOutcome
    detail: str = ""


class RuleDelta(BaseModel):
    """Before/after status of one rule."""
    model_config = ConfigDict(frozen=True)

    rule_id: str
    before: RuleStatus
    after: RuleStatus
    change: DeltaKind
    severity: RuleSeverity = RuleSeverity.UNKNOWN
    title: Optional[str] = None


class DeltaSummary(BaseModel):
    """Counts per transition kind."""
    model_config = ConfigDict(frozen=True)

    improved: int = 0
    regressed: int = 0
    unchanged_pass: int = 0
    unchanged_fail: int = 0
    other: int = 0


class ComplianceDelta(BaseModel):
    """Derived comparison of two scans of the same target."""
    model_config = ConfigDict(frozen=True)

    target_id: str
    profile_id: str
    before_timestamp: datetime
    after_timestamp: datetime
    summary: DeltaSummary
    rules: Tuple[RuleDelta, ...] = Field(default_factory=tuple)

    @property
    def improvements(self) -> List[RuleDelta]:
        return [r for r in self.rules if r.change == DeltaKind.IMPROVED]

    @property
    def regressions(self) -> List[RuleDelta]:
        return [r for r in self.rules if r.change == DeltaKind.REGRESSED]

    @property
    def lost_passes(self) -> List[RuleDelta]:
        """Rules that passed before and now error out or no longer apply."""
        return [r for r in self.rules
                if r.before == RuleStatus.PASS and r.after in (RuleStatus.ERROR, RuleStatus.NOT_APPLICABLE)]

    @property
    def still_failing(self) -> List[RuleDelta]:
        return [r for r in self.rules if r.change == DeltaKind.UNCHANGED_FAIL]

    @property
    def has_regressions(self) -> bool:
        return self.summary.regressed > 0


class TargetRunState(BaseModel):
    """Terminal (or in-progress) state of one target within a run."""
    target_id: str
    state: TargetState = TargetState.PENDING
    failed_stage: Optional[str] = None
    reason: Optional[str] = None
    evidence_dir: Optional[str] = None


class RunSummary(BaseModel):
    """Complete pipeline run across the selected targets."""
    run_id: str = Field(..., description="Unique run identifier")
    plan_name: str
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    resumed_from: Optional[str] = None
    cancelled: bool = False
    evidence_dir: Optional[str] = None
    targets: List[TargetRunState] = Field(default_factory=list)
    deltas: Dict[str, ComplianceDelta] = Field(default_factory=dict)

    @property
    def all_completed(self) -> bool:
        return all(t.state == TargetState.COMPLETED for t in self.targets)

    @property
    def exit_code(self) -> int:
        """0 when every target completed, 1 otherwise."""
        return 0 if self.all_completed else 1

    def state_of(self, target_id: str) -> Optional[TargetRunState]:
        for t in self.targets:
            if t.target_id == target_id:
                return t
        return None

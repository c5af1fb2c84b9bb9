"""
Unit tests for core data models.

Tests the Pydantic models that define the data structures
used throughout the remediation tool.
"""

import pytest
from datetime import datetime, timezone
from pydantic import ValidationError

from remediation_tool.core.models import (
    ComplianceDelta, Credentials, DeltaKind, DeltaSummary, RuleDelta, RuleResult,
    RuleStatus, RunRecord, RunSummary, ScanResult, Target, TargetRunState, TargetState,
    TaskOutcome, TransportKind
)


class TestTarget:
    """Test Target model."""

    def test_valid_target_creation(self):
        """Test creating valid Target instance."""
        target = Target(id="web-01", address="10.0.0.11", tags=["web", "prod"])

        assert target.id == "web-01"
        assert target.port == 22
        assert target.transport == TransportKind.SSH
        assert target.tags == ("web", "prod")
        assert target.credentials.username == "root"
        assert target.has_tag("web")
        assert not target.has_tag("db")

    def test_target_is_immutable(self):
        """Test that registered targets cannot be changed in place."""
        target = Target(id="web-01", address="10.0.0.11")

        with pytest.raises(ValidationError):
            target.address = "10.0.0.99"

    def test_invalid_target(self):
        """Test Target validation."""
        with pytest.raises(ValidationError):
            Target(id="", address="10.0.0.11")

        with pytest.raises(ValidationError):
            Target(id="web-01", address="10.0.0.11", port=70000)

    def test_secrets_not_in_repr(self):
        """Test that credentials never leak through repr."""
        target = Target(id="web-01", address="10.0.0.11",
                        credentials=Credentials(username="admin", password="hunter2"))

        assert "hunter2" not in repr(target)
        assert "hunter2" not in repr(target.credentials)


class TestScanResult:
    """Test ScanResult model."""

    def test_counts_and_lookup(self):
        """Test per-status counts and rule lookup."""
        scan = ScanResult(
            target_id="web-01",
            profile_id="cis",
            rule_results=[
                RuleResult(rule_id="r1", status=RuleStatus.PASS),
                RuleResult(rule_id="r2", status=RuleStatus.FAIL),
                RuleResult(rule_id="r3", status=RuleStatus.FAIL),
            ]
        )

        assert scan.count(RuleStatus.FAIL) == 2
        assert scan.count(RuleStatus.ERROR) == 0
        assert scan.by_rule_id()["r1"].status == RuleStatus.PASS

    def test_duplicate_rule_ids_rejected(self):
        """Test that a scan holds each rule at most once."""
        with pytest.raises(ValidationError):
            ScanResult(
                target_id="web-01",
                profile_id="cis",
                rule_results=[
                    RuleResult(rule_id="r1", status=RuleStatus.PASS),
                    RuleResult(rule_id="r1", status=RuleStatus.FAIL),
                ]
            )

    def test_json_round_trip_keeps_order(self):
        """Test serialization used for scan evidence files."""
        scan = ScanResult(
            target_id="web-01",
            profile_id="cis",
            rule_results=[RuleResult(rule_id=f"r{i}", status=RuleStatus.PASS) for i in (3, 1, 2)]
        )

        restored = ScanResult.model_validate_json(scan.model_dump_json())
        assert [r.rule_id for r in restored.rule_results] == ["r3", "r1", "r2"]
        assert restored == scan


class TestRunRecord:
    """Test RunRecord model."""

    def test_record_is_immutable(self):
        now = datetime.now(timezone.utc)
        record = RunRecord(run_id="run-1", target_id="web-01", stage="Provision",
                           task_id="install-nginx", started_at=now, finished_at=now,
                           outcome=TaskOutcome.SUCCESS)

        with pytest.raises(ValidationError):
            record.outcome = TaskOutcome.FAILED

    def test_invalid_outcome(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            RunRecord(run_id="run-1", target_id="web-01", stage="Provision",
                      task_id="install-nginx", started_at=now, finished_at=now,
                      outcome="retried")


class TestComplianceDelta:
    """Test ComplianceDelta model."""

    def test_regressions_listed_separately(self):
        now = datetime.now(timezone.utc)
        delta = ComplianceDelta(
            target_id="web-01",
            profile_id="cis",
            before_timestamp=now,
            after_timestamp=now,
            summary=DeltaSummary(improved=1, regressed=1),
            rules=[
                RuleDelta(rule_id="r1", before=RuleStatus.FAIL, after=RuleStatus.PASS,
                          change=DeltaKind.IMPROVED),
                RuleDelta(rule_id="r2", before=RuleStatus.PASS, after=RuleStatus.FAIL,
                          change=DeltaKind.REGRESSED),
            ]
        )

        assert delta.has_regressions
        assert [r.rule_id for r in delta.regressions] == ["r2"]
        assert [r.rule_id for r in delta.improvements] == ["r1"]
        assert delta.still_failing == []


class TestRunSummary:
    """Test RunSummary model."""

    def test_exit_code_all_completed(self):
        summary = RunSummary(run_id="run-1", plan_name="p", targets=[
            TargetRunState(target_id="a", state=TargetState.COMPLETED),
            TargetRunState(target_id="b", state=TargetState.COMPLETED),
        ])

        assert summary.all_completed
        assert summary.exit_code == 0

    @pytest.mark.parametrize("state", [TargetState.ABORTED, TargetState.PARTIALLY_FAILED])
    def test_exit_code_with_failures(self, state):
        summary = RunSummary(run_id="run-1", plan_name="p", targets=[
            TargetRunState(target_id="a", state=TargetState.COMPLETED),
            TargetRunState(target_id="b", state=state),
        ])

        assert not summary.all_completed
        assert summary.exit_code == 1
        assert summary.state_of("b").state == state
        assert summary.state_of("missing") is None

    def test_terminal_states(self):
        assert not TargetState.PENDING.is_terminal
        assert not TargetState.RUNNING.is_terminal
        assert TargetState.COMPLETED.is_terminal
        assert TargetState.ABORTED.is_terminal
        assert TargetState.PARTIALLY_FAILED.is_terminal

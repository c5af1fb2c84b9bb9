"""
Unit tests for the compliance report differ.
"""

import pytest

from remediation_tool.core.differ import classify, diff
from remediation_tool.core.models import (
    DeltaKind, RuleResult, RuleSeverity, RuleStatus, ScanResult
)

P, F, NA, E = RuleStatus.PASS, RuleStatus.FAIL, RuleStatus.NOT_APPLICABLE, RuleStatus.ERROR


def make_scan(statuses, target_id="web-01", **severities):
    return ScanResult(
        target_id=target_id,
        profile_id="cis",
        rule_results=tuple(
            RuleResult(rule_id=rule_id, status=status,
                       severity=severities.get(rule_id, RuleSeverity.UNKNOWN))
            for rule_id, status in statuses.items()
        )
    )


class TestClassify:
    """Test single-rule transitions."""

    @pytest.mark.parametrize("before,after,expected", [
        (F, P, DeltaKind.IMPROVED),
        (P, F, DeltaKind.REGRESSED),
        (P, P, DeltaKind.UNCHANGED_PASS),
        (F, F, DeltaKind.UNCHANGED_FAIL),
        (NA, P, DeltaKind.OTHER),
        (P, NA, DeltaKind.OTHER),
        (E, F, DeltaKind.OTHER),
        (E, E, DeltaKind.OTHER),
    ])
    def test_transitions(self, before, after, expected):
        assert classify(before, after) == expected


class TestDiff:
    """Test whole-scan deltas."""

    def test_identical_scans(self):
        scan = make_scan({"r1": P, "r2": F, "r3": NA})

        delta = diff(scan, scan)

        assert delta.summary.improved == 0
        assert delta.summary.regressed == 0
        assert delta.summary.unchanged_pass == 1
        assert delta.summary.unchanged_fail == 1
        assert delta.summary.other == 1
        assert not delta.has_regressions

    def test_regressions_not_netted(self):
        before = make_scan({"r1": F, "r2": F, "r3": P})
        after = make_scan({"r1": P, "r2": P, "r3": F})

        delta = diff(before, after)

        assert delta.summary.improved == 2
        assert delta.summary.regressed == 1
        assert [r.rule_id for r in delta.regressions] == ["r3"]

    def test_lost_passes_listed_apart_from_other(self):
        before = make_scan({"r1": P, "r2": P, "r3": NA, "r4": E})
        after = make_scan({"r1": E, "r2": NA, "r3": P, "r4": F})

        delta = diff(before, after)

        assert [r.rule_id for r in delta.lost_passes] == ["r1", "r2"]
        assert delta.summary.other == 4
        assert delta.regressions == []

    def test_sorted_by_rule_id(self):
        before = make_scan({"r3": F, "r1": F, "r2": P})
        after = make_scan({"r2": P, "r3": P, "r1": F})

        delta = diff(before, after)

        assert [r.rule_id for r in delta.rules] == ["r1", "r2", "r3"]
        assert diff(before, after) == delta

    def test_rule_missing_on_one_side(self):
        before = make_scan({"r1": P, "old": F})
        after = make_scan({"r1": P, "new": P})

        rules = {r.rule_id: r for r in diff(before, after).rules}

        assert rules["old"].after == NA and rules["old"].change == DeltaKind.OTHER
        assert rules["new"].before == NA and rules["new"].change == DeltaKind.OTHER

    def test_severity_prefers_after_then_before(self):
        before = make_scan({"r1": F, "r2": F}, r1=RuleSeverity.HIGH, r2=RuleSeverity.LOW)
        after = make_scan({"r1": P, "r2": P}, r2=RuleSeverity.MEDIUM)

        rules = {r.rule_id: r for r in diff(before, after).rules}

        assert rules["r1"].severity == RuleSeverity.HIGH
        assert rules["r2"].severity == RuleSeverity.MEDIUM

    def test_target_and_timestamps(self):
        before = make_scan({"r1": F})
        after = make_scan({"r1": P})

        delta = diff(before, after, target_id="web-99")

        assert delta.target_id == "web-99"
        assert delta.before_timestamp == before.timestamp
        assert delta.after_timestamp == after.timestamp
        assert diff(before, after).target_id == "web-01"

    def test_empty_scans(self):
        delta = diff(make_scan({}), make_scan({}))

        assert delta.rules == ()
        assert delta.summary.improved == delta.summary.other == 0

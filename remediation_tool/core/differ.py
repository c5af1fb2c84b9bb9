"""
Compliance report differ.

Compares a baseline scan with a verification scan of the same target, rule
by rule. Regressions are reported on their own and are never netted against
improvements.
"""

from typing import Optional

from .models import ComplianceDelta, DeltaKind, DeltaSummary, RuleDelta, RuleSeverity, RuleStatus, ScanResult


def classify(before: RuleStatus, after: RuleStatus) -> DeltaKind:
    """
    Classify one rule's transition.

    Args:
        before: Status in the baseline scan
        after: Status in the verification scan

    Returns:
        DeltaKind: improved (fail -> pass), regressed (pass -> fail),
        unchanged_pass, unchanged_fail, or other for anything involving
        notapplicable or error
    """
    if before == RuleStatus.FAIL and after == RuleStatus.PASS:
        return DeltaKind.IMPROVED
    if before == RuleStatus.PASS and after == RuleStatus.FAIL:
        return DeltaKind.REGRESSED
    if before == after == RuleStatus.PASS:
        return DeltaKind.UNCHANGED_PASS
    if before == after == RuleStatus.FAIL:
        return DeltaKind.UNCHANGED_FAIL
    return DeltaKind.OTHER


def diff(before: ScanResult, after: ScanResult, target_id: Optional[str] = None) -> ComplianceDelta:
    """
    Compute the per-rule delta between two scans.

    Rules are matched by rule_id. A rule present on only one side counts as
    notapplicable on the other. The result is sorted by rule_id, so the same
    two inputs always produce the same delta.

    Args:
        before: Baseline scan
        after: Verification scan
        target_id: Target to report (defaults to the verification scan's)

    Returns:
        ComplianceDelta: Summary counts plus the full per-rule delta
    """
    before_rules = before.by_rule_id()
    after_rules = after.by_rule_id()

    rules = []
    counts = {kind: 0 for kind in DeltaKind}
    for rule_id in sorted(set(before_rules) | set(after_rules)):
        old = before_rules.get(rule_id)
        new = after_rules.get(rule_id)
        before_status = old.status if old else RuleStatus.NOT_APPLICABLE
        after_status = new.status if new else RuleStatus.NOT_APPLICABLE
        change = classify(before_status, after_status)
        counts[change] += 1

        severity = RuleSeverity.UNKNOWN
        for side in (new, old):
            if side is not None and side.severity != RuleSeverity.UNKNOWN:
                severity = side.severity
                break

        rules.append(RuleDelta(
            rule_id=rule_id,
            before=before_status,
            after=after_status,
            change=change,
            severity=severity,
            title=(new.title if new and new.title else old.title if old else None)
        ))

    return ComplianceDelta(
        target_id=target_id or after.target_id,
        profile_id=after.profile_id or before.profile_id,
        before_timestamp=before.timestamp,
        after_timestamp=after.timestamp,
        summary=DeltaSummary(
            improved=counts[DeltaKind.IMPROVED],
            regressed=counts[DeltaKind.REGRESSED],
            unchanged_pass=counts[DeltaKind.UNCHANGED_PASS],
            unchanged_fail=counts[DeltaKind.UNCHANGED_FAIL],
            other=counts[DeltaKind.OTHER]
        ),
        rules=tuple(rules)
    )

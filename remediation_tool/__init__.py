"""
Compliance Remediation Tool

Orchestrates staged compliance remediation across a fleet of hosts:
provision, baseline audit, remediate, restore and verify, with an
append-only ledger of every task attempt and before/after evidence.
"""

__version__ = "1.0.0"

from .core.orchestrator import RemediationTool
from .core.models import ComplianceDelta, RunSummary, Target

__all__ = ["RemediationTool", "ComplianceDelta", "RunSummary", "Target"]
